import asyncio
import enum
import logging
from typing import AsyncIterator, Optional, Set

from .broadcaster import Broadcaster, Channel, ChannelClosed
from .geo import LocationResolver
from .models import UNKNOWN, Location, Participant
from .registry import ParticipantRegistry


logger = logging.getLogger("presence.sessions")


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Session:
    """一条事件流连接从接入到断开的生命周期。"""

    def __init__(self, origin_address: str, channel: Channel) -> None:
        self.origin_address = origin_address
        self.channel = channel
        self.participant: Optional[Participant] = None
        self.state = SessionState.CONNECTING

    @property
    def participant_id(self) -> Optional[str]:
        return self.participant.id if self.participant is not None else None

    async def frames(self, keepalive: Optional[float] = None) -> AsyncIterator[Optional[str]]:
        """逐帧产出已序列化事件；保活超时产出 None，通道关闭后结束。"""
        while self.state is SessionState.OPEN:
            try:
                frame = await self.channel.receive(timeout=keepalive)
            except ChannelClosed:
                return
            yield frame


class SessionHandler:
    """
    连接会话编排层。

    接入：登记参与者 -> 注册通道 -> 下发 self/snapshot -> 广播 join -> 异步解析来源。
    断开：注销通道 -> 移除参与者 -> 广播 leave（重复关闭无副作用）。
    """

    def __init__(
        self,
        registry: ParticipantRegistry,
        broadcaster: Broadcaster,
        resolver: Optional[LocationResolver] = None,
        channel_queue_size: int = 256,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.resolver = resolver
        self.channel_queue_size = channel_queue_size
        self._resolution_tasks: Set[asyncio.Task] = set()

    def open(self, origin_address: str) -> Session:
        session = Session(origin_address, Channel(max_queue=self.channel_queue_size))

        participant = self.registry.admit(origin_address)
        session.participant = participant
        session.channel.participant_id = participant.id
        self.broadcaster.register(session.channel)
        session.state = SessionState.OPEN

        self.broadcaster.send(session.channel, {"type": "self", "user": participant.to_wire()})
        self.broadcaster.send(
            session.channel,
            {"type": "snapshot", "users": [item.to_wire() for item in self.registry.snapshot()]},
        )
        self.broadcaster.broadcast({"type": "join", "user": participant.to_wire()}, exclude=session.channel)

        if self.resolver is not None:
            self._start_resolution(participant.id, origin_address)

        logger.info("Participant %s connected from %s", participant.id, origin_address)
        return session

    def close(self, session: Session) -> None:
        if session.state is SessionState.CLOSED:
            return
        session.state = SessionState.CLOSED

        self.broadcaster.unregister(session.channel)
        session.channel.close()

        participant_id = session.participant_id
        if participant_id is None:
            return
        self.registry.remove(participant_id)
        self.broadcaster.broadcast({"type": "leave", "id": participant_id})
        logger.info("Participant %s disconnected", participant_id)

    def apply_location(self, participant_id: str, location: Location) -> Optional[Participant]:
        """来源结果的唯一传播路径：参与者已离开则丢弃，否则写回并广播 user_update。"""
        participant = self.registry.set_location(participant_id, location)
        if participant is None:
            logger.debug("Discarding location for departed participant %s", participant_id)
            return None
        self.broadcaster.broadcast({"type": "user_update", "user": participant.to_wire()})
        return participant

    def _start_resolution(self, participant_id: str, origin_address: str) -> None:
        task = asyncio.create_task(self._resolve_and_apply(participant_id, origin_address))
        self._resolution_tasks.add(task)
        task.add_done_callback(self._resolution_tasks.discard)

    async def _resolve_and_apply(self, participant_id: str, origin_address: str) -> None:
        try:
            location = await self.resolver.resolve(origin_address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Location resolution failed for %s: %s", participant_id, e)
            location = UNKNOWN
        self.apply_location(participant_id, location)

    async def drain(self) -> None:
        """等待当前所有后台解析任务结束。"""
        while self._resolution_tasks:
            await asyncio.gather(*list(self._resolution_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._resolution_tasks):
            task.cancel()
        await self.drain()
