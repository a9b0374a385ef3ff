import asyncio
import json
import logging
from typing import Iterable, Optional, Set


logger = logging.getLogger("presence.broadcaster")

_END_OF_STREAM = object()


class ChannelClosed(Exception):
    """出站通道已关闭，不再接受或产出任何帧。"""


class Channel:
    """
    单个参与者的出站事件通道。

    写入端只做入队（不等待），消费端由该连接自己的事件流协程拉取；
    慢消费者把自己的队列写满后会被判定失速并断开，不会拖慢其他连接。
    """

    def __init__(self, participant_id: Optional[str] = None, max_queue: int = 256) -> None:
        self.participant_id = participant_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.closed = False

    def __repr__(self) -> str:
        return f"Channel(participant_id={self.participant_id!r}, closed={self.closed})"

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, frame: str) -> None:
        if self.closed:
            raise ChannelClosed(f"channel for {self.participant_id} is closed")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # 丢弃积压帧，保证结束标记一定能入队并唤醒消费端。
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END_OF_STREAM)

    async def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """取出下一帧；超时返回 None（供上层写保活），通道关闭时抛出 ChannelClosed。"""
        if self.closed and self._queue.empty():
            raise ChannelClosed(f"channel for {self.participant_id} is closed")
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _END_OF_STREAM:
            raise ChannelClosed(f"channel for {self.participant_id} is closed")
        return item


class Broadcaster:
    """
    广播编排层。

    业务职责：
    - 维护当前打开的出站通道集合；
    - 每个事件只序列化一次，再分发到各通道；
    - 单个通道写入失败只影响它自己：从集合中移除并关闭，由其事件流完成后续清理。

    broadcast 本身不 await，在单事件循环上每次调用都是原子的，
    因此同一来源顺序发出的事件在每个接收方处保持相同顺序。
    """

    def __init__(self) -> None:
        self._channels: Set[Channel] = set()

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def register(self, channel: Channel) -> None:
        self._channels.add(channel)

    def unregister(self, channel: Channel) -> None:
        self._channels.discard(channel)

    @staticmethod
    def encode(event: dict) -> str:
        return json.dumps(event, separators=(",", ":"), ensure_ascii=False)

    def send(self, channel: Channel, event: dict) -> bool:
        """向单个通道直接发送（self / snapshot 等定向事件）。"""
        try:
            frame = self.encode(event)
        except (TypeError, ValueError) as e:
            logger.error("Error serializing %s event: %s", event.get("type"), e)
            return False
        return self._deliver(frame, [channel]) == 1

    def broadcast(self, event: dict, exclude: Optional[Channel] = None) -> int:
        """向除 exclude 外的所有通道分发事件，返回成功入队的通道数。"""
        try:
            frame = self.encode(event)
        except (TypeError, ValueError) as e:
            logger.error("Error serializing %s event: %s", event.get("type"), e)
            return 0
        targets = [channel for channel in self._channels if channel is not exclude]
        return self._deliver(frame, targets)

    def _deliver(self, frame: str, channels: Iterable[Channel]) -> int:
        delivered = 0
        disconnected = []
        for channel in channels:
            try:
                channel.offer(frame)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Outbound queue full for participant=%s, dropping channel", channel.participant_id)
                disconnected.append(channel)
            except Exception as e:
                logger.warning("Error writing to participant=%s: %s", channel.participant_id, e)
                disconnected.append(channel)

        for channel in disconnected:
            self.unregister(channel)
            try:
                channel.close()
            except Exception as e:
                logger.warning("Error closing channel for participant=%s: %s", channel.participant_id, e)
        return delivered
