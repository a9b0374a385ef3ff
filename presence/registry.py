import itertools
import logging
import uuid
from typing import Dict, List, Optional

from .models import UNRESOLVED, Location, Participant


logger = logging.getLogger("presence.registry")


def make_color(seed: str) -> str:
    """由种子字符串确定性地生成 HSL 颜色；相同种子得到相同颜色。"""
    value = 0
    for char in seed:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    hue = abs(value) % 360
    return f"hsl({hue} 85% 55%)"


class ParticipantRegistry:
    """
    参与者登记表：id -> 当前可观测状态。

    业务职责：
    - 连接接入时分配 id、标签与颜色；
    - 接收位置与来源更新；
    - 对外只暴露副本，内部记录不被外部直接修改。
    """

    def __init__(self) -> None:
        self._participants: Dict[str, Participant] = {}
        self._ordinals = itertools.count(1)

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._participants

    def admit(self, origin_address: str) -> Participant:
        participant_id = str(uuid.uuid4())
        participant = Participant(
            id=participant_id,
            label=f"User {next(self._ordinals)}",
            color=make_color(f"{participant_id}-{origin_address}"),
            location=UNRESOLVED,
        )
        self._participants[participant_id] = participant
        logger.debug("Admitted %s as %s", participant_id, participant.label)
        return participant.model_copy()

    def get(self, participant_id: str) -> Optional[Participant]:
        participant = self._participants.get(participant_id)
        if participant is None:
            return None
        return participant.model_copy()

    def update_position(self, participant_id: str, x: float, y: float) -> bool:
        participant = self._participants.get(participant_id)
        if participant is None:
            return False
        participant.x = x
        participant.y = y
        return True

    def set_location(self, participant_id: str, location: Location) -> Optional[Participant]:
        participant = self._participants.get(participant_id)
        if participant is None:
            return None
        participant.location = location
        return participant.model_copy()

    def remove(self, participant_id: str) -> None:
        if self._participants.pop(participant_id, None) is not None:
            logger.debug("Removed %s", participant_id)

    def snapshot(self) -> List[Participant]:
        return [participant.model_copy() for participant in self._participants.values()]
