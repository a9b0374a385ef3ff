import logging

from pydantic import ValidationError

from .config import Settings
from .geo import sanitize_location
from .models import LocationSubmission, MoveUpdate
from .sessions import SessionHandler


logger = logging.getLogger("presence.ingestion")


class RejectedUpdate(Exception):
    """上报被拒绝：不修改状态、不广播，仅回报给调用方。"""

    def __init__(self, error: str, detail: str = "", status_code: int = 400) -> None:
        super().__init__(detail or error)
        self.error = error
        self.detail = detail
        self.status_code = status_code


class Ingestion:
    """外部上报入口：校验位置/来源上报并触发广播。本身不做限流。"""

    def __init__(self, sessions: SessionHandler, flag_url_template: str = Settings.STATE_FLAG_URL) -> None:
        self.sessions = sessions
        self.flag_url_template = flag_url_template

    def submit_move(self, payload) -> MoveUpdate:
        if not isinstance(payload, dict):
            raise RejectedUpdate("invalid_payload", "body must be a JSON object")
        try:
            move = MoveUpdate.model_validate(payload)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            raise RejectedUpdate("invalid_payload", f"invalid fields: {', '.join(fields)}") from None

        if not self.sessions.registry.update_position(move.id, move.x, move.y):
            raise RejectedUpdate("unknown_participant", move.id)

        self.sessions.broadcaster.broadcast({"type": "move", "id": move.id, "x": move.x, "y": move.y})
        return move

    def submit_location(self, payload) -> bool:
        """
        客户端自报来源。

        这是装饰性功能：无法识别的结构或已离开的参与者直接丢弃，不报错，
        避免影响事件流本身。州名、旗帜地址与国旗符号按服务端规则重建。
        """
        try:
            submission = LocationSubmission.model_validate(payload)
        except ValidationError as e:
            logger.debug("Dropping unrecognized location submission: %s", e.error_count())
            return False

        location = sanitize_location(submission.location, self.flag_url_template)
        if location is None:
            logger.debug("Dropping location submission with unknown region for %s", submission.id)
            return False
        return self.sessions.apply_location(submission.id, location) is not None
