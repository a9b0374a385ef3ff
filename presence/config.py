import os


class Settings:
    """
    运行配置。

    所有取值在构造时从环境变量读取一次，并按区间钳制；
    关键字参数优先于环境变量（测试中用于注入固定配置）。
    """

    HOST = "0.0.0.0"
    PORT = 4000
    LOG_LEVEL = "INFO"

    # 单连接出站队列上限：队列写满视为该消费者已失速，直接断开。
    CHANNEL_QUEUE_SIZE = 256
    # 事件流保活注释的发送间隔（秒）。
    KEEPALIVE_SEC = 15
    # 写给 EventSource 的断线重连提示（毫秒）。
    RETRY_MS = 500
    MAX_BODY_BYTES = 1_000_000
    TRUST_FORWARDED = True

    GEO_ENABLED = True
    GEO_URL = "https://ipapi.co/{ip}/json/"
    GEO_TIMEOUT_SEC = 3.0
    GEO_CACHE_TTL_SEC = 6 * 3600
    # None 表示与成功结果共用 GEO_CACHE_TTL_SEC。
    GEO_FAILURE_TTL_SEC = None
    STATE_FLAG_URL = "https://flagcdn.com/w40/us-{code}.png"

    def __init__(self, **overrides) -> None:
        self.host = self._get_env_str("PRESENCE_HOST", self.HOST)
        self.port = self._get_env_int("PRESENCE_PORT", self._get_env_int("PORT", self.PORT, 1, 65535), 1, 65535)
        self.log_level = self._get_env_str("PRESENCE_LOG_LEVEL", self.LOG_LEVEL).upper()

        self.channel_queue_size = self._get_env_int("PRESENCE_CHANNEL_QUEUE_SIZE", self.CHANNEL_QUEUE_SIZE, 1, 10000)
        self.keepalive_sec = float(self._get_env_int("PRESENCE_KEEPALIVE_SEC", self.KEEPALIVE_SEC, 1, 300))
        self.retry_ms = self._get_env_int("PRESENCE_RETRY_MS", self.RETRY_MS, 0, 60000)
        self.max_body_bytes = self._get_env_int("PRESENCE_MAX_BODY_BYTES", self.MAX_BODY_BYTES, 64, 100_000_000)
        self.trust_forwarded = self._get_env_bool("PRESENCE_TRUST_FORWARDED", self.TRUST_FORWARDED)

        self.geo_enabled = self._get_env_bool("PRESENCE_GEO_ENABLED", self.GEO_ENABLED)
        self.geo_url = self._get_env_str("PRESENCE_GEO_URL", self.GEO_URL)
        self.geo_timeout_sec = self._get_env_float("PRESENCE_GEO_TIMEOUT_SEC", self.GEO_TIMEOUT_SEC, 0.1, 60.0)
        self.geo_cache_ttl_sec = float(
            self._get_env_int("PRESENCE_GEO_CACHE_TTL_SEC", self.GEO_CACHE_TTL_SEC, 1, 7 * 86400)
        )
        failure_ttl = self._get_env_int("PRESENCE_GEO_FAILURE_TTL_SEC", -1, -1, 7 * 86400)
        self.geo_failure_ttl_sec = float(failure_ttl) if failure_ttl > 0 else self.GEO_FAILURE_TTL_SEC
        self.state_flag_url = self._get_env_str("PRESENCE_STATE_FLAG_URL", self.STATE_FLAG_URL)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def failure_ttl_sec(self) -> float:
        if self.geo_failure_ttl_sec is None:
            return self.geo_cache_ttl_sec
        return self.geo_failure_ttl_sec

    @staticmethod
    def _get_env_str(key: str, default: str) -> str:
        raw = os.getenv(key)
        if raw is None:
            return default
        text = raw.strip()
        return text or default

    @staticmethod
    def _get_env_int(key: str, default: int, min_value: int, max_value: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        if value < min_value:
            return min_value
        if value > max_value:
            return max_value
        return value

    @staticmethod
    def _get_env_float(key: str, default: float, min_value: float, max_value: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError:
            return default
        if value != value:
            return default
        return min(max(value, min_value), max_value)

    @staticmethod
    def _get_env_bool(key: str, default: bool) -> bool:
        raw = os.getenv(key)
        if raw is None:
            return default
        text = str(raw).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        return default
