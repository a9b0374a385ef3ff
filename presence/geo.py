import asyncio
import ipaddress
import logging
import time
from typing import Callable, Dict, Optional, Tuple, Union

import httpx

from .config import Settings
from .models import UNKNOWN, CountryLocation, Location, UnknownLocation, UsStateLocation
from .regions import US_STATES, flag_emoji, normalize_country_code, normalize_state_code, state_code_for_name


logger = logging.getLogger("presence.geo")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_address(address) -> Optional[IPAddress]:
    """解析来源地址；兼容 IPv4 映射的 IPv6 地址与带 zone 后缀的写法。"""
    if not isinstance(address, str):
        return None
    text = address.strip()
    if text.startswith("[") and "]" in text:
        text = text[1:text.index("]")]
    if "%" in text:
        text = text.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def is_private_address(address) -> bool:
    """回环、链路本地、私有网段及无法解析的地址一律视为不可对外查询。"""
    ip = parse_address(address)
    if ip is None:
        return True
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
        or ip.is_multicast
        or not ip.is_global
    )


def _state_code_from_payload(payload: dict) -> Optional[str]:
    # 代码字段优先；ipapi.co 的 region 是全名，ip-api 的 region 是代码。
    for key in ("region_code", "regionCode", "region"):
        state_code = normalize_state_code(payload.get(key))
        if state_code is not None:
            return state_code
    for key in ("region", "regionName"):
        state_code = state_code_for_name(payload.get(key))
        if state_code is not None:
            return state_code
    return None


def _country_location(country_code: str, country_name) -> CountryLocation:
    if not isinstance(country_name, str) or not country_name.strip():
        country_name = country_code
    return CountryLocation(
        countryCode=country_code,
        countryName=country_name.strip()[:64],
        countryEmoji=flag_emoji(country_code),
    )


def _us_state_location(state_code: str, flag_url_template: str) -> UsStateLocation:
    return UsStateLocation(
        stateCode=state_code,
        stateName=US_STATES[state_code],
        flagUrl=flag_url_template.format(code=state_code.lower()),
    )


def classify(payload, flag_url_template: str = Settings.STATE_FLAG_URL) -> Location:
    """
    把地理服务原始返回归类为 Location。

    - 国家代码为两位字母 -> country；
    - 国家为 US 且地区代码在州/领地表中 -> us_state（覆盖 country）；
    - 其余 -> unknown。
    """
    if not isinstance(payload, dict) or payload.get("error"):
        return UNKNOWN

    country_code = normalize_country_code(payload.get("country_code") or payload.get("countryCode"))
    if country_code is None:
        return UNKNOWN

    if country_code == "US":
        state_code = _state_code_from_payload(payload)
        if state_code is not None:
            return _us_state_location(state_code, flag_url_template)

    return _country_location(country_code, payload.get("country_name") or payload.get("country"))


def sanitize_location(location: Location, flag_url_template: str = Settings.STATE_FLAG_URL) -> Optional[Location]:
    """
    按解析器同样的规则重建外部提交的 Location；不符合规则时返回 None。

    州名、州旗地址与国旗符号一律由服务端生成，不采信提交值。
    """
    if isinstance(location, UnknownLocation):
        return UnknownLocation(resolved=location.resolved)

    if isinstance(location, UsStateLocation):
        state_code = normalize_state_code(location.stateCode)
        if state_code is None:
            return None
        return _us_state_location(state_code, flag_url_template)

    if isinstance(location, CountryLocation):
        country_code = normalize_country_code(location.countryCode)
        if country_code is None:
            return None
        return _country_location(country_code, location.countryName)

    return None


class LocationResolver:
    """
    来源地址 -> 粗粒度地理位置。

    业务职责：
    1) 隐私过滤：私有/本地地址直接判定 unknown，绝不外发查询；
    2) 缓存：命中且未过期直接返回；
    3) 远程查询：有超时上限，任何失败都降级为 unknown；
    4) 结果（含 unknown）写回缓存，同一地址的并发未命中合并为一次远程调用。
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: Dict[str, Tuple[Location, float]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.stats = {"remote_calls": 0, "cache_hits": 0, "private_skips": 0}

    @property
    def started(self) -> bool:
        return self._client is not None

    async def start(self) -> None:
        if self._client is not None:
            return
        if not self.settings.geo_enabled:
            logger.info("Geolocation lookups disabled")
            return

        timeout = httpx.Timeout(self.settings.geo_timeout_sec)
        limits = httpx.Limits(max_connections=50, max_keepalive_connections=10, keepalive_expiry=30.0)
        client_kwargs = {
            "timeout": timeout,
            "limits": limits,
            "follow_redirects": True,
            "headers": {"User-Agent": "presence-server/1.0", "Accept": "application/json"},
        }
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        else:
            client_kwargs["http2"] = True
        self._client = httpx.AsyncClient(**client_kwargs)

    async def aclose(self) -> None:
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        client = self._client
        self._client = None
        if client is not None:
            await client.aclose()

    def classify(self, payload) -> Location:
        return classify(payload, self.settings.state_flag_url)

    def cached(self, address: str) -> Optional[Location]:
        entry = self._cache.get(address)
        if entry is None:
            return None
        location, expires_at = entry
        if self._clock() >= expires_at:
            del self._cache[address]
            return None
        return location

    async def resolve(self, address: str) -> Location:
        ip = parse_address(address)
        if ip is None or is_private_address(str(ip)):
            self.stats["private_skips"] += 1
            return UNKNOWN

        key = str(ip)
        location = self.cached(key)
        if location is not None:
            self.stats["cache_hits"] += 1
            return location

        if self._client is None:
            return UNKNOWN

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._lookup_and_store(key))
            self._inflight[key] = task
        # shield：单个等待方被取消不影响其他共享同一查询的等待方。
        return await asyncio.shield(task)

    async def _lookup_and_store(self, key: str) -> Location:
        try:
            location = await self._fetch(key)
            ttl = self.settings.failure_ttl_sec if isinstance(location, UnknownLocation) else self.settings.geo_cache_ttl_sec
            self._cache[key] = (location, self._clock() + ttl)
            return location
        finally:
            self._inflight.pop(key, None)

    async def _fetch(self, key: str) -> Location:
        client = self._client
        if client is None:
            return UNKNOWN

        url = self.settings.geo_url.format(ip=key)
        self.stats["remote_calls"] += 1
        try:
            response = await asyncio.wait_for(client.get(url), timeout=self.settings.geo_timeout_sec)
        except asyncio.TimeoutError:
            logger.info("Geolocation lookup timed out for %s", key)
            return UNKNOWN
        except httpx.HTTPError as e:
            logger.info("Geolocation lookup failed for %s: %s", key, e)
            return UNKNOWN

        if response.status_code != 200:
            logger.info("Geolocation lookup for %s returned HTTP %s", key, response.status_code)
            return UNKNOWN

        try:
            payload = response.json()
        except ValueError as e:
            logger.debug("Malformed geolocation payload for %s: %s", key, e)
            return UNKNOWN

        location = self.classify(payload)
        logger.debug("Resolved %s -> %s", key, location.kind)
        return location
