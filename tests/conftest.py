import json

import httpx
import pytest
import pytest_asyncio

from presence.broadcaster import Broadcaster, Channel
from presence.config import Settings
from presence.geo import LocationResolver
from presence.registry import ParticipantRegistry
from presence.sessions import SessionHandler


def pending_events(channel: Channel) -> list:
    """Pop every queued frame off a channel and decode it."""
    events = []
    while not channel._queue.empty():
        item = channel._queue.get_nowait()
        if isinstance(item, str):
            events.append(json.loads(item))
    return events


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class GeoProvider:
    """Scripted geolocation service behind an httpx.MockTransport."""

    def __init__(self, payload=None, status_code: int = 200) -> None:
        self.payload = payload if payload is not None else {"country_code": "FR", "country_name": "France"}
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def settings():
    return Settings(geo_enabled=True, geo_cache_ttl_sec=60.0, geo_timeout_sec=1.0, channel_queue_size=16)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return GeoProvider()


@pytest.fixture
def registry():
    return ParticipantRegistry()


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest_asyncio.fixture
async def resolver(settings, provider, clock):
    resolver = LocationResolver(settings, transport=provider.transport, clock=clock)
    await resolver.start()
    yield resolver
    await resolver.aclose()


@pytest.fixture
def handler(registry, broadcaster, resolver, settings):
    return SessionHandler(registry, broadcaster, resolver=resolver, channel_queue_size=settings.channel_queue_size)
