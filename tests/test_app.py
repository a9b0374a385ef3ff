import json
import logging

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from main import client_address, configure_logging, create_app
from presence.broadcaster import Channel
from presence.config import Settings

from .conftest import GeoProvider, pending_events


@pytest.fixture
def app():
    return create_app(Settings(geo_enabled=False, max_body_bytes=256))


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def observer(app):
    channel = Channel("observer")
    app.state.broadcaster.register(channel)
    return channel


@pytest.fixture
def participant(app):
    return app.state.registry.admit("8.8.8.8")


def make_request(headers=None, client=("203.0.113.9", 52000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/events",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestMoveEndpoint:
    def test_valid_move_returns_no_content_and_broadcasts(self, client, app, observer, participant):
        response = client.post("/move", json={"id": participant.id, "x": 10.5, "y": 20})

        assert response.status_code == 204
        assert response.content == b""
        assert pending_events(observer) == [{"type": "move", "id": participant.id, "x": 10.5, "y": 20.0}]
        stored = app.state.registry.get(participant.id)
        assert (stored.x, stored.y) == (10.5, 20.0)

    def test_unknown_participant(self, client, observer):
        response = client.post("/move", json={"id": "ghost", "x": 1, "y": 2})

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "unknown_participant"}
        assert pending_events(observer) == []

    @pytest.mark.parametrize(
        "body",
        [
            {"x": "1", "y": 2},
            {"x": 1},
            {"x": True, "y": 2},
            {"x": [1], "y": 2},
        ],
    )
    def test_invalid_payload(self, client, app, observer, participant, body):
        response = client.post("/move", json={"id": participant.id, **body})

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "invalid_payload"}
        assert pending_events(observer) == []
        assert app.state.registry.get(participant.id).x is None

    def test_non_finite_coordinates(self, client, participant):
        body = '{"id": "%s", "x": NaN, "y": Infinity}' % participant.id

        response = client.post("/move", content=body, headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payload"

    def test_invalid_json(self, client):
        response = client.post("/move", content=b"{not json", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "invalid_json"}

    def test_empty_body(self, client):
        response = client.post("/move", content=b"")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payload"

    def test_oversized_body(self, client, participant):
        body = json.dumps({"id": participant.id, "x": 1, "y": 2, "padding": "x" * 1024})

        response = client.post("/move", content=body, headers={"content-type": "application/json"})

        assert response.status_code == 413
        assert response.json() == {"ok": False, "error": "payload_too_large"}


class TestLocationEndpoint:
    def test_valid_submission_is_applied_and_broadcast(self, client, app, observer, participant):
        location = {"kind": "country", "countryCode": "JP", "countryName": "Japan", "countryEmoji": "\U0001F1EF\U0001F1F5"}

        response = client.post("/location", json={"id": participant.id, "location": location})

        assert response.status_code == 204
        events = pending_events(observer)
        assert [event["type"] for event in events] == ["user_update"]
        assert events[0]["user"]["location"] == location

    def test_submitted_state_flag_is_rebuilt_server_side(self, client, observer, participant):
        location = {
            "kind": "us_state",
            "countryCode": "US",
            "stateCode": "OR",
            "stateName": "Oregon",
            "flagUrl": "https://evil.example/track.png",
        }

        response = client.post("/location", json={"id": participant.id, "location": location})

        assert response.status_code == 204
        broadcast = pending_events(observer)[0]["user"]["location"]
        assert broadcast["flagUrl"] == "https://flagcdn.com/w40/us-or.png"

    def test_unknown_state_code_is_dropped(self, client, app, observer, participant):
        location = {"kind": "us_state", "stateCode": "ZZ", "stateName": "Nowhere", "flagUrl": "https://flagcdn.com/w40/us-zz.png"}

        response = client.post("/location", json={"id": participant.id, "location": location})

        assert response.status_code == 204
        assert pending_events(observer) == []
        assert app.state.registry.get(participant.id).location.kind == "unknown"

    def test_unrecognized_submission_is_dropped_silently(self, client, app, observer, participant):
        response = client.post("/location", json={"id": participant.id, "location": {"kind": "galaxy"}})

        assert response.status_code == 204
        assert pending_events(observer) == []
        assert app.state.registry.get(participant.id).location.kind == "unknown"

    def test_non_json_body(self, client):
        response = client.post("/location", content=b"oops", headers={"content-type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_json"


class TestDiagnostics:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_snapshot(self, client, observer, participant):
        response = client.get("/snapshot")

        body = response.json()
        assert response.status_code == 200
        assert [user["id"] for user in body["users"]] == [participant.id]
        assert body["connections_count"] == 1
        assert body["geo"]["remote_calls"] == 0


class TestClientAddress:
    def test_prefers_first_forwarded_hop(self):
        request = make_request({"X-Forwarded-For": "8.8.4.4, 10.0.0.1"})

        assert client_address(request) == "8.8.4.4"

    def test_ignores_forwarded_header_when_untrusted(self):
        request = make_request({"X-Forwarded-For": "8.8.4.4"})

        assert client_address(request, trust_forwarded=False) == "203.0.113.9"

    def test_falls_back_to_peer(self):
        assert client_address(make_request()) == "203.0.113.9"

    def test_unknown_without_peer(self):
        assert client_address(make_request(client=None)) == "unknown"


def test_each_app_gets_fresh_services():
    first = create_app(Settings(geo_enabled=False))
    second = create_app(Settings(geo_enabled=False))

    first.state.registry.admit("8.8.8.8")

    assert len(first.state.registry) == 1
    assert len(second.state.registry) == 0
    assert first.state.broadcaster is not second.state.broadcaster


def test_lifespan_starts_and_stops_resolver():
    provider = GeoProvider()
    app = create_app(Settings(geo_enabled=True), geo_transport=provider.transport)

    with TestClient(app):
        assert app.state.resolver.started is True

    assert app.state.resolver.started is False


class TestLoggingSetup:
    def setup_method(self):
        self.root = logging.getLogger()
        self.saved_level = self.root.level

    def teardown_method(self):
        self.root.setLevel(self.saved_level)

    def test_level_comes_from_settings(self, monkeypatch):
        monkeypatch.setattr(self.root, "handlers", [])

        create_app(Settings(geo_enabled=False, log_level="WARNING"))

        assert self.root.level == logging.WARNING
        assert len(self.root.handlers) == 1

    def test_unknown_level_falls_back_to_info(self, monkeypatch):
        monkeypatch.setattr(self.root, "handlers", [])

        configure_logging("chatty")

        assert self.root.level == logging.INFO

    def test_existing_handlers_are_left_alone(self, monkeypatch):
        handler = logging.NullHandler()
        monkeypatch.setattr(self.root, "handlers", [handler])
        self.root.setLevel(logging.ERROR)

        configure_logging("DEBUG")

        assert self.root.handlers == [handler]
        assert self.root.level == logging.ERROR

    def test_settings_read_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("PRESENCE_LOG_LEVEL", "debug")

        assert Settings().log_level == "DEBUG"
