"""WebSocket hub and HTTP endpoint tests via FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from config import ConfigurationError
from conftest import ScriptedAgent, make_config
from routers import game_router, ws_router
from services.session_manager import SessionManager

from main import app


def _failing_provider():
    raise ConfigurationError("agent_max_delay must be >= agent_min_delay")


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def test_manager(monkeypatch):
    manager = SessionManager(
        config_provider=lambda: make_config(round_duration=100),
        connector_factory=lambda identity: ScriptedAgent(),
    )
    monkeypatch.setattr(ws_router, "session_manager", manager)
    return manager


def receive_until(ws, event_type, limit=50):
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == event_type:
            return message
    raise AssertionError(f"no {event_type} within {limit} messages")


class TestHttp:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_public_config(self, client, monkeypatch):
        monkeypatch.setattr(game_router, "load_game_config", lambda: make_config(round_duration=42))
        body = client.get("/api/config").json()
        assert body["roundDuration"] == 42
        assert body["playerCount"] == 5
        assert body["colorMap"]["chatgpt"] == "#10a37f"
        assert "test_mode" not in body

    def test_config_error_is_503(self, client, monkeypatch):
        monkeypatch.setattr(game_router, "load_game_config", _failing_provider)
        assert client.get("/api/config").status_code == 503


class TestWebSocket:
    def test_connect_and_ping(self, client, test_manager):
        with client.websocket_connect("/ws") as ws:
            connected = ws.receive_json()
            assert connected["type"] == "connected"
            assert connected["connectionId"]
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_protocol_errors(self, client, test_manager):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            assert ws.receive_json()["code"] == "PARSE_ERROR"
            ws.send_json({"type": "dance"})
            assert ws.receive_json()["code"] == "UNKNOWN_TYPE"
            ws.send_json({"type": "message", "data": {"text": "hello?"}})
            assert ws.receive_json()["code"] == "NO_SESSION"

    def test_start_then_chat(self, client, test_manager):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "start"})
            started = receive_until(ws, "sessionStarted")
            assert started["humanNumber"] in range(1, 6)
            assert len(started["players"]) == 5

            ws.send_json({"type": "message", "data": {"text": "hi all, lovely weather"}})
            message = receive_until(ws, "chatMessage")
            assert message["player"] == started["humanNumber"]
            assert message["text"] == "hi all, lovely weather"
            assert test_manager.count() == 1

    def test_disconnect_destroys_session(self, client, test_manager):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "start"})
            receive_until(ws, "sessionStarted")
        assert test_manager.count() == 0

    def test_start_with_bad_config_reports_config_error(self, client, monkeypatch):
        manager = SessionManager(config_provider=_failing_provider)
        monkeypatch.setattr(ws_router, "session_manager", manager)
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "start"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "CONFIG_ERROR"
        assert manager.count() == 0
