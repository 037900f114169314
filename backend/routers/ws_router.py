"""
WebSocket endpoint — one game session per connection.

URL: /ws

Connection flow:
  1. Accept connection, assign a connection id
  2. Send private "connected" message with the public game configuration
  3. Message loop (_handle_message dispatcher)
  4. On disconnect: destroy the connection's session

Client → server message types ({ type, data: { ... } }):
  ping     — keep-alive heartbeat → responds with "pong"
  start    — begin a new session (replaces any running one)
  message  — human chat line, data.text (chat phase only)
  defense  — human tiebreaker defense, data.text (tiebreaker phase only)

Server → client events are produced by the session itself (see GameSession).
"""
import json
import logging
import uuid
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from config import ConfigurationError, load_game_config
from services.session_manager import session_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


class WebSocketEventSink:
    """Event sink that delivers session events as JSON frames on one socket."""

    def __init__(self, ws: WebSocket, connection_id: str):
        self._ws = ws
        self.connection_id = connection_id

    async def send(self, message: Dict[str, Any]) -> None:
        await self._ws.send_json(message)

    async def error(self, message: str, code: str) -> None:
        try:
            await self._ws.send_json({"type": "error", "message": message, "code": code})
        except Exception as exc:
            logger.warning("[%s] error frame not delivered: %s", self.connection_id, exc)


# ── Message dispatcher ────────────────────────────────────────────────────────

async def _handle_message(
    sink: WebSocketEventSink, msg_type: str, data: Dict[str, Any]
) -> None:
    connection_id = sink.connection_id
    try:
        if msg_type == "ping":
            await sink.send({"type": "pong"})

        elif msg_type == "start":
            try:
                await session_manager.start(connection_id, sink)
            except ConfigurationError as exc:
                logger.error("[%s] Cannot start session: %s", connection_id, exc)
                await sink.error(str(exc), "CONFIG_ERROR")

        elif msg_type == "message":
            if not session_manager.send_chat_message(connection_id, data.get("text")):
                await sink.error("No session running — send 'start' first", "NO_SESSION")

        elif msg_type == "defense":
            if not session_manager.submit_defense(connection_id, data.get("text")):
                await sink.error("No session running — send 'start' first", "NO_SESSION")

        else:
            await sink.error(f"Unknown message type: {msg_type!r}", "UNKNOWN_TYPE")

    except Exception:
        logger.exception("[%s] Error handling message type=%s", connection_id, msg_type)
        await sink.error("Internal server error", "SERVER_ERROR")


# ── WebSocket endpoint ────────────────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    connection_id = uuid.uuid4().hex[:8]
    sink = WebSocketEventSink(ws, connection_id)
    logger.debug("[%s] connected", connection_id)

    try:
        config = load_game_config().public()
    except ConfigurationError as exc:
        logger.error("[%s] Configuration unavailable: %s", connection_id, exc)
        config = None
    await sink.send({"type": "connected", "connectionId": connection_id, "config": config})

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await sink.error("Invalid JSON", "PARSE_ERROR")
                continue
            if not isinstance(payload, dict):
                await sink.error("Expected a JSON object", "PARSE_ERROR")
                continue

            msg_type = payload.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
            await _handle_message(sink, msg_type, inner_data)

    except WebSocketDisconnect:
        pass
    finally:
        await session_manager.destroy(connection_id)
        logger.debug("[%s] disconnected", connection_id)
