"""
Session Manager — registry of live game sessions, keyed by connection id.

A connection owns at most one session. Starting again on the same connection
tears the previous session down first; a disconnect destroys whatever the
connection owns.
"""
import asyncio
import logging
import random
from typing import Any, Callable, Dict, Optional

from agents.agent_connector import AgentConnector, get_connector
from agents.game_session import EventSink, GameSession
from config import GameConfig, load_game_config

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        config_provider: Callable[[], GameConfig] = load_game_config,
        connector_factory: Callable[[str], AgentConnector] = get_connector,
        rng_factory: Callable[[], random.Random] = random.Random,
        tick_interval: float = 1.0,
    ):
        self._config_provider = config_provider
        self._connector_factory = connector_factory
        self._rng_factory = rng_factory
        self._tick_interval = tick_interval
        self._sessions: Dict[str, GameSession] = {}
        self._lock = asyncio.Lock()

    async def start(self, connection_id: str, sink: EventSink) -> GameSession:
        """
        Create and start a session for the connection.
        Raises ConfigurationError before anything is created or replaced.
        """
        config = self._config_provider()

        async with self._lock:
            previous = self._sessions.pop(connection_id, None)
            if previous:
                logger.info("[%s] Replacing running session", connection_id)
                await previous.destroy()

            session = GameSession(
                connection_id,
                sink,
                config,
                connector_factory=self._connector_factory,
                config_provider=self._config_provider,
                rng=self._rng_factory(),
                tick_interval=self._tick_interval,
            )
            self._sessions[connection_id] = session
            await session.start()

        logger.info("[%s] Session started (%d active)", connection_id, len(self._sessions))
        return session

    def get(self, connection_id: str) -> Optional[GameSession]:
        return self._sessions.get(connection_id)

    def send_chat_message(self, connection_id: str, text: Any) -> bool:
        """Forward a chat line. Returns False when the connection has no session."""
        session = self._sessions.get(connection_id)
        if not session:
            return False
        session.send_chat_message(text)
        return True

    def submit_defense(self, connection_id: str, text: Any) -> bool:
        session = self._sessions.get(connection_id)
        if not session:
            return False
        session.submit_defense(text)
        return True

    async def destroy(self, connection_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(connection_id, None)
        if session:
            await session.destroy()

    async def shutdown(self) -> None:
        """Destroy every live session (application shutdown)."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.destroy()
        if sessions:
            logger.info("Session manager: %d sessions destroyed on shutdown", len(sessions))

    def count(self) -> int:
        return len(self._sessions)


# Module-level singleton
session_manager = SessionManager()
