"""Test fixtures -- fast game config, recording event sink, scripted agents."""

import asyncio
import random
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from agents.game_session import GameSession
from config import DEFAULT_COLOR_MAP, DEFAULT_TOPICS, GameConfig


def make_config(**overrides) -> GameConfig:
    """GameConfig with every reveal pause at zero and agent chatter disabled."""
    fields = dict(
        round_duration=1,
        tiebreaker_duration=1,
        agent_min_delay=100.0,
        agent_max_delay=100.0,
        silence_breaker_delay=100.0,
        vote_reveal_delay=0.0,
        defense_reveal_delay=0.0,
        elimination_reveal_delay=0.0,
        summary_delay=0.0,
        agent_call_timeout=1.0,
        max_agent_message_length=500,
        test_mode=False,
        agent_identities=["chatgpt", "gemini", "claude", "grok"],
        topics=list(DEFAULT_TOPICS),
        color_map=dict(DEFAULT_COLOR_MAP),
    )
    fields.update(overrides)
    return GameConfig(**fields)


class RecordingSink:
    """Event sink that keeps every event for later assertions."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def send(self, message: Dict[str, Any]) -> None:
        self.events.append(message)

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    async def wait_for(
        self,
        event_type: str,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        timeout: float = 5.0,
    ) -> Dict[str, Any]:
        async def _poll():
            while True:
                for event in self.events:
                    if event["type"] == event_type and (predicate is None or predicate(event)):
                        return event
                await asyncio.sleep(0.005)

        return await asyncio.wait_for(_poll(), timeout)


Reply = Union[str, Callable[[Any], str]]


class ScriptedAgent:
    """
    Agent connector double. Each reply is a string or a callable taking the
    AgentContext; every call's context is recorded.
    """

    def __init__(
        self,
        chat: Reply = "hey everyone",
        vote: Reply = "I vote for Player 1!",
        defense: Reply = "I am obviously an AI, look at my grammar.",
    ):
        self.chat = chat
        self.vote = vote
        self.defense = defense
        self.chat_calls: List[Any] = []
        self.vote_calls: List[Any] = []
        self.defense_calls: List[Any] = []

    @staticmethod
    def _reply(reply: Reply, ctx) -> str:
        return reply(ctx) if callable(reply) else reply

    async def respond_to_chat(self, ctx) -> str:
        self.chat_calls.append(ctx)
        return self._reply(self.chat, ctx)

    async def cast_vote(self, ctx) -> str:
        self.vote_calls.append(ctx)
        return self._reply(self.vote, ctx)

    async def write_defense(self, ctx) -> str:
        self.defense_calls.append(ctx)
        return self._reply(self.defense, ctx)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def agent():
    return ScriptedAgent()


@pytest_asyncio.fixture
async def build_session(sink, agent):
    """Factory for sessions wired to the recording sink and the scripted agent."""
    created: List[GameSession] = []

    def _build(config: Optional[GameConfig] = None, seed: int = 7, tick_interval: float = 0.01):
        session = GameSession(
            "test-session",
            sink,
            config or make_config(),
            connector_factory=lambda identity: agent,
            rng=random.Random(seed),
            tick_interval=tick_interval,
        )
        created.append(session)
        return session

    yield _build

    for session in created:
        await session.destroy()
