"""Agent connector tests -- fallback wrapper totality, test mode, prompts, registry."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from agents import agent_connector
from agents.agent_connector import (
    FALLBACK_RESPONSES, ClaudeConnector, FallbackConnector, GeminiConnector, GrokConnector,
    OpenAIConnector, ProviderUnavailable, get_connector,
)
from agents.prompts import build_defense_prompt, build_system_prompt, build_vote_prompt
from config import Settings
from conftest import make_config
from models.game import AgentContext, ChatEvent


@pytest.fixture
def ctx():
    return AgentContext(
        player_number=2,
        alive_players=[1, 2, 3, 4, 5],
        topic="Pineapple on pizza: yes or no?",
        transcript=[ChatEvent(player=1, text="pineapple is a crime"), ChatEvent(player=3, text="lol")],
    )


def wrap(inner, **config_overrides):
    config = make_config(**config_overrides)
    return FallbackConnector(inner, config_provider=lambda: config, rng=random.Random(0), label="test")


class TestFallbackConnector:
    @pytest.mark.asyncio
    async def test_passes_backend_text_through(self, ctx):
        inner = AsyncMock()
        inner.respond_to_chat.return_value = "  honestly pineapple slaps  "
        assert await wrap(inner).respond_to_chat(ctx) == "honestly pineapple slaps"
        inner.respond_to_chat.assert_awaited_once_with(ctx)

    @pytest.mark.asyncio
    async def test_provider_error_becomes_fallback(self, ctx):
        inner = AsyncMock()
        inner.cast_vote.side_effect = RuntimeError("503 from provider")
        assert await wrap(inner).cast_vote(ctx) in FALLBACK_RESPONSES

    @pytest.mark.asyncio
    async def test_missing_key_becomes_fallback(self, ctx):
        inner = AsyncMock()
        inner.write_defense.side_effect = ProviderUnavailable("no key")
        assert await wrap(inner).write_defense(ctx) in FALLBACK_RESPONSES

    @pytest.mark.asyncio
    async def test_empty_output_becomes_fallback(self, ctx):
        inner = AsyncMock()
        inner.respond_to_chat.return_value = "   "
        assert await wrap(inner).respond_to_chat(ctx) in FALLBACK_RESPONSES

    @pytest.mark.asyncio
    async def test_non_string_output_becomes_fallback(self, ctx):
        inner = AsyncMock()
        inner.respond_to_chat.return_value = None
        assert await wrap(inner).respond_to_chat(ctx) in FALLBACK_RESPONSES

    @pytest.mark.asyncio
    async def test_slow_backend_times_out_to_fallback(self, ctx):
        class Slow:
            async def respond_to_chat(self, ctx):
                await asyncio.sleep(10)
                return "too late"

        connector = wrap(Slow(), agent_call_timeout=0.05)
        assert await connector.respond_to_chat(ctx) in FALLBACK_RESPONSES

    @pytest.mark.asyncio
    async def test_test_mode_never_calls_the_backend(self, ctx):
        inner = AsyncMock()
        result = await wrap(inner, test_mode=True).cast_vote(ctx)
        assert result in FALLBACK_RESPONSES
        inner.cast_vote.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, ctx):
        started = asyncio.Event()

        class Hanging:
            async def respond_to_chat(self, ctx):
                started.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(wrap(Hanging(), agent_call_timeout=5).respond_to_chat(ctx))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestBackends:
    @pytest.mark.asyncio
    async def test_backends_without_keys_are_unavailable(self, ctx):
        blank = Settings(openai_api_key="", gemini_api_key="", anthropic_api_key="", xai_api_key="")
        for cls in (OpenAIConnector, GrokConnector, GeminiConnector, ClaudeConnector):
            with pytest.raises(ProviderUnavailable):
                await cls(blank).respond_to_chat(ctx)

    @pytest.mark.asyncio
    async def test_generate_receives_built_prompts(self, ctx):
        backend = OpenAIConnector(Settings())
        backend.generate = AsyncMock(return_value="I vote for Player 3! too casual")
        assert await backend.cast_vote(ctx) == "I vote for Player 3! too casual"
        system, prompt = backend.generate.await_args.args
        assert "Player 2" in system
        assert "I vote for Player [number]!" in prompt

    def test_registry_caches_one_connector_per_identity(self):
        agent_connector.clear_connectors()
        try:
            assert get_connector("claude") is get_connector("claude")
            assert get_connector("claude") is not get_connector("grok")
            with pytest.raises(KeyError):
                get_connector("clippy")
        finally:
            agent_connector.clear_connectors()


class TestPrompts:
    def test_system_prompt_names_the_player_and_roster(self, ctx):
        prompt = build_system_prompt(ctx)
        assert '"Player 2"' in prompt
        assert "Player 1, Player 2, Player 3, Player 4, Player 5" in prompt

    def test_vote_prompt_lists_everyone_but_self(self, ctx):
        prompt = build_vote_prompt(ctx)
        assert "Player 1, Player 3, Player 4, Player 5" in prompt
        assert "[Player 1]: pineapple is a crime" in prompt

    def test_revote_prompt_includes_defenses_of_tied_players(self, ctx):
        revote_ctx = ctx.model_copy(update={
            "tied_players": [3, 5],
            "defenses": {3: "I always use semicolons", 5: "(No response submitted)"},
        })
        prompt = build_vote_prompt(revote_ctx)
        assert "[Player 3 defense]: I always use semicolons" in prompt
        assert "[Player 5 defense]: (No response submitted)" in prompt
        assert "tied players: Player 3, Player 5" in prompt

    def test_defense_prompt_names_the_other_tied_players(self, ctx):
        defense_ctx = ctx.model_copy(update={"tied_players": [2, 4]})
        prompt = build_defense_prompt(defense_ctx)
        assert "tiebreaker with Player 4." in prompt
