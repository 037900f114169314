"""
Agent Connector — one LLM backend per agent identity.

Identities and their providers:
  chatgpt → OpenAI chat completions
  gemini  → google-genai (async models.generate_content)
  claude  → Anthropic messages
  grok    → OpenAI SDK pointed at the xAI base URL

Every connector handed to a session is wrapped in FallbackConnector, which makes
the three capabilities total: timeouts, provider errors, missing keys and empty
output all collapse into a canned chat line. Callers never see an exception.
"""
import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional, Protocol

import anthropic
import openai
from google import genai
from google.genai import types

from agents.prompts import (
    build_chat_prompt, build_defense_prompt, build_system_prompt, build_vote_prompt,
)
from config import GameConfig, Settings, load_game_config, settings as default_settings
from models.game import AgentContext, AgentIdentity

logger = logging.getLogger(__name__)

FALLBACK_RESPONSES = [
    "hmm interesting point",
    "yeah I can see that",
    "not sure I agree tbh",
    "lol fair enough",
    "that's a good question actually",
    "I think there's more to it than that",
    "hard to say really",
]


class ProviderUnavailable(Exception):
    """The backend cannot be called (no API key configured)."""


class AgentConnector(Protocol):
    async def respond_to_chat(self, ctx: AgentContext) -> str: ...

    async def cast_vote(self, ctx: AgentContext) -> str: ...

    async def write_defense(self, ctx: AgentContext) -> str: ...


# ── Provider backends ─────────────────────────────────────────────────────────

class BackendConnector(ABC):
    """
    Shared prompt plumbing. Subclasses implement generate(); it may raise,
    the fallback wrapper owns error handling.
    """

    identity: AgentIdentity

    def __init__(self, app_settings: Optional[Settings] = None):
        self._settings = app_settings or default_settings

    @abstractmethod
    async def generate(self, system: str, prompt: str) -> str:
        ...

    async def respond_to_chat(self, ctx: AgentContext) -> str:
        return await self.generate(build_system_prompt(ctx), build_chat_prompt(ctx))

    async def cast_vote(self, ctx: AgentContext) -> str:
        return await self.generate(build_system_prompt(ctx), build_vote_prompt(ctx))

    async def write_defense(self, ctx: AgentContext) -> str:
        return await self.generate(build_system_prompt(ctx), build_defense_prompt(ctx))


class OpenAIConnector(BackendConnector):
    identity = AgentIdentity.CHATGPT

    def __init__(self, app_settings: Optional[Settings] = None):
        super().__init__(app_settings)
        self._client: Optional[openai.AsyncOpenAI] = None

    def _api_key(self) -> str:
        return self._settings.openai_api_key

    def _model(self) -> str:
        return self._settings.chatgpt_model

    def _base_url(self) -> Optional[str]:
        return None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            key = self._api_key()
            if not key:
                raise ProviderUnavailable(f"No API key configured for {self.identity.value}")
            self._client = openai.AsyncOpenAI(api_key=key, base_url=self._base_url())
        return self._client

    async def generate(self, system: str, prompt: str) -> str:
        response = await self._get_client().chat.completions.create(
            model=self._model(),
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self._settings.agent_max_tokens,
            temperature=self._settings.agent_temperature,
        )
        return (response.choices[0].message.content or "").strip()


class GrokConnector(OpenAIConnector):
    identity = AgentIdentity.GROK

    def _api_key(self) -> str:
        return self._settings.xai_api_key

    def _model(self) -> str:
        return self._settings.grok_model

    def _base_url(self) -> Optional[str]:
        return self._settings.xai_base_url


class GeminiConnector(BackendConnector):
    identity = AgentIdentity.GEMINI

    def __init__(self, app_settings: Optional[Settings] = None):
        super().__init__(app_settings)
        self._client: Optional[genai.Client] = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self._settings.gemini_api_key:
                raise ProviderUnavailable("GEMINI_API_KEY not set")
            self._client = genai.Client(api_key=self._settings.gemini_api_key)
        return self._client

    async def generate(self, system: str, prompt: str) -> str:
        response = await self._get_client().aio.models.generate_content(
            model=self._settings.gemini_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=system,
                temperature=self._settings.agent_temperature,
                max_output_tokens=self._settings.agent_max_tokens,
            ),
        )
        return (response.text or "").strip()


class ClaudeConnector(BackendConnector):
    identity = AgentIdentity.CLAUDE

    def __init__(self, app_settings: Optional[Settings] = None):
        super().__init__(app_settings)
        self._client: Optional[anthropic.AsyncAnthropic] = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._settings.anthropic_api_key:
                raise ProviderUnavailable("ANTHROPIC_API_KEY not set")
            self._client = anthropic.AsyncAnthropic(api_key=self._settings.anthropic_api_key)
        return self._client

    async def generate(self, system: str, prompt: str) -> str:
        response = await self._get_client().messages.create(
            model=self._settings.claude_model,
            max_tokens=self._settings.agent_max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        return "".join(parts).strip()


# ── Uniform fallback decorator ────────────────────────────────────────────────

class FallbackConnector:
    """
    Wraps any connector so every capability always returns a string.
    Test mode (read from the config provider on each call) skips the backend.
    """

    def __init__(
        self,
        inner: AgentConnector,
        config_provider: Callable[[], GameConfig] = load_game_config,
        rng: Optional[random.Random] = None,
        label: str = "agent",
    ):
        self._inner = inner
        self._config_provider = config_provider
        self._rng = rng or random.Random()
        self._label = label

    def fallback(self) -> str:
        return self._rng.choice(FALLBACK_RESPONSES)

    async def _guard(self, kind: str, call: Callable[[], Awaitable[str]]) -> str:
        try:
            config = self._config_provider()
            if config.test_mode:
                return self.fallback()
            text = await asyncio.wait_for(call(), timeout=config.agent_call_timeout)
        except asyncio.CancelledError:
            raise
        except ProviderUnavailable as exc:
            logger.warning("[%s] %s unavailable (%s) — using fallback", self._label, kind, exc)
            return self.fallback()
        except asyncio.TimeoutError:
            logger.error("[%s] %s call timed out — using fallback", self._label, kind)
            return self.fallback()
        except Exception as exc:
            logger.error("[%s] %s call failed: %s", self._label, kind, exc)
            return self.fallback()

        if not isinstance(text, str) or not text.strip():
            logger.warning("[%s] %s returned empty output — using fallback", self._label, kind)
            return self.fallback()
        return text.strip()

    async def respond_to_chat(self, ctx: AgentContext) -> str:
        return await self._guard("chat", lambda: self._inner.respond_to_chat(ctx))

    async def cast_vote(self, ctx: AgentContext) -> str:
        return await self._guard("vote", lambda: self._inner.cast_vote(ctx))

    async def write_defense(self, ctx: AgentContext) -> str:
        return await self._guard("defense", lambda: self._inner.write_defense(ctx))


# ── Registry ──────────────────────────────────────────────────────────────────

_BACKENDS: Dict[str, Callable[[Optional[Settings]], BackendConnector]] = {
    AgentIdentity.CHATGPT.value: OpenAIConnector,
    AgentIdentity.GEMINI.value: GeminiConnector,
    AgentIdentity.CLAUDE.value: ClaudeConnector,
    AgentIdentity.GROK.value: GrokConnector,
}

# Process-wide connector cache; SDK clients are shared by all sessions
_connectors: Dict[str, FallbackConnector] = {}


def get_connector(identity: str) -> FallbackConnector:
    """Return (or create) the fallback-wrapped connector for an identity."""
    if identity not in _connectors:
        backend_cls = _BACKENDS.get(identity)
        if backend_cls is None:
            raise KeyError(f"Unknown agent identity: {identity}")
        _connectors[identity] = FallbackConnector(backend_cls(None), label=identity)
    return _connectors[identity]


def clear_connectors() -> None:
    _connectors.clear()
