from pydantic import BaseModel, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List, Dict

from models.game import AgentIdentity


DEFAULT_TOPICS: List[str] = [
    "What's the best programming language and why?",
    "Is a hot dog a sandwich? Debate.",
    "Plan a group vacation together. Where should we go?",
    "What's the most overrated movie of all time?",
    "If you could have dinner with anyone, who would it be?",
    "What's the meaning of life?",
    "Pineapple on pizza: yes or no?",
    "What will the world look like in 100 years?",
    "What's the best way to spend a rainy day?",
    "If you could only eat one food for the rest of your life, what would it be?",
    "What's the scariest thing about artificial intelligence?",
    "Rank the seasons from best to worst",
    "What's an unpopular opinion you have?",
    "If you were invisible for a day, what would you do?",
    "What's the greatest invention in human history?",
]

DEFAULT_COLOR_MAP: Dict[str, str] = {
    "chatgpt": "#10a37f",
    "gemini": "#4285f4",
    "claude": "#d4a574",
    "grok": "#ffffff",
    "human": "#ff0055",
}


class ConfigurationError(Exception):
    """Raised when the game configuration cannot be read or is inconsistent."""


class Settings(BaseSettings):
    openai_api_key: str = ""
    gemini_api_key: str = ""
    anthropic_api_key: str = ""
    xai_api_key: str = ""
    chatgpt_model: str = "gpt-4o-mini"
    gemini_model: str = "gemini-2.0-flash"
    claude_model: str = "claude-3-haiku-20240307"
    grok_model: str = "grok-4"
    xai_base_url: str = "https://api.x.ai/v1"
    agent_max_tokens: int = 150
    agent_temperature: float = 0.9

    # Round pacing (seconds)
    round_duration: int = 60
    tiebreaker_duration: int = 15
    agent_min_delay: float = 5.0
    agent_max_delay: float = 20.0
    silence_breaker_delay: float = 5.0
    vote_reveal_delay: float = 1.5
    defense_reveal_delay: float = 0.5
    elimination_reveal_delay: float = 2.0
    summary_delay: float = 1.5
    agent_call_timeout: float = 30.0
    max_agent_message_length: int = 500

    # Forces every agent call down the fallback path (no provider traffic)
    test_mode: bool = False
    agent_identities: List[str] = ["chatgpt", "gemini", "claude", "grok"]
    topics: List[str] = DEFAULT_TOPICS
    color_map: Dict[str, str] = DEFAULT_COLOR_MAP

    # CORS origins — set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


class GameConfig(BaseModel):
    """Immutable snapshot of the settings a single session reads."""

    model_config = {"frozen": True}

    round_duration: int
    tiebreaker_duration: int
    agent_min_delay: float
    agent_max_delay: float
    silence_breaker_delay: float
    vote_reveal_delay: float
    defense_reveal_delay: float
    elimination_reveal_delay: float
    summary_delay: float
    agent_call_timeout: float
    max_agent_message_length: int
    test_mode: bool
    agent_identities: List[str]
    topics: List[str]
    color_map: Dict[str, str]

    @model_validator(mode="after")
    def _check_consistency(self) -> "GameConfig":
        if self.round_duration < 1 or self.tiebreaker_duration < 1:
            raise ValueError("round and tiebreaker durations must be at least 1 second")
        if self.agent_min_delay < 0 or self.agent_max_delay < self.agent_min_delay:
            raise ValueError("agent delay range must satisfy 0 <= min <= max")
        if len(self.agent_identities) < 2:
            raise ValueError("at least two agent identities are required")
        unknown = [i for i in self.agent_identities if i not in {a.value for a in AgentIdentity}]
        if unknown:
            raise ValueError(f"unknown agent identities: {unknown}")
        if not self.topics:
            raise ValueError("topic pool must not be empty")
        if self.max_agent_message_length < 1:
            raise ValueError("max_agent_message_length must be positive")
        return self

    def public(self) -> Dict[str, object]:
        """Client-safe subset (no pacing internals, no test flag)."""
        return {
            "roundDuration": self.round_duration,
            "tiebreakerDuration": self.tiebreaker_duration,
            "playerCount": len(self.agent_identities) + 1,
            "colorMap": dict(self.color_map),
        }


def load_game_config(source: Optional[Settings] = None) -> GameConfig:
    """
    Configuration provider: re-reads settings on every call so changes to the
    environment between sessions are picked up. Any read or validation failure
    surfaces as ConfigurationError.
    """
    try:
        current = source if source is not None else Settings()
        fields = {name: getattr(current, name) for name in GameConfig.model_fields}
        return GameConfig(**fields)
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError(f"Invalid game configuration: {exc}") from exc


settings = Settings()
