from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Set
from enum import Enum
from datetime import datetime, timezone


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class PlayerRole(str, Enum):
    HUMAN = "human"
    AGENT = "agent"


class AgentIdentity(str, Enum):
    CHATGPT = "chatgpt"
    GEMINI = "gemini"
    CLAUDE = "claude"
    GROK = "grok"


class Phase(str, Enum):
    CHAT = "chat"
    VOTING = "voting"
    TIEBREAKER = "tiebreaker"
    ELIMINATION = "elimination"
    GAME_OVER = "game_over"


class SessionResult(str, Enum):
    WIN = "win"
    LOSE = "lose"


# Shown when a player is eliminated and their identity is revealed
DISPLAY_NAMES: Dict[str, str] = {
    AgentIdentity.CHATGPT.value: "ChatGPT",
    AgentIdentity.GEMINI.value: "Gemini",
    AgentIdentity.CLAUDE.value: "Claude",
    AgentIdentity.GROK.value: "Grok",
}

HUMAN_REVEAL_NAME = "THE HUMAN"
NO_DEFENSE_PLACEHOLDER = "(No response submitted)"


class Player(BaseModel):
    number: int
    role: PlayerRole
    agent_identity: Optional[AgentIdentity] = None
    alive: bool = True

    @property
    def is_human(self) -> bool:
        return self.role == PlayerRole.HUMAN

    @property
    def revealed_identity(self) -> str:
        if self.is_human:
            return HUMAN_REVEAL_NAME
        return DISPLAY_NAMES.get(self.agent_identity.value, self.agent_identity.value)

    def to_public(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "role": self.role.value,
            "identity": self.agent_identity.value if self.agent_identity else None,
            "displayName": self.revealed_identity,
            "alive": self.alive,
        }


class ChatEvent(BaseModel):
    player: int
    text: str
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "player": self.player,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


class Ballot(BaseModel):
    """A raw, unvalidated vote utterance as returned by an agent."""

    voter: int
    utterance: str


class Vote(BaseModel):
    voter: int
    target: int
    rationale: str = ""
    repaired: bool = False


class TiebreakState(BaseModel):
    tied_players: List[int]
    defenses: Dict[int, str] = {}
    revotes: List[Vote] = []
    countdown_elapsed: bool = False
    pending_defenses: Set[int] = set()


class AgentContext(BaseModel):
    """
    Immutable snapshot of what an agent may see, taken on the session worker at
    dispatch time so in-flight calls never read live session state.
    """

    model_config = {"frozen": True}

    player_number: int
    alive_players: List[int]
    topic: str
    transcript: List[ChatEvent] = []
    tied_players: List[int] = []
    defenses: Dict[int, str] = {}
    human_count: int = 1

    @property
    def other_players(self) -> List[int]:
        return [n for n in self.alive_players if n != self.player_number]


class SessionState(BaseModel):
    id: str
    phase: Phase = Phase.CHAT
    round: int = 1
    players: List[Player]
    human_number: int
    topic: str
    used_topics: List[str] = []
    transcript: List[ChatEvent] = []
    vote_record: Dict[int, Vote] = {}
    tiebreak: Optional[TiebreakState] = None
    result: Optional[SessionResult] = None
    created_at: datetime = Field(default_factory=_utcnow)

    def player(self, number: int) -> Optional[Player]:
        for p in self.players:
            if p.number == number:
                return p
        return None

    def alive_players(self) -> List[Player]:
        return [p for p in self.players if p.alive]

    def alive_agents(self) -> List[Player]:
        return [p for p in self.players if p.alive and not p.is_human]

    def alive_numbers(self) -> List[int]:
        return [p.number for p in self.players if p.alive]

    def roster(self) -> List[Dict[str, Any]]:
        return [p.to_public() for p in self.players]
