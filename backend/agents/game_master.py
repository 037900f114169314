"""
Game Master — Pure deterministic Python, no LLM, no I/O.

Responsibilities:
- Seating: random permutation of player numbers, one human among the agents
- Topic selection without repeats
- Vote parsing, repair, tallying and tie detection
- Revote voter selection and tie-of-a-tie resolution
- Win condition checks

Every method takes its randomness from the caller so results are reproducible
under a seeded random.Random. Nothing here holds session state.
"""
import logging
import random
import re
from collections import Counter
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from models.game import (
    AgentIdentity, Ballot, Player, PlayerRole, SessionResult, SessionState, Vote,
)

logger = logging.getLogger(__name__)

VOTE_PATTERN = re.compile(r"I vote for Player\s*(\d+)", re.IGNORECASE)


class TallyKind(str, Enum):
    ELIMINATED = "eliminated"
    TIE = "tie"
    ALL_ELIMINATED = "all-eliminated"


class TallyResult(BaseModel):
    kind: TallyKind
    eliminated: List[int] = []
    tied: List[int] = []
    counts: Dict[int, int] = {}
    votes: List[Vote] = []

    def to_summary(self) -> Dict[str, object]:
        """Wire shape for the voteSummary event."""
        summary: Dict[str, object] = {
            "votes": [{"voter": v.voter, "target": v.target} for v in self.votes],
            "counts": {str(k): c for k, c in self.counts.items()},
            "result": self.kind.value,
        }
        if self.kind == TallyKind.ELIMINATED:
            summary["eliminated"] = self.eliminated[0]
        elif self.kind == TallyKind.ALL_ELIMINATED:
            summary["eliminated"] = list(self.eliminated)
        else:
            summary["tiedPlayers"] = list(self.tied)
        return summary


class GameMaster:
    """
    Deterministic rules engine shared by every session.
    The same tally algorithm serves the main vote and the tiebreaker revote;
    only the voter pool and candidate pool differ.
    """

    # ── Seating ────────────────────────────────────────────────────────────────

    def assign_players(
        self, identities: Sequence[str], rng: random.Random
    ) -> Tuple[List[Player], int]:
        """
        Shuffle seat numbers 1..N once; the first drawn seat goes to the human,
        the rest to the agents in configured identity order.
        Returns (players sorted by number, human_number).
        """
        n = len(identities) + 1
        seats = list(range(1, n + 1))
        rng.shuffle(seats)

        human_number = seats[0]
        players = [Player(number=human_number, role=PlayerRole.HUMAN)]
        for seat, identity in zip(seats[1:], identities):
            players.append(Player(
                number=seat,
                role=PlayerRole.AGENT,
                agent_identity=AgentIdentity(identity),
            ))
        players.sort(key=lambda p: p.number)
        return players, human_number

    # ── Topics ─────────────────────────────────────────────────────────────────

    def pick_topic(
        self,
        pool: Sequence[str],
        used: Iterable[str],
        rng: random.Random,
        current: Optional[str] = None,
    ) -> Tuple[str, List[str]]:
        """
        Pick uniformly among topics not yet used this session.
        When the pool is exhausted the used-set is reset and the cycle starts
        again, excluding the topic just played when the pool allows it.
        Returns (topic, updated used list).
        """
        used_list = list(used)
        available = [t for t in pool if t not in used_list]
        if not available:
            logger.info("Topic pool exhausted after %d topics — starting a new cycle", len(used_list))
            used_list = []
            available = [t for t in pool if t != current] or list(pool)
        topic = rng.choice(available)
        used_list.append(topic)
        return topic, used_list

    # ── Votes ──────────────────────────────────────────────────────────────────

    @staticmethod
    def parse_vote_target(utterance: str) -> Optional[int]:
        """Extract N from "I vote for Player N", or None when absent."""
        match = VOTE_PATTERN.search(utterance or "")
        return int(match.group(1)) if match else None

    def resolve_vote(
        self, ballot: Ballot, candidates: Sequence[int], rng: random.Random
    ) -> Optional[Vote]:
        """
        Turn a raw ballot into a valid Vote. A missing, self-directed or
        out-of-pool target is replaced by a uniformly random valid candidate.
        Returns None only when the voter has no valid candidate at all.
        """
        valid = [c for c in candidates if c != ballot.voter]
        if not valid:
            logger.warning("Voter %d has no valid candidate in %s — ballot dropped", ballot.voter, list(candidates))
            return None

        target = self.parse_vote_target(ballot.utterance)
        if target in valid:
            return Vote(voter=ballot.voter, target=target, rationale=ballot.utterance)

        repaired = rng.choice(valid)
        logger.info(
            "Repaired vote from Player %d: parsed %s, substituted Player %d",
            ballot.voter, target, repaired,
        )
        return Vote(voter=ballot.voter, target=repaired, rationale=ballot.utterance, repaired=True)

    def tally(self, votes: Sequence[Vote]) -> TallyResult:
        """
        Count votes per target. A single leader is eliminated; several
        leaders sharing the maximum count form a tie.
        """
        if not votes:
            raise ValueError("Cannot tally an empty vote set")

        counts = Counter(v.target for v in votes)
        max_votes = max(counts.values())
        leaders = sorted(t for t, c in counts.items() if c == max_votes)
        ordered_counts = {t: counts[t] for t in sorted(counts)}

        if len(leaders) == 1:
            logger.info("Vote result: Player %d eliminated with %d votes", leaders[0], max_votes)
            return TallyResult(
                kind=TallyKind.ELIMINATED,
                eliminated=leaders,
                counts=ordered_counts,
                votes=list(votes),
            )
        logger.info("Vote tie between %s with %d votes each", leaders, max_votes)
        return TallyResult(
            kind=TallyKind.TIE,
            tied=leaders,
            counts=ordered_counts,
            votes=list(votes),
        )

    def run_tally(
        self, ballots: Sequence[Ballot], candidates: Sequence[int], rng: random.Random
    ) -> TallyResult:
        """Resolve every ballot in the given order, then tally."""
        votes = [v for v in (self.resolve_vote(b, candidates, rng) for b in ballots) if v]
        return self.tally(votes)

    # ── Tiebreaker ─────────────────────────────────────────────────────────────

    @staticmethod
    def revote_voters(alive_agents: Sequence[int], tied: Sequence[int]) -> List[int]:
        """
        Living agents outside the tie vote. When the tie covers every living
        agent, the tied agents vote among themselves instead.
        """
        outside = sorted(n for n in alive_agents if n not in tied)
        if outside:
            return outside
        return sorted(n for n in alive_agents if n in tied)

    def resolve_revote(self, votes: Sequence[Vote], tied: Sequence[int]) -> TallyResult:
        """
        Tally a revote. A repeat tie is final: every still-tied player is
        eliminated. An empty revote eliminates the whole tied set.
        """
        if not votes:
            logger.warning("Revote produced no ballots — eliminating all tied players %s", list(tied))
            return TallyResult(kind=TallyKind.ALL_ELIMINATED, eliminated=sorted(tied))

        result = self.tally(votes)
        if result.kind == TallyKind.TIE:
            return TallyResult(
                kind=TallyKind.ALL_ELIMINATED,
                eliminated=result.tied,
                tied=result.tied,
                counts=result.counts,
                votes=result.votes,
            )
        return result

    # ── Win condition check ───────────────────────────────────────────────────

    @staticmethod
    def check_win_condition(state: SessionState) -> Optional[SessionResult]:
        """
        Human eliminated → lose. Human alive with at most two players left → win.
        Returns None while the game continues.
        """
        human = state.player(state.human_number)
        if human is None or not human.alive:
            return SessionResult.LOSE
        if len(state.alive_players()) <= 2:
            return SessionResult.WIN
        return None


# Module-level singleton
game_master = GameMaster()
