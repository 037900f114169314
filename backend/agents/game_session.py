"""
Game Session — one per connection, one serialized worker per session.

Every input reaches the session as a command on its asyncio.Queue:
  - inbound commands from the client (chat line, tiebreaker defense)
  - timer fires (countdown tick, agent turn due, silence breaker)
  - agent-call completions (chat reply, vote, defense, revote)

Only the worker task mutates session state, so phase logic needs no locks.
Agent calls run as separate tasks that do nothing but post a completion
command tagged with the epoch they were dispatched in. Each phase entry bumps
the epoch; a completion from an older epoch is discarded on arrival.

Phase cycle:
  chat → voting → (tiebreaker)? → elimination → chat (next round) | game_over
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from agents.agent_connector import AgentConnector, get_connector
from agents.game_master import GameMaster, TallyKind, TallyResult, game_master
from config import ConfigurationError, GameConfig
from models.game import (
    AgentContext, Ballot, ChatEvent, NO_DEFENSE_PLACEHOLDER, Phase, SessionResult,
    SessionState, TiebreakState, Vote,
)
from services.timer_service import TimerService
from utils.text import clean_human_text, player_list, sanitize_agent_text

logger = logging.getLogger(__name__)

COUNTDOWN = "countdown"
SILENCE_BREAKER = "silence-breaker"

_END_MESSAGES = {
    SessionResult.LOSE: "You've been detected! Game over.",
    SessionResult.WIN: "You fooled the AIs! You survived The Turing Trap.",
}


class EventSink(Protocol):
    async def send(self, message: Dict[str, Any]) -> None: ...


# ── Commands ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BeginSession:
    pass


@dataclass(frozen=True)
class HumanChat:
    text: Any


@dataclass(frozen=True)
class HumanDefense:
    text: Any


@dataclass(frozen=True)
class CountdownTick:
    epoch: int


@dataclass(frozen=True)
class AgentTurnDue:
    player: int
    epoch: int


@dataclass(frozen=True)
class SilenceBreak:
    epoch: int


@dataclass(frozen=True)
class AgentReply:
    """Completion of an agent call. kind is chat | vote | defense | revote."""

    kind: str
    player: int
    epoch: int
    text: str


# ── Session ───────────────────────────────────────────────────────────────────

class GameSession:
    def __init__(
        self,
        session_id: str,
        sink: EventSink,
        config: GameConfig,
        connector_factory: Callable[[str], AgentConnector] = get_connector,
        config_provider: Optional[Callable[[], GameConfig]] = None,
        rng: Optional[random.Random] = None,
        rules: GameMaster = game_master,
        tick_interval: float = 1.0,
    ):
        self.id = session_id
        self._sink = sink
        self._config = config
        self._config_provider = config_provider
        self._rng = rng or random.Random()
        self._rules = rules
        self._tick_interval = tick_interval
        self._timers = TimerService(owner=session_id)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._closed = False

        self._epoch = 0
        self._countdown = 0
        self._typing: Set[int] = set()
        self._expected: List[int] = []
        self._collected: Set[int] = set()
        self._revote_started = False

        players, human_number = rules.assign_players(config.agent_identities, self._rng)
        topic, used = rules.pick_topic(config.topics, [], self._rng)
        self.state = SessionState(
            id=session_id,
            players=players,
            human_number=human_number,
            topic=topic,
            used_topics=used,
        )
        self._connectors: Dict[int, AgentConnector] = {
            p.number: connector_factory(p.agent_identity.value)
            for p in players
            if not p.is_human
        }
        logger.info("[%s] Session created — human is Player %d", session_id, human_number)

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        self._worker = asyncio.create_task(self._run(), name=f"session-{self.id}")
        self._post(BeginSession())

    async def destroy(self) -> None:
        """
        Tear the session down: timers, in-flight agent calls, then the worker.
        After this returns the session emits nothing and schedules nothing.
        """
        if self._closed:
            return
        self._closed = True
        self._timers.close()
        for task in list(self._inflight):
            task.cancel()
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        logger.info("[%s] Session destroyed (phase=%s, round=%d)", self.id, self.state.phase.value, self.state.round)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def timers(self) -> TimerService:
        return self._timers

    # ── Command inlet ─────────────────────────────────────────────────────────

    def send_chat_message(self, text: Any) -> None:
        self._post(HumanChat(text))

    def submit_defense(self, text: Any) -> None:
        self._post(HumanDefense(text))

    # ── Worker ────────────────────────────────────────────────────────────────

    def _post(self, command: object) -> None:
        if not self._closed:
            self._queue.put_nowait(command)

    async def _run(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                await self._dispatch(command)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] Unhandled error processing %s", self.id, type(command).__name__)
            finally:
                self._queue.task_done()

    async def _dispatch(self, command: object) -> None:
        if isinstance(command, BeginSession):
            await self._begin()
        elif isinstance(command, HumanChat):
            await self._on_human_chat(command)
        elif isinstance(command, HumanDefense):
            await self._on_human_defense(command)
        elif isinstance(command, CountdownTick):
            await self._on_countdown_tick(command)
        elif isinstance(command, AgentTurnDue):
            await self._on_agent_turn(command)
        elif isinstance(command, SilenceBreak):
            await self._on_silence_break(command)
        elif isinstance(command, AgentReply):
            await self._on_agent_reply(command)
        else:
            logger.warning("[%s] Unknown command %r", self.id, command)

    # ── Emitting ──────────────────────────────────────────────────────────────

    async def _emit(self, event_type: str, **data: Any) -> None:
        if self._closed:
            return
        try:
            await self._sink.send({"type": event_type, **data})
        except Exception as exc:
            logger.warning("[%s] Event %s could not be delivered: %s", self.id, event_type, exc)

    async def _system(self, text: str) -> None:
        await self._emit("systemMessage", text=text)

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def _enter(self, phase: Phase) -> None:
        """Phase entry: new epoch, every outstanding timer cancelled."""
        self.state.phase = phase
        self._epoch += 1
        self._timers.stop_all()
        self._typing.clear()

    # ── Agent calls ───────────────────────────────────────────────────────────

    def _context_for(self, player: int) -> AgentContext:
        tb = self.state.tiebreak
        return AgentContext(
            player_number=player,
            alive_players=self.state.alive_numbers(),
            topic=self.state.topic,
            transcript=list(self.state.transcript),
            tied_players=list(tb.tied_players) if tb else [],
            defenses=dict(tb.defenses) if tb else {},
        )

    def _dispatch_agent(self, kind: str, player: int) -> None:
        """Start one agent call in its own task; the result comes back as a command."""
        connector = self._connectors[player]
        ctx = self._context_for(player)
        call = {
            "chat": connector.respond_to_chat,
            "vote": connector.cast_vote,
            "revote": connector.cast_vote,
            "defense": connector.write_defense,
        }[kind]
        task = asyncio.create_task(
            self._call_agent(kind, player, self._epoch, call, ctx),
            name=f"agent-{self.id}-{kind}-{player}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _call_agent(self, kind: str, player: int, epoch: int, call, ctx: AgentContext) -> None:
        try:
            text = await call(ctx)
        except asyncio.CancelledError:
            raise
        except Exception:
            # An empty reply still completes the fan-in; votes get repaired
            logger.exception("[%s] %s call for Player %d raised", self.id, kind, player)
            text = ""
        self._post(AgentReply(kind=kind, player=player, epoch=epoch, text=text if isinstance(text, str) else ""))

    async def _on_agent_reply(self, reply: AgentReply) -> None:
        if reply.epoch != self._epoch:
            logger.debug("[%s] Discarding stale %s reply from Player %d", self.id, reply.kind, reply.player)
            return
        if reply.kind == "chat":
            await self._on_agent_chat(reply)
        elif reply.kind == "vote":
            await self._on_vote(reply)
        elif reply.kind == "defense":
            await self._on_defense(reply)
        elif reply.kind == "revote":
            await self._on_revote(reply)

    # ── Chat phase ────────────────────────────────────────────────────────────

    async def _begin(self) -> None:
        await self._emit(
            "sessionStarted",
            humanNumber=self.state.human_number,
            players=self.state.roster(),
            topic=self.state.topic,
            round=self.state.round,
            roundDuration=self._config.round_duration,
            colorMap=dict(self._config.color_map),
        )
        await self._enter_chat()

    async def _enter_chat(self) -> None:
        self._enter(Phase.CHAT)
        await self._emit("phaseChanged", phase=Phase.CHAT.value)
        self._start_countdown(self._config.round_duration)
        await self._emit("timerTick", seconds=self._countdown)
        for agent in self.state.alive_agents():
            self._schedule_agent_turn(agent.number)
        self._timers.after(
            self._config.silence_breaker_delay,
            partial(self._post, SilenceBreak(self._epoch)),
            key=SILENCE_BREAKER,
        )

    def _start_countdown(self, seconds: int) -> None:
        self._countdown = seconds
        self._timers.every(
            self._tick_interval, partial(self._post, CountdownTick(self._epoch)), key=COUNTDOWN
        )

    def _schedule_agent_turn(self, player: int) -> None:
        if self.state.phase != Phase.CHAT:
            return
        delay = self._rng.uniform(self._config.agent_min_delay, self._config.agent_max_delay)
        self._timers.after(
            delay, partial(self._post, AgentTurnDue(player, self._epoch)), key=f"agent-{player}"
        )

    async def _on_countdown_tick(self, tick: CountdownTick) -> None:
        if tick.epoch != self._epoch or self._countdown <= 0:
            return
        self._countdown -= 1
        await self._emit("timerTick", seconds=self._countdown)
        if self._countdown > 0:
            return
        self._timers.cancel(COUNTDOWN)
        if self.state.phase == Phase.CHAT:
            await self._start_voting()
        elif self.state.phase == Phase.TIEBREAKER and self.state.tiebreak:
            self.state.tiebreak.countdown_elapsed = True
            await self._maybe_run_revote()

    async def _on_agent_turn(self, turn: AgentTurnDue) -> None:
        if turn.epoch != self._epoch or self.state.phase != Phase.CHAT:
            return
        player = self.state.player(turn.player)
        if not player or not player.alive or player.is_human or turn.player in self._typing:
            return
        await self._start_agent_message(turn.player)

    async def _start_agent_message(self, player: int) -> None:
        self._typing.add(player)
        await self._emit("agentTyping", player=player)
        self._dispatch_agent("chat", player)

    async def _on_agent_chat(self, reply: AgentReply) -> None:
        if self.state.phase != Phase.CHAT:
            return
        self._typing.discard(reply.player)
        player = self.state.player(reply.player)
        if not player or not player.alive:
            return
        text = sanitize_agent_text(reply.text, self._config.max_agent_message_length)
        if text:
            event = ChatEvent(player=reply.player, text=text)
            self.state.transcript.append(event)
            await self._emit("chatMessage", **event.to_wire())
            self._timers.cancel(SILENCE_BREAKER)
        await self._emit("agentStoppedTyping", player=reply.player)
        self._schedule_agent_turn(reply.player)

    async def _on_silence_break(self, command: SilenceBreak) -> None:
        if command.epoch != self._epoch or self.state.phase != Phase.CHAT:
            return
        if self.state.transcript:
            return
        idle = [p.number for p in self.state.alive_agents() if p.number not in self._typing]
        if not idle:
            return
        chosen = self._rng.choice(idle)
        self._timers.cancel(f"agent-{chosen}")
        logger.info("[%s] Silence breaker: prompting Player %d", self.id, chosen)
        await self._start_agent_message(chosen)

    async def _on_human_chat(self, command: HumanChat) -> None:
        if self.state.phase != Phase.CHAT:
            return
        text = clean_human_text(command.text, self._config.max_agent_message_length)
        if not text:
            return
        event = ChatEvent(player=self.state.human_number, text=text)
        self.state.transcript.append(event)
        await self._emit("chatMessage", **event.to_wire())
        self._timers.cancel(SILENCE_BREAKER)

    # ── Voting phase ──────────────────────────────────────────────────────────

    async def _start_voting(self) -> None:
        self._enter(Phase.VOTING)
        self.state.vote_record = {}
        self._expected = [p.number for p in self.state.alive_agents()]
        self._collected = set()

        await self._emit("phaseChanged", phase=Phase.VOTING.value)
        await self._system("Time's up! The agents are deliberating...")
        await self._emit("votingStarted", voters=list(self._expected))
        for voter in self._expected:
            self._dispatch_agent("vote", voter)

    async def _on_vote(self, reply: AgentReply) -> None:
        if self.state.phase != Phase.VOTING or reply.player in self._collected:
            return
        vote = self._rules.resolve_vote(
            Ballot(voter=reply.player, utterance=reply.text),
            self.state.alive_numbers(),
            self._rng,
        )
        if vote:
            self.state.vote_record[reply.player] = vote
        self._collected.add(reply.player)
        await self._emit("voteReady", player=reply.player)

        if self._collected >= set(self._expected):
            votes = [self.state.vote_record[n] for n in self._expected if n in self.state.vote_record]
            await self._reveal_votes(votes)
            result = self._rules.tally(votes)
            await self._announce(result)
            if result.kind == TallyKind.TIE:
                await self._start_tiebreaker(result.tied)
            else:
                await self._eliminate(result.eliminated)

    async def _reveal_votes(self, votes: List[Vote]) -> None:
        """Paced disclosure in tally order, independent of arrival order."""
        for vote in votes:
            await self._pause(self._config.vote_reveal_delay)
            await self._emit("voteRevealed", player=vote.voter, target=vote.target, text=vote.rationale)

    async def _announce(self, result: TallyResult) -> None:
        await self._pause(self._config.summary_delay)
        await self._emit("voteSummary", **result.to_summary())
        await self._pause(self._config.summary_delay)

    # ── Tiebreaker phase ──────────────────────────────────────────────────────

    async def _start_tiebreaker(self, tied: List[int]) -> None:
        self._enter(Phase.TIEBREAKER)
        tied_agents = {n for n in tied if n != self.state.human_number}
        self.state.tiebreak = TiebreakState(tied_players=list(tied), pending_defenses=tied_agents)
        self._revote_started = False
        duration = self._config.tiebreaker_duration

        await self._emit("phaseChanged", phase=Phase.TIEBREAKER.value)
        await self._system(
            f"It's a tie between {player_list(tied)}! "
            f"All tied players must prove they're an AI in {duration} seconds."
        )
        await self._emit(
            "tiebreakerStarted",
            tiedPlayers=list(tied),
            humanInTie=self.state.human_number in tied,
            duration=duration,
        )
        self._start_countdown(duration)
        await self._emit("timerTick", seconds=self._countdown)
        for player in sorted(tied_agents):
            self._dispatch_agent("defense", player)

    async def _on_defense(self, reply: AgentReply) -> None:
        tb = self.state.tiebreak
        if self.state.phase != Phase.TIEBREAKER or not tb or reply.player not in tb.pending_defenses:
            return
        tb.defenses[reply.player] = sanitize_agent_text(reply.text, self._config.max_agent_message_length)
        tb.pending_defenses.discard(reply.player)
        await self._maybe_run_revote()

    async def _on_human_defense(self, command: HumanDefense) -> None:
        tb = self.state.tiebreak
        human = self.state.human_number
        if self.state.phase != Phase.TIEBREAKER or not tb or tb.countdown_elapsed:
            return
        if human not in tb.tied_players or human in tb.defenses:
            return
        text = clean_human_text(command.text, self._config.max_agent_message_length)
        if text:
            tb.defenses[human] = text

    async def _maybe_run_revote(self) -> None:
        """Join point: every agent defense resolved AND the countdown elapsed."""
        tb = self.state.tiebreak
        if not tb or self._revote_started or not tb.countdown_elapsed or tb.pending_defenses:
            return
        self._revote_started = True
        # Sub-phase boundary: late defense replies are stale from here on
        self._epoch += 1
        self._timers.stop_all()

        if self.state.human_number in tb.tied_players:
            tb.defenses.setdefault(self.state.human_number, NO_DEFENSE_PLACEHOLDER)
        for player in tb.tied_players:
            await self._emit("defenseRevealed", player=player, text=tb.defenses.get(player, NO_DEFENSE_PLACEHOLDER))
            await self._pause(self._config.defense_reveal_delay)
        await self._pause(self._config.summary_delay)

        alive_agents = [p.number for p in self.state.alive_agents()]
        self._expected = self._rules.revote_voters(alive_agents, tb.tied_players)
        self._collected = set()
        tb.revotes = []
        await self._emit("votingStarted", voters=list(self._expected))
        if not self._expected:
            await self._finish_revote()
            return
        for voter in self._expected:
            self._dispatch_agent("revote", voter)

    async def _on_revote(self, reply: AgentReply) -> None:
        tb = self.state.tiebreak
        if self.state.phase != Phase.TIEBREAKER or not tb or reply.player in self._collected:
            return
        vote = self._rules.resolve_vote(
            Ballot(voter=reply.player, utterance=reply.text), tb.tied_players, self._rng
        )
        if vote:
            tb.revotes.append(vote)
        self._collected.add(reply.player)
        await self._emit("voteReady", player=reply.player)
        if self._collected >= set(self._expected):
            await self._finish_revote()

    async def _finish_revote(self) -> None:
        tb = self.state.tiebreak
        order = {n: i for i, n in enumerate(self._expected)}
        votes = sorted(tb.revotes, key=lambda v: order.get(v.voter, len(order)))
        await self._system("The revote results are in...")
        await self._reveal_votes(votes)
        result = self._rules.resolve_revote(votes, tb.tied_players)
        await self._announce(result)
        self.state.tiebreak = None
        await self._eliminate(result.eliminated)

    # ── Elimination & round turnover ──────────────────────────────────────────

    async def _eliminate(self, numbers: List[int]) -> None:
        self._enter(Phase.ELIMINATION)
        await self._emit("phaseChanged", phase=Phase.ELIMINATION.value)
        for number in numbers:
            player = self.state.player(number)
            if not player or not player.alive:
                continue
            player.alive = False
            logger.info("[%s] Player %d eliminated (%s)", self.id, number, player.revealed_identity)
            await self._emit(
                "playerEliminated",
                player=number,
                revealedIdentity=player.revealed_identity,
                isHuman=player.is_human,
            )
            await self._emit("rosterUpdated", players=self.state.roster())
            await self._pause(self._config.elimination_reveal_delay)

        result = self._rules.check_win_condition(self.state)
        if result:
            await self._end(result)
        else:
            await self._next_round()

    async def _end(self, result: SessionResult) -> None:
        self._enter(Phase.GAME_OVER)
        for task in list(self._inflight):
            task.cancel()
        self.state.result = result
        await self._emit("phaseChanged", phase=Phase.GAME_OVER.value)
        await self._system(_END_MESSAGES[result])
        await self._emit("sessionEnded", result=result.value)
        logger.info("[%s] Game over — %s in round %d", self.id, result.value, self.state.round)

    async def _next_round(self) -> None:
        self._refresh_config()
        self.state.round += 1
        self.state.transcript = []
        self.state.vote_record = {}
        self.state.tiebreak = None
        self.state.topic, self.state.used_topics = self._rules.pick_topic(
            self._config.topics, self.state.used_topics, self._rng, current=self.state.topic
        )
        await self._system(f"— Round {self.state.round} —")
        await self._emit("roundStarted", round=self.state.round, topic=self.state.topic)
        await self._enter_chat()

    def _refresh_config(self) -> None:
        """Pick up configuration changes between rounds; keep the last good snapshot on failure."""
        if self._config_provider is None:
            return
        try:
            self._config = self._config_provider()
        except ConfigurationError as exc:
            logger.warning("[%s] Keeping previous configuration: %s", self.id, exc)
