"""
Meeting Controller: timed emergency votes.

Responsibilities:
- Open a meeting on a player's request (quota: 3 per player per game)
- Collect votes from humans (external events) and bots (background tasks)
- Close the window exactly once, on timeout or when every player has voted
- Tally, eject on a unique maximum, otherwise resume play

A meeting's votes are owned by one VoteCoordinator. Every vote attempt goes
through VoteCoordinator.submit(), which checks and records without awaiting, so
it is atomic on the event loop: once close() has cleared window_open no later
vote can land, and a vote that got in first is always part of the tally.
"""
import asyncio
import logging
import random
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from config import Settings, settings as default_settings
from models.errors import (
    ExternalServiceError,
    InvalidVoteTarget,
    MeetingLimitExceeded,
    NotAPlayer,
    NotFound,
    NotInProgress,
    VoteAlreadyCast,
    VotingClosed,
)
from models.game import (
    GameState,
    GameStatus,
    MeetingOutcome,
    MoveContext,
    VoteCandidate,
    VoteSession,
)
from agents.move_generator import MoveGenerator
from services.connection_manager import Announcer
from services.game_registry import GameRegistry

logger = logging.getLogger(__name__)


class VoteCoordinator:
    """
    Single owner of one meeting's ballot box.

    close() clears the window, cancels the timer when closing early, cancels any
    bot vote still pending and wakes the resolver. It is idempotent; only the
    first call has an effect.
    """

    def __init__(
        self,
        room_id: str,
        session: VoteSession,
        voter_ids: List[str],
        slot_count: int,
        duration: float,
    ):
        self.room_id = room_id
        self.session = session
        self.voter_ids: Set[str] = set(voter_ids)
        self.slot_count = slot_count
        self.duration = duration
        self.close_reason: Optional[str] = None
        self._closed = asyncio.Event()
        self._timer: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def window_open(self) -> bool:
        return self.session.window_open

    @property
    def votes_cast(self) -> int:
        return len(self.session.choices)

    @property
    def votes_expected(self) -> int:
        return len(self.voter_ids)

    def start(self) -> None:
        self._timer = asyncio.create_task(self._run_timer())

    def track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_timer(self) -> None:
        await asyncio.sleep(self.duration)
        if self.close("timeout"):
            logger.info("[%s] Meeting timed out with %d/%d votes", self.room_id, self.votes_cast, self.votes_expected)

    def submit(self, voter_id: str, target_index: int) -> int:
        """Record one vote. Returns the number of votes still outstanding."""
        if not self.session.window_open:
            raise VotingClosed()
        if voter_id not in self.voter_ids:
            raise NotAPlayer()
        if not 0 <= target_index < self.slot_count:
            raise InvalidVoteTarget(f"Vote target must be between 0 and {self.slot_count - 1}")
        if voter_id in self.session.choices:
            raise VoteAlreadyCast()

        self.session.choices[voter_id] = target_index
        remaining = self.votes_expected - self.votes_cast
        logger.info("[%s] Vote: %s → slot %d (%d outstanding)", self.room_id, voter_id, target_index, remaining)
        if remaining <= 0:
            self.close("all_voted")
        return remaining

    def close(self, reason: str) -> bool:
        if not self.session.window_open:
            return False
        self.session.window_open = False
        self.close_reason = reason

        current = asyncio.current_task()
        if self._timer and self._timer is not current and not self._timer.done():
            self._timer.cancel()
        for task in list(self._pending):
            if task is not current and not task.done():
                task.cancel()

        self._closed.set()
        return True

    async def wait_closed(self) -> str:
        await self._closed.wait()
        return self.close_reason or "closed"

    def choices(self) -> Dict[str, int]:
        return dict(self.session.choices)


def tally_votes(game: GameState, choices: Dict[str, int], called_by: str) -> MeetingOutcome:
    """
    Count votes per player slot.

    Unique maximum → that player is ejected. Zero votes or a tie for the
    maximum → nobody is ejected.
    """
    counts = Counter(choices.values())
    tally = {game.players[i].id: n for i, n in counts.items()}

    if not counts:
        return MeetingOutcome(result="no_votes", called_by=called_by, tally={})

    max_votes = max(counts.values())
    leaders = [game.players[i].id for i, n in counts.items() if n == max_votes]
    if len(leaders) > 1:
        return MeetingOutcome(result="tie", called_by=called_by, tally=tally, tied=leaders)

    ejected = game.get_player(leaders[0])
    imposter = game.imposter
    return MeetingOutcome(
        result="ejected",
        called_by=called_by,
        tally=tally,
        ejected_id=ejected.id,
        ejected_name=ejected.display_name,
        was_imposter=ejected.id == game.imposter_id,
        imposter_id=game.imposter_id,
        imposter_name=imposter.display_name if imposter else None,
        word=game.word,
    )


class MeetingController:

    def __init__(
        self,
        registry: GameRegistry,
        move_generator: MoveGenerator,
        announcer: Announcer,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.move_generator = move_generator
        self.announcer = announcer
        self.settings = settings or default_settings
        # Schedules the turn loop when a meeting ends without an ejection
        self.resume_hook: Optional[Callable[[str], Any]] = None
        self._coordinators: Dict[str, VoteCoordinator] = {}
        self._resolutions: Dict[str, asyncio.Task] = {}
        registry.on_removed(self.cancel)

    # ── Opening ───────────────────────────────────────────────────────────────

    async def trigger_meeting(self, room_id: str, caller_id: str) -> Dict[str, Any]:
        """Open a meeting on behalf of caller_id. Returns the announcement that was published."""
        async with self.registry.mutate(room_id) as game:
            announcement = self.open_meeting_locked(game, caller_id)
        await self.announcer.broadcast(room_id, announcement)
        return announcement

    def open_meeting_locked(self, game: GameState, caller_id: str) -> Dict[str, Any]:
        """
        Open the voting window. The caller must hold the room lock.

        Returns the meeting_started announcement (with the clue recap) for the
        caller to publish once the lock is released.
        """
        room_id = game.room_id
        caller = game.get_player(caller_id)
        if caller is None:
            raise NotAPlayer()
        if game.status != GameStatus.PLAYING:
            raise NotInProgress("Meetings can only be called while the round is in progress")
        limit = self.settings.max_meetings_per_player
        if caller.meetings_called >= limit:
            raise MeetingLimitExceeded(f"{caller.display_name} has already called {limit} meetings")

        caller.meetings_called += 1
        duration = self.settings.meeting_duration_seconds
        session = VoteSession(
            called_by=caller_id,
            deadline=datetime.now(timezone.utc) + timedelta(seconds=duration),
        )
        game.vote_session = session
        game.status = GameStatus.VOTING

        coordinator = VoteCoordinator(
            room_id,
            session,
            voter_ids=[p.id for p in game.players],
            slot_count=len(game.players),
            duration=duration,
        )
        previous = self._coordinators.get(room_id)
        if previous:
            previous.close("superseded")
        self._coordinators[room_id] = coordinator
        coordinator.start()

        for bot in game.automated_players():
            context = game.move_context_for(
                bot.id, self.settings.recent_clue_window, self.settings.max_meetings_per_player
            )
            candidates = game.vote_candidates(exclude=bot.id)
            coordinator.track(asyncio.create_task(
                self._automated_vote(room_id, coordinator, bot.id, context, candidates)
            ))

        self._resolutions[room_id] = asyncio.create_task(self._resolve_when_closed(room_id, coordinator))

        logger.info(
            "[%s] Meeting called by %s (%d/%d), %ss window",
            room_id, caller.display_name, caller.meetings_called, limit, duration,
        )
        return {
            "type": "meeting_started",
            "calledBy": caller_id,
            "callerName": caller.display_name,
            "meetingsLeft": limit - caller.meetings_called,
            "deadline": session.deadline.isoformat(),
            "durationSeconds": duration,
            "recap": [{"player": c.player_name, "content": c.content} for c in game.clue_log],
            "candidates": [c.model_dump() for c in game.vote_candidates()],
        }

    # ── Votes ─────────────────────────────────────────────────────────────────

    async def cast_vote(self, room_id: str, voter_id: str, target_index: int) -> int:
        """Record a human vote. Returns the number of votes still outstanding."""
        coordinator = self._coordinators.get(room_id)
        if coordinator is None:
            if self.registry.peek(room_id) is None:
                raise NotFound()
            raise VotingClosed()
        remaining = coordinator.submit(voter_id, target_index)
        await self._announce_progress(room_id, coordinator)
        return remaining

    async def _automated_vote(
        self,
        room_id: str,
        coordinator: VoteCoordinator,
        bot_id: str,
        context: MoveContext,
        candidates: List[VoteCandidate],
    ) -> None:
        """Background task: think for a while, then vote like a human would."""
        try:
            low = self.settings.bot_vote_delay_min_seconds
            high = max(low, self.settings.bot_vote_delay_max_seconds)
            await asyncio.sleep(random.uniform(low, high))
            if not coordinator.window_open or not candidates:
                return

            try:
                target_id = await self.move_generator.decide_vote(context, candidates)
            except ExternalServiceError as exc:
                target = random.choice(candidates)
                logger.warning("[%s] %s vote generation failed (%s), voting at random: %s", room_id, bot_id, exc, target.name)
                target_id = target.id

            if target_id is None:
                logger.info("[%s] %s abstains", room_id, bot_id)
                return
            target = next((c for c in candidates if c.id == target_id), None)
            if target is None:
                target = random.choice(candidates)
                logger.warning("[%s] %s named unknown player %r, voting at random: %s", room_id, bot_id, target_id, target.name)

            try:
                coordinator.submit(bot_id, target.index)
            except VotingClosed:
                logger.info("[%s] %s vote arrived after the window closed", room_id, bot_id)
                return
            await self._announce_progress(room_id, coordinator)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Automated vote for %s failed", room_id, bot_id)

    async def _announce_progress(self, room_id: str, coordinator: VoteCoordinator) -> None:
        await self.announcer.broadcast(room_id, {
            "type": "vote_update",
            "votesCast": coordinator.votes_cast,
            "votesExpected": coordinator.votes_expected,
        })

    # ── Resolution ────────────────────────────────────────────────────────────

    async def _resolve_when_closed(self, room_id: str, coordinator: VoteCoordinator) -> Optional[MeetingOutcome]:
        try:
            reason = await coordinator.wait_closed()
            return await self._resolve(room_id, coordinator, reason)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Meeting resolution failed", room_id)
            return None
        finally:
            if self._resolutions.get(room_id) is asyncio.current_task():
                del self._resolutions[room_id]

    async def _resolve(self, room_id: str, coordinator: VoteCoordinator, reason: str) -> Optional[MeetingOutcome]:
        resumed = False
        try:
            async with self.registry.mutate(room_id) as game:
                if game.vote_session is not coordinator.session:
                    logger.info("[%s] Stale meeting (%s): nothing to resolve", room_id, reason)
                    return None

                outcome = tally_votes(game, coordinator.choices(), coordinator.session.called_by)
                game.vote_session = None
                game.meetings_held += 1
                game.last_outcome = outcome

                if outcome.game_over:
                    game.status = GameStatus.ENDED
                    self.registry.remove_locked(room_id)
                    logger.info(
                        "[%s] %s ejected (imposter=%s): game over",
                        room_id, outcome.ejected_name, outcome.was_imposter,
                    )
                else:
                    game.status = GameStatus.PLAYING
                    resumed = True
                    logger.info("[%s] Meeting ended with %s: play resumes", room_id, outcome.result)
        except NotFound:
            logger.info("[%s] Game ended before the meeting resolved", room_id)
            return None
        finally:
            if self._coordinators.get(room_id) is coordinator:
                del self._coordinators[room_id]

        await self.announcer.broadcast(room_id, {
            "type": "meeting_result",
            "closeReason": reason,
            **outcome.model_dump(),
        })
        if resumed and self.resume_hook is not None:
            self.resume_hook(room_id)
        return outcome

    async def wait_for_resolution(self, room_id: str) -> Optional[MeetingOutcome]:
        """
        Wait for the room's pending meeting to resolve and return its outcome.

        None when no meeting is waiting to resolve in that room.
        """
        task = self._resolutions.get(room_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    def is_open(self, room_id: str) -> bool:
        coordinator = self._coordinators.get(room_id)
        return bool(coordinator and coordinator.window_open)

    def cancel(self, room_id: str) -> None:
        """Close any running meeting for a room that left the registry."""
        coordinator = self._coordinators.pop(room_id, None)
        if coordinator and coordinator.close("cancelled"):
            logger.info("[%s] Meeting cancelled", room_id)
        self._resolutions.pop(room_id, None)
