"""
Turn Engine: deterministic round logic, no LLM of its own.

Responsibilities:
- Starting a round (word from the WordProvider, imposter pick, shuffled turn order)
- Validating and applying clues (turn check, case-insensitive duplicate check)
- Advancing the turn pointer and counting rounds
- Playing bot turns through the MoveGenerator, with graceful degradation
- Driving consecutive bot turns until a human has to act

All mutations happen under the room lock held by GameRegistry.mutate().
"""
import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Optional, Set

from config import Settings, settings as default_settings
from models.errors import (
    AlreadyStarted,
    ExternalServiceError,
    InsufficientPlayers,
    MeetingLimitExceeded,
    NotAPlayer,
    NotFound,
    NotHost,
    NotInProgress,
)
from models.game import (
    AutomatedAction,
    AutomatedTurnResult,
    ClueEntry,
    GameState,
    GameStatus,
    MoveContext,
    MoveDecision,
    MoveDecisionKind,
    MoveResult,
    MoveStatus,
    Player,
    RoleCard,
    StartResult,
    normalize_move,
)
from agents.meeting_controller import MeetingController
from agents.move_generator import MoveGenerator
from agents.word_provider import WordProvider
from services.connection_manager import Announcer
from services.game_registry import GameRegistry

logger = logging.getLogger(__name__)


# Deterministic clues for a bot whose generator failed or only produced duplicates.
# Tried in order; the first one not yet used wins.
FALLBACK_CLUES = [
    "classic", "familiar", "popular", "everyday", "common",
    "typical", "simple", "useful", "memorable", "ordinary",
]


class TurnEngine:

    def __init__(
        self,
        registry: GameRegistry,
        word_provider: WordProvider,
        move_generator: MoveGenerator,
        meetings: MeetingController,
        announcer: Announcer,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.word_provider = word_provider
        self.move_generator = move_generator
        self.meetings = meetings
        self.announcer = announcer
        self.settings = settings or default_settings
        # Rooms whose bot turns are currently being driven.
        # Safe without a Lock: no await between the membership test and the add().
        self._driving: Set[str] = set()
        # Strong references to background turn loops until they finish
        self._tasks: Set[asyncio.Task] = set()

    # ── Round start ───────────────────────────────────────────────────────────

    async def start_game(self, room_id: str, caller_id: str) -> StartResult:
        """
        Host starts the round.

        The WordProvider is awaited before anything is written, so a provider
        failure leaves the game exactly as it was (still in LOBBY).
        """
        async with self.registry.mutate(room_id) as game:
            if game.host_id != caller_id:
                raise NotHost()
            if game.status != GameStatus.LOBBY:
                raise AlreadyStarted()
            if len(game.players) < self.settings.min_players:
                raise InsufficientPlayers(f"Need at least {self.settings.min_players} players to start.")

            try:
                content = await self.word_provider.generate_round()
            except ExternalServiceError:
                logger.warning("[%s] Word provider failed: game stays in lobby", room_id)
                raise
            except Exception as exc:
                logger.exception("[%s] Word provider crashed: game stays in lobby", room_id)
                raise ExternalServiceError("word_provider", str(exc)) from exc

            turn_order = [p.id for p in game.players]
            random.shuffle(turn_order)

            game.word = content.word
            game.category = content.category
            game.hint = content.hint
            game.imposter_id = random.choice(game.players).id
            game.turn_order = turn_order
            game.turn_index = 0
            game.round = 1
            game.clue_log = []
            game.used_moves = set()
            game.vote_session = None
            game.started_at = datetime.now(timezone.utc)
            game.status = GameStatus.PLAYING

            names = {p.id: p.display_name for p in game.players}
            result = StartResult(
                room_id=room_id,
                category=content.category,
                turn_order=[{"id": pid, "name": names[pid]} for pid in turn_order],
                first_player_id=turn_order[0],
            )

        logger.info(
            f"[{room_id}] Game started with {len(result.turn_order)} players, "
            f"category={result.category}, first={result.first_player_id}"
        )
        await self.announcer.broadcast(room_id, {
            "type": "game_started",
            "category": result.category,
            "turnOrder": result.turn_order,
            "currentPlayerId": result.first_player_id,
            "round": result.round,
        })
        return result

    # ── Human moves ───────────────────────────────────────────────────────────

    async def handle_move(self, room_id: str, player_id: str, content: str) -> MoveResult:
        """
        Route a chat message through the turn logic.

        IGNORED  : no round in progress, sender not a player, or not their turn
        DUPLICATE: clue already used (case-insensitive); turn does not advance
        VALID_MOVE: clue recorded, turn advanced
        """
        if self.registry.peek(room_id) is None:
            return MoveResult(status=MoveStatus.IGNORED)

        try:
            async with self.registry.mutate(room_id) as game:
                if game.status != GameStatus.PLAYING:
                    return MoveResult(status=MoveStatus.IGNORED)
                player = game.get_player(player_id)
                if player is None or game.current_player_id != player_id:
                    return MoveResult(status=MoveStatus.IGNORED, player_id=player_id)
                text = content.strip()
                if not text:
                    return MoveResult(status=MoveStatus.IGNORED, player_id=player_id)

                if normalize_move(text) in game.used_moves:
                    logger.info("[%s] Duplicate clue from %s: %r", room_id, player.display_name, text)
                    return MoveResult(
                        status=MoveStatus.DUPLICATE,
                        player_id=player_id,
                        player_name=player.display_name,
                        content=text,
                        next_player_id=game.current_player_id,
                        round=game.round,
                    )

                self._apply_clue_locked(game, player, text)
                return MoveResult(
                    status=MoveStatus.VALID_MOVE,
                    player_id=player_id,
                    player_name=player.display_name,
                    content=text,
                    next_player_id=game.current_player_id,
                    round=game.round,
                )
        except NotFound:
            return MoveResult(status=MoveStatus.IGNORED)

    def _apply_clue_locked(self, game: GameState, player: Player, text: str) -> None:
        game.clue_log.append(ClueEntry(
            player_id=player.id,
            player_name=player.display_name,
            content=text,
            round=game.round,
        ))
        game.used_moves.add(normalize_move(text))
        self._advance_locked(game)
        logger.info("[%s] %s: %s", game.room_id, player.display_name, text)

    def _advance_locked(self, game: GameState) -> None:
        game.turn_index = (game.turn_index + 1) % len(game.turn_order)
        if game.turn_index == 0:
            game.round += 1
            logger.info("[%s] Round %d begins", game.room_id, game.round)

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_current_player(self, room_id: str) -> Optional[Player]:
        game = self.registry.peek(room_id)
        if game is None or game.status == GameStatus.LOBBY:
            return None
        player = game.current_player
        return player.model_copy() if player else None

    def is_automated_turn(self, room_id: str) -> bool:
        game = self.registry.peek(room_id)
        if game is None or game.status != GameStatus.PLAYING:
            return False
        player = game.current_player
        return player is not None and player.kind == "automated"

    def get_role_card(self, room_id: str, player_id: str) -> RoleCard:
        """Private role reveal: civilians see the word, the imposter only the hint."""
        game = self.registry.peek(room_id)
        if game is None:
            raise NotFound()
        if game.status == GameStatus.LOBBY:
            raise NotInProgress("The game has not started yet")
        if game.get_player(player_id) is None:
            raise NotAPlayer()
        if player_id == game.imposter_id:
            return RoleCard(player_id=player_id, is_imposter=True, category=game.category, hint=game.hint)
        return RoleCard(player_id=player_id, is_imposter=False, category=game.category, word=game.word)

    # ── Bot turns ─────────────────────────────────────────────────────────────

    async def play_automated_turn(self, room_id: str) -> AutomatedTurnResult:
        """
        Play the current bot's turn.

        The bot either gives a clue or asks for a meeting. A meeting request that
        exceeds the bot's quota falls back to a clue. Clues go through the same
        duplicate check as human moves; generator failures and repeated
        duplicates fall back to FALLBACK_CLUES, and when those are exhausted the
        turn is passed.
        """
        announcement = None
        try:
            async with self.registry.mutate(room_id) as game:
                player = game.current_player
                if game.status != GameStatus.PLAYING or player is None or player.kind != "automated":
                    return AutomatedTurnResult(action=AutomatedAction.IGNORED)

                context = game.move_context_for(
                    player.id, self.settings.recent_clue_window, self.settings.max_meetings_per_player
                )
                degraded = False
                decision = await self._safe_decide_action(room_id, context)
                if decision is None:
                    degraded = True

                if decision is not None and decision.kind == MoveDecisionKind.VOTE_INTENT:
                    try:
                        announcement = self.meetings.open_meeting_locked(game, player.id)
                        announcement["reason"] = decision.reason
                        result = AutomatedTurnResult(
                            action=AutomatedAction.VOTE,
                            player_id=player.id,
                            player_name=player.display_name,
                        )
                    except MeetingLimitExceeded:
                        logger.info("[%s] %s is out of meetings: giving a clue instead", room_id, player.display_name)
                        decision = None

                if announcement is None:
                    clue = decision.text if decision is not None and decision.kind == MoveDecisionKind.CLUE else None
                    clue, fell_back = await self._choose_clue(game, context, clue)
                    degraded = degraded or fell_back
                    if clue is None:
                        self._advance_locked(game)
                        logger.warning("[%s] %s has no usable clue: turn passed", room_id, player.display_name)
                        result = AutomatedTurnResult(
                            action=AutomatedAction.PASS,
                            player_id=player.id,
                            player_name=player.display_name,
                            degraded=True,
                        )
                    else:
                        self._apply_clue_locked(game, player, clue)
                        result = AutomatedTurnResult(
                            action=AutomatedAction.CLUE,
                            player_id=player.id,
                            player_name=player.display_name,
                            clue=clue,
                            degraded=degraded,
                        )
        except NotFound:
            return AutomatedTurnResult(action=AutomatedAction.IGNORED)

        if announcement is not None:
            await self.announcer.broadcast(room_id, announcement)
        return result

    async def _choose_clue(self, game: GameState, context: MoveContext, clue: Optional[str]):
        """Returns (clue or None, whether a fallback clue was needed)."""
        room_id = game.room_id
        clue = clue.strip() if clue else None
        if not clue:
            clue = await self._safe_generate_clue(room_id, context)
        if clue and normalize_move(clue) in game.used_moves:
            logger.info("[%s] %s proposed duplicate clue %r: asking again", room_id, context.player_name, clue)
            clue = await self._safe_generate_clue(room_id, context)
            if clue and normalize_move(clue) in game.used_moves:
                logger.info("[%s] %s repeated a used clue again: %r", room_id, context.player_name, clue)
                clue = None
        if clue:
            return clue, False

        for fallback in FALLBACK_CLUES:
            if fallback not in game.used_moves:
                logger.warning("[%s] %s using fallback clue %r", room_id, context.player_name, fallback)
                return fallback, True
        return None, True

    async def _safe_decide_action(self, room_id: str, context: MoveContext) -> Optional[MoveDecision]:
        try:
            return await self.move_generator.decide_action(context)
        except ExternalServiceError as exc:
            logger.warning("[%s] decide_action failed for %s: %s", room_id, context.player_name, exc)
        except Exception:
            logger.exception("[%s] decide_action crashed for %s", room_id, context.player_name)
        return None

    async def _safe_generate_clue(self, room_id: str, context: MoveContext) -> Optional[str]:
        try:
            clue = await self.move_generator.generate_clue(context)
        except ExternalServiceError as exc:
            logger.warning("[%s] generate_clue failed for %s: %s", room_id, context.player_name, exc)
            return None
        except Exception:
            logger.exception("[%s] generate_clue crashed for %s", room_id, context.player_name)
            return None
        return clue.strip() or None

    # ── Turn loop ─────────────────────────────────────────────────────────────

    def schedule_turns(self, room_id: str) -> asyncio.Task:
        """Run drive_turns in the background, keeping the task alive until it finishes."""
        task = asyncio.create_task(self.drive_turns(room_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drive_turns(self, room_id: str) -> None:
        """
        Play consecutive bot turns (with a human-like pause before each) until a
        human has to move, a meeting starts, or the game is gone. Prompts the
        human whose turn it is.
        """
        if room_id in self._driving:
            return
        self._driving.add(room_id)
        try:
            while True:
                game = self.registry.peek(room_id)
                if game is None or game.status != GameStatus.PLAYING:
                    return
                player = game.current_player
                if player.kind == "human":
                    await self.announcer.broadcast(room_id, {
                        "type": "your_turn",
                        "playerId": player.id,
                        "playerName": player.display_name,
                        "round": game.round,
                    })
                    return

                await asyncio.sleep(self.settings.bot_turn_delay_seconds)
                result = await self.play_automated_turn(room_id)
                if result.action == AutomatedAction.CLUE:
                    await self.announcer.broadcast(room_id, {
                        "type": "clue",
                        "playerId": result.player_id,
                        "playerName": result.player_name,
                        "content": result.clue,
                    })
                elif result.action == AutomatedAction.PASS:
                    await self.announcer.broadcast(room_id, {
                        "type": "turn_passed",
                        "playerId": result.player_id,
                        "playerName": result.player_name,
                    })
                elif result.action == AutomatedAction.VOTE:
                    return
                # IGNORED: state changed while pausing; the next pass re-checks it
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] Turn loop failed", room_id)
        finally:
            self._driving.discard(room_id)
