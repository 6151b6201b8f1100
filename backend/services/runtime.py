"""
Process-wide wiring of the engine: registry, collaborators, TurnEngine, MeetingController.

Routers get everything through get_runtime(); tests build their own GameRuntime
with fake collaborators via build_runtime().
"""
import logging
from dataclasses import dataclass
from typing import Optional

from config import Settings, settings as default_settings
from agents.meeting_controller import MeetingController
from agents.move_generator import GeminiMoveGenerator, MoveGenerator
from agents.turn_engine import TurnEngine
from agents.word_provider import GeminiWordProvider, WordProvider
from services.connection_manager import Announcer, manager
from services.game_registry import GameRegistry
from services.gemini_client import GeminiTextClient

logger = logging.getLogger(__name__)


@dataclass
class GameRuntime:
    settings: Settings
    registry: GameRegistry
    turns: TurnEngine
    meetings: MeetingController
    announcer: Announcer

    async def end_game(self, room_id: str) -> bool:
        """Stop the room's game. Returns False if none."""
        removed = await self.registry.end_game(room_id)
        if removed:
            logger.info(f"[{room_id}] Game stopped")
        return removed


def build_runtime(
    announcer: Announcer,
    settings: Optional[Settings] = None,
    word_provider: Optional[WordProvider] = None,
    move_generator: Optional[MoveGenerator] = None,
) -> GameRuntime:
    settings = settings or default_settings
    if word_provider is None or move_generator is None:
        client = GeminiTextClient(settings)
        word_provider = word_provider or GeminiWordProvider(client, settings)
        move_generator = move_generator or GeminiMoveGenerator(client, settings)

    registry = GameRegistry(settings)
    meetings = MeetingController(registry, move_generator, announcer, settings)
    turns = TurnEngine(registry, word_provider, move_generator, meetings, announcer, settings)
    meetings.resume_hook = turns.schedule_turns
    return GameRuntime(
        settings=settings,
        registry=registry,
        turns=turns,
        meetings=meetings,
        announcer=announcer,
    )


_runtime: Optional[GameRuntime] = None


def get_runtime() -> GameRuntime:
    """Lazy singleton: initialised on first call, not at import time.
    Use as a FastAPI dependency: Depends(get_runtime)
    """
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(manager)
    return _runtime
