import asyncio
from typing import Any, Dict, List, Optional

import pytest

from config import Settings
from models.errors import ExternalServiceError
from models.game import MoveDecision, MoveDecisionKind, RoundContent
from services.runtime import build_runtime


class FakeAnnouncer:
    """Records every published event instead of sending it anywhere."""

    def __init__(self):
        self.broadcasts: List[tuple] = []
        self.private: List[tuple] = []

    async def broadcast(self, room_id: str, message: Dict[str, Any], exclude: Optional[str] = None) -> None:
        self.broadcasts.append((room_id, message))

    async def send_to(self, room_id: str, player_id: str, message: Dict[str, Any]) -> None:
        self.private.append((room_id, player_id, message))

    def of_type(self, msg_type: str, room_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m for r, m in self.broadcasts
            if m.get("type") == msg_type and (room_id is None or r == room_id)
        ]


class FakeWordProvider:

    def __init__(self, content: Optional[RoundContent] = None):
        self.content = content or RoundContent(word="Pizza", category="Food", hint="Oven")
        self.error: Optional[Exception] = None
        self.calls = 0

    async def generate_round(self) -> RoundContent:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.content


class FakeMoveGenerator:
    """
    Scripted MoveGenerator.

    actions / clues are queues; an Exception in a queue is raised instead of returned.
    Once a queue is empty, decide_action asks for a plain clue and generate_clue
    returns "clue1", "clue2", ...
    vote: None (abstain), "first" (first candidate), an Exception, or a
    callable(context, candidates) -> Optional[str].
    """

    def __init__(self):
        self.actions: List[Any] = []
        self.clues: List[Any] = []
        self.vote: Any = None
        self.vote_calls = 0
        self._counter = 0

    @staticmethod
    def _take(queue: List[Any]):
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_clue(self, context) -> str:
        if self.clues:
            return self._take(self.clues)
        self._counter += 1
        return f"clue{self._counter}"

    async def decide_action(self, context) -> MoveDecision:
        if self.actions:
            return self._take(self.actions)
        return MoveDecision(kind=MoveDecisionKind.CLUE)

    async def decide_vote(self, context, candidates) -> Optional[str]:
        self.vote_calls += 1
        if isinstance(self.vote, Exception):
            raise self.vote
        if self.vote == "first":
            return candidates[0].id
        if callable(self.vote):
            return self.vote(context, candidates)
        return self.vote


def service_down(service: str = "move_generator") -> ExternalServiceError:
    return ExternalServiceError(service, "service unavailable")


def make_settings(**overrides) -> Settings:
    values = dict(
        gemini_api_key="",
        min_players=2,
        max_players=10,
        max_meetings_per_player=3,
        meeting_duration_seconds=5.0,
        recent_clue_window=10,
        bot_turn_delay_seconds=0.0,
        bot_vote_delay_min_seconds=0.0,
        bot_vote_delay_max_seconds=0.0,
    )
    values.update(overrides)
    return Settings(**values)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll predicate() on the event loop until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def announcer():
    return FakeAnnouncer()


@pytest.fixture
def words():
    return FakeWordProvider()


@pytest.fixture
def moves():
    return FakeMoveGenerator()


@pytest.fixture
async def make_runtime(announcer, words, moves):
    built = []

    def factory(**overrides):
        rt = build_runtime(
            announcer,
            settings=make_settings(**overrides),
            word_provider=words,
            move_generator=moves,
        )
        built.append(rt)
        return rt

    yield factory

    for rt in built:
        for room_id in list(rt.registry.list_rooms()):
            rt.meetings.cancel(room_id)


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()


async def setup_room(rt, room_id: str = "room1", humans: int = 2, bots: int = 0):
    """Create a lobby with `humans` human players (p0 is host) and `bots` automated players."""
    await rt.registry.create_game(room_id, "p0", "Alice")
    names = ["Bob", "Carol", "Dave", "Erin", "Frank"]
    for i in range(1, humans):
        await rt.registry.join_game(room_id, f"p{i}", names[i - 1])
    bot_ids = []
    for _ in range(bots):
        bot = await rt.registry.add_automated_player(room_id)
        bot_ids.append(bot.id)
    return bot_ids


async def start_room(rt, room_id: str = "room1", humans: int = 2, bots: int = 0,
                     order: Optional[List[str]] = None, imposter: Optional[str] = None):
    """Set up and start a game, then pin turn order / imposter for deterministic tests."""
    bot_ids = await setup_room(rt, room_id, humans, bots)
    await rt.turns.start_game(room_id, "p0")
    async with rt.registry.mutate(room_id) as game:
        if order is not None:
            game.turn_order = [bot_ids[int(o[3:])] if o.startswith("bot") else o for o in order]
        if imposter is not None:
            game.imposter_id = bot_ids[int(imposter[3:])] if imposter.startswith("bot") else imposter
    return bot_ids
