import asyncio

import pytest

from models.errors import AlreadyExists, AlreadyJoined, AlreadyStarted, InvariantViolation, LobbyFull, NotFound
from models.game import GameStatus, HumanPlayer
from services.game_registry import GameRegistry

from conftest import make_settings


@pytest.fixture
def registry():
    return GameRegistry(make_settings(max_players=4))


async def test_create_game_registers_host(registry):
    game = await registry.create_game("room1", "host", "Alice")
    assert game.status == GameStatus.LOBBY
    assert game.host_id == "host"
    assert [p.id for p in game.players] == ["host"]
    assert game.players[0].kind == "human"
    assert registry.list_rooms() == ["room1"]


async def test_create_game_twice_in_same_room_rejected(registry):
    await registry.create_game("room1", "host", "Alice")
    with pytest.raises(AlreadyExists):
        await registry.create_game("room1", "other", "Bob")


async def test_rooms_are_independent(registry):
    await registry.create_game("a", "h1", "Alice")
    await registry.create_game("b", "h2", "Bob")
    await registry.join_game("a", "p1", "Carol")
    assert len(registry.get_game("a").players) == 2
    assert len(registry.get_game("b").players) == 1


async def test_join_game(registry):
    await registry.create_game("room1", "host", "Alice")
    game = await registry.join_game("room1", "p1", "Bob")
    assert [p.display_name for p in game.players] == ["Alice", "Bob"]


async def test_join_unknown_room(registry):
    with pytest.raises(NotFound):
        await registry.join_game("nope", "p1", "Bob")


async def test_join_twice_rejected(registry):
    await registry.create_game("room1", "host", "Alice")
    await registry.join_game("room1", "p1", "Bob")
    with pytest.raises(AlreadyJoined):
        await registry.join_game("room1", "p1", "Bob")


async def test_join_after_start_rejected(registry):
    await registry.create_game("room1", "host", "Alice")
    async with registry.mutate("room1") as game:
        game.status = GameStatus.ENDED
    with pytest.raises(AlreadyStarted):
        await registry.join_game("room1", "p1", "Bob")


async def test_lobby_full(registry):
    await registry.create_game("room1", "host", "Alice")
    for i in range(3):
        await registry.join_game("room1", f"p{i}", f"Player {i}")
    with pytest.raises(LobbyFull):
        await registry.join_game("room1", "late", "Late")
    with pytest.raises(LobbyFull):
        await registry.add_automated_player("room1")


async def test_add_automated_players_are_numbered(registry):
    await registry.create_game("room1", "host", "Alice")
    first = await registry.add_automated_player("room1")
    second = await registry.add_automated_player("room1")
    assert first.kind == second.kind == "automated"
    assert (first.display_name, second.display_name) == ("Bot 1", "Bot 2")
    assert first.id != second.id
    assert registry.get_game("room1").bot_count() == 2


async def test_get_game_returns_a_copy(registry):
    await registry.create_game("room1", "host", "Alice")
    snapshot = registry.get_game("room1")
    snapshot.players.append(HumanPlayer(id="ghost", display_name="Ghost"))
    snapshot.status = GameStatus.PLAYING
    live = registry.get_game("room1")
    assert len(live.players) == 1
    assert live.status == GameStatus.LOBBY


async def test_end_game(registry):
    await registry.create_game("room1", "host", "Alice")
    assert await registry.end_game("room1") is True
    assert registry.get_game("room1") is None
    assert await registry.end_game("room1") is False
    # The room can host a new game afterwards
    await registry.create_game("room1", "host2", "Bob")
    assert registry.get_game("room1").host_id == "host2"


async def test_mutate_unknown_room(registry):
    with pytest.raises(NotFound):
        async with registry.mutate("nope"):
            pass
    assert registry.tracked_rooms() == 0


async def test_ended_rooms_leave_nothing_behind(registry):
    for i in range(50):
        await registry.create_game(f"room{i}", "host", "Alice")
        await registry.join_game(f"room{i}", "p1", "Bob")
    assert registry.tracked_rooms() == 50

    for i in range(50):
        assert await registry.end_game(f"room{i}") is True

    assert registry.tracked_rooms() == 0
    assert registry.list_rooms() == []


async def test_lock_survives_while_waiters_remain(registry):
    await registry.create_game("room1", "host", "Alice")
    entered = asyncio.Event()
    release = asyncio.Event()

    async def hold():
        async with registry.mutate("room1"):
            entered.set()
            await release.wait()

    holder = asyncio.create_task(hold())
    await entered.wait()
    ender = asyncio.create_task(registry.end_game("room1"))
    joiner = asyncio.create_task(registry.join_game("room1", "p1", "Bob"))
    await asyncio.sleep(0)
    release.set()

    await holder
    assert await ender is True
    with pytest.raises(NotFound):
        await joiner
    assert registry.tracked_rooms() == 0


async def test_removal_listeners_run_once_per_game(registry):
    removed = []
    registry.on_removed(removed.append)
    await registry.create_game("room1", "host", "Alice")

    await registry.end_game("room1")
    await registry.end_game("room1")

    assert removed == ["room1"]


async def test_mutate_checks_invariants_on_exit(registry):
    await registry.create_game("room1", "host", "Alice")
    with pytest.raises(InvariantViolation):
        async with registry.mutate("room1") as game:
            game.players.append(HumanPlayer(id="host", display_name="Clone"))


async def test_concurrent_joins_are_serialized(registry):
    await registry.create_game("room1", "host", "Alice")
    results = await asyncio.gather(
        *(registry.join_game("room1", f"p{i}", f"Player {i}") for i in range(6)),
        return_exceptions=True,
    )
    joined = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, LobbyFull)]
    assert len(joined) == 3
    assert len(rejected) == 3
    assert len(registry.get_game("room1").players) == 4
