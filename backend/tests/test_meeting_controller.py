import asyncio

import pytest

from agents.meeting_controller import tally_votes
from models.errors import (
    InvalidVoteTarget,
    MeetingLimitExceeded,
    NotAPlayer,
    NotFound,
    NotInProgress,
    VoteAlreadyCast,
    VotingClosed,
)
from models.game import GameState, GameStatus, HumanPlayer

from conftest import service_down, setup_room, start_room, wait_until


def _game(imposter="b"):
    return GameState(
        room_id="r",
        host_id="a",
        players=[HumanPlayer(id=pid, display_name=pid.upper()) for pid in ("a", "b", "c")],
        imposter_id=imposter,
        word="Pizza",
    )


# ── tally_votes ───────────────────────────────────────────────────────────────

def test_tally_no_votes():
    outcome = tally_votes(_game(), {}, "a")
    assert outcome.result == "no_votes"
    assert not outcome.game_over
    assert outcome.word is None


def test_tally_tie():
    outcome = tally_votes(_game(), {"a": 1, "b": 2}, "a")
    assert outcome.result == "tie"
    assert sorted(outcome.tied) == ["b", "c"]
    assert outcome.imposter_id is None


def test_tally_unique_max_reveals_imposter():
    outcome = tally_votes(_game(imposter="b"), {"a": 1, "c": 1, "b": 2}, "a")
    assert outcome.result == "ejected"
    assert outcome.game_over
    assert outcome.ejected_id == "b"
    assert outcome.was_imposter is True
    assert outcome.tally == {"b": 2, "c": 1}
    assert outcome.word == "Pizza"


def test_tally_wrong_ejection_still_reveals():
    outcome = tally_votes(_game(imposter="b"), {"a": 2, "b": 2}, "a")
    assert outcome.ejected_id == "c"
    assert outcome.was_imposter is False
    assert outcome.imposter_id == "b"
    assert outcome.imposter_name == "B"


# ── Opening a meeting ─────────────────────────────────────────────────────────

async def test_trigger_meeting_enters_voting(runtime, announcer):
    await start_room(runtime, humans=3, order=["p0", "p1", "p2"])
    await runtime.turns.handle_move("room1", "p0", "crust")

    announcement = await runtime.meetings.trigger_meeting("room1", "p1")

    game = runtime.registry.get_game("room1")
    assert game.status == GameStatus.VOTING
    assert game.vote_session.called_by == "p1"
    assert game.get_player("p1").meetings_called == 1
    assert runtime.meetings.is_open("room1")
    assert announcement["recap"] == [{"player": "Bob", "content": "crust"}]
    assert [c["index"] for c in announcement["candidates"]] == [0, 1, 2]
    assert announcement["meetingsLeft"] == 2
    assert announcer.of_type("meeting_started") == [announcement]


async def test_trigger_meeting_errors(runtime):
    with pytest.raises(NotFound):
        await runtime.meetings.trigger_meeting("nope", "p0")

    await setup_room(runtime, humans=2)
    with pytest.raises(NotInProgress):
        await runtime.meetings.trigger_meeting("room1", "p0")

    await runtime.turns.start_game("room1", "p0")
    with pytest.raises(NotAPlayer):
        await runtime.meetings.trigger_meeting("room1", "stranger")

    await runtime.meetings.trigger_meeting("room1", "p0")
    with pytest.raises(NotInProgress):
        await runtime.meetings.trigger_meeting("room1", "p1")


async def test_fourth_meeting_rejected(runtime):
    await start_room(runtime, humans=2, order=["p0", "p1"])

    for _ in range(3):
        await runtime.meetings.trigger_meeting("room1", "p0")
        assert runtime.registry.get_game("room1").status == GameStatus.VOTING
        await runtime.meetings.cast_vote("room1", "p0", 0)
        await runtime.meetings.cast_vote("room1", "p1", 1)
        outcome = await runtime.meetings.wait_for_resolution("room1")
        assert outcome.result == "tie"

    with pytest.raises(MeetingLimitExceeded):
        await runtime.meetings.trigger_meeting("room1", "p0")
    game = runtime.registry.get_game("room1")
    assert game.get_player("p0").meetings_called == 3
    assert game.status == GameStatus.PLAYING
    assert game.meetings_held == 3


# ── Votes ─────────────────────────────────────────────────────────────────────

async def test_cast_vote_errors(runtime):
    await start_room(runtime, humans=3)
    with pytest.raises(VotingClosed):
        await runtime.meetings.cast_vote("room1", "p0", 1)
    with pytest.raises(NotFound):
        await runtime.meetings.cast_vote("nope", "p0", 1)

    await runtime.meetings.trigger_meeting("room1", "p0")
    with pytest.raises(NotAPlayer):
        await runtime.meetings.cast_vote("room1", "stranger", 1)
    with pytest.raises(InvalidVoteTarget):
        await runtime.meetings.cast_vote("room1", "p0", 3)
    with pytest.raises(InvalidVoteTarget):
        await runtime.meetings.cast_vote("room1", "p0", -1)

    assert await runtime.meetings.cast_vote("room1", "p0", 1) == 2
    with pytest.raises(VoteAlreadyCast):
        await runtime.meetings.cast_vote("room1", "p0", 2)


async def test_vote_updates_are_announced(runtime, announcer):
    await start_room(runtime, humans=3)
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 1)
    update = announcer.of_type("vote_update")[-1]
    assert (update["votesCast"], update["votesExpected"]) == (1, 3)


async def test_players_may_vote_for_themselves(runtime):
    await start_room(runtime, humans=2, imposter="p1")
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p1", 1)
    await runtime.meetings.cast_vote("room1", "p0", 1)
    outcome = await runtime.meetings.wait_for_resolution("room1")
    assert outcome.ejected_id == "p1"
    assert outcome.was_imposter is True


# ── Resolution ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("imposter, caught", [("p2", True), ("p0", False)])
async def test_two_votes_and_a_timeout_eject(make_runtime, announcer, imposter, caught):
    rt = make_runtime(meeting_duration_seconds=0.1)
    await start_room(rt, humans=3, imposter=imposter)
    await rt.meetings.trigger_meeting("room1", "p0")
    await rt.meetings.cast_vote("room1", "p0", 2)
    await rt.meetings.cast_vote("room1", "p1", 2)

    outcome = await rt.meetings.wait_for_resolution("room1")

    assert outcome.result == "ejected"
    assert outcome.ejected_id == "p2"
    assert outcome.was_imposter is caught
    assert outcome.imposter_id == imposter
    assert outcome.word == "Pizza"
    assert rt.registry.get_game("room1") is None
    result = announcer.of_type("meeting_result")
    assert len(result) == 1
    assert result[0]["closeReason"] == "timeout"


async def test_all_voted_closes_before_deadline(runtime, announcer):
    await start_room(runtime, humans=3)
    await runtime.meetings.trigger_meeting("room1", "p0")
    for voter in ("p0", "p1", "p2"):
        await runtime.meetings.cast_vote("room1", voter, 1)

    outcome = await runtime.meetings.wait_for_resolution("room1")

    assert outcome.ejected_id == "p1"
    assert announcer.of_type("meeting_result")[0]["closeReason"] == "all_voted"


async def test_no_votes_resumes_play(make_runtime, announcer):
    rt = make_runtime(meeting_duration_seconds=0.05)
    await start_room(rt, humans=2, order=["p0", "p1"])
    await rt.turns.handle_move("room1", "p0", "crust")
    await rt.meetings.trigger_meeting("room1", "p1")

    outcome = await rt.meetings.wait_for_resolution("room1")

    assert outcome.result == "no_votes"
    game = rt.registry.get_game("room1")
    assert game.status == GameStatus.PLAYING
    assert game.vote_session is None
    assert [c.content for c in game.clue_log] == ["crust"]
    assert game.current_player_id == "p1"
    assert game.last_outcome.result == "no_votes"
    # Play resumes: the player whose turn it is gets prompted
    await wait_until(lambda: announcer.of_type("your_turn"))
    assert announcer.of_type("your_turn")[-1]["playerId"] == "p1"


async def test_tie_keeps_turn_state(runtime):
    await start_room(runtime, humans=2, order=["p0", "p1"])
    await runtime.turns.handle_move("room1", "p0", "crust")
    before = runtime.registry.get_game("room1")
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 1)
    await runtime.meetings.cast_vote("room1", "p1", 0)

    outcome = await runtime.meetings.wait_for_resolution("room1")

    assert outcome.result == "tie"
    after = runtime.registry.get_game("room1")
    assert after.turn_index == before.turn_index
    assert after.round == before.round
    assert after.clue_log == before.clue_log
    with pytest.raises(VotingClosed):
        await runtime.meetings.cast_vote("room1", "p0", 1)


async def test_vote_after_ejection_finds_no_game(runtime):
    await start_room(runtime, humans=2)
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 1)
    await runtime.meetings.cast_vote("room1", "p1", 1)
    await runtime.meetings.wait_for_resolution("room1")
    with pytest.raises(NotFound):
        await runtime.meetings.cast_vote("room1", "p0", 1)


async def test_racing_votes_resolve_once(make_runtime, announcer):
    rt = make_runtime(meeting_duration_seconds=0.02, max_players=6)
    await start_room(rt, humans=6)
    await rt.meetings.trigger_meeting("room1", "p0")
    resolution = asyncio.create_task(rt.meetings.wait_for_resolution("room1"))
    await asyncio.sleep(0)

    async def late_vote(voter, delay):
        await asyncio.sleep(delay)
        return await rt.meetings.cast_vote("room1", voter, 0)

    results = await asyncio.gather(
        *(late_vote(f"p{i}", i * 0.008) for i in range(6)),
        return_exceptions=True,
    )
    outcome = await resolution
    await asyncio.sleep(0.05)

    accepted = [r for r in results if isinstance(r, int)]
    rejected = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(r, (VotingClosed, NotFound)) for r in rejected)
    assert len(accepted) + len(rejected) == 6
    assert len(announcer.of_type("meeting_result")) == 1
    if accepted:
        assert outcome.tally == {"p0": len(accepted)}
    else:
        assert outcome.result == "no_votes"


async def test_end_game_cancels_meeting(runtime, announcer):
    await start_room(runtime, humans=3)
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 1)

    assert await runtime.end_game("room1") is True
    await asyncio.sleep(0.05)

    assert runtime.registry.get_game("room1") is None
    assert not runtime.meetings.is_open("room1")
    assert announcer.of_type("meeting_result") == []


async def test_registry_end_game_closes_meeting(runtime, moves, announcer):
    await start_room(runtime, humans=2, bots=1)
    moves.vote = "first"
    await runtime.meetings.trigger_meeting("room1", "p0")
    coordinator = runtime.meetings._coordinators["room1"]

    assert await runtime.registry.end_game("room1") is True
    await asyncio.sleep(0.05)

    assert not runtime.meetings.is_open("room1")
    assert coordinator.close_reason == "cancelled"
    assert moves.vote_calls == 0
    with pytest.raises(NotFound):
        await runtime.meetings.cast_vote("room1", "p0", 1)
    assert announcer.of_type("meeting_result") == []
    assert await runtime.meetings.wait_for_resolution("room1") is None


async def test_new_game_does_not_see_previous_outcome(runtime):
    await start_room(runtime, humans=2)
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 1)
    await runtime.meetings.cast_vote("room1", "p1", 1)
    outcome = await runtime.meetings.wait_for_resolution("room1")
    assert outcome.ejected_id == "p1"
    assert runtime.registry.get_game("room1") is None

    await start_room(runtime, humans=2)

    assert await runtime.meetings.wait_for_resolution("room1") is None
    assert runtime.registry.get_game("room1").last_outcome is None


async def test_resolution_released_after_play_resumes(runtime):
    await start_room(runtime, humans=2, order=["p0", "p1"])
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 0)
    await runtime.meetings.cast_vote("room1", "p1", 1)
    outcome = await runtime.meetings.wait_for_resolution("room1")
    assert outcome.result == "tie"
    await asyncio.sleep(0)

    assert await runtime.meetings.wait_for_resolution("room1") is None
    assert "room1" not in runtime.meetings._resolutions


# ── Automated voters ──────────────────────────────────────────────────────────

async def test_bots_vote(runtime, moves):
    await start_room(runtime, humans=1, bots=2, imposter="p0")
    moves.vote = "first"
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 1)

    outcome = await runtime.meetings.wait_for_resolution("room1")

    assert outcome.ejected_id == "p0"
    assert outcome.was_imposter is True
    assert sum(outcome.tally.values()) == 3
    assert moves.vote_calls == 2


async def test_bot_vote_failure_falls_back_to_random(runtime, moves):
    bots = await start_room(runtime, humans=1, bots=2)
    moves.vote = service_down()
    await runtime.meetings.trigger_meeting("room1", "p0")
    await runtime.meetings.cast_vote("room1", "p0", 0)

    outcome = await runtime.meetings.wait_for_resolution("room1")

    assert sum(outcome.tally.values()) == 3
    assert outcome.result in ("ejected", "tie")
    assert set(outcome.tally) <= {"p0", *bots}


async def test_bot_abstains(make_runtime, moves, announcer):
    rt = make_runtime(meeting_duration_seconds=0.1)
    bots = await start_room(rt, humans=1, bots=2)
    moves.vote = None
    await rt.meetings.trigger_meeting("room1", "p0")
    await rt.meetings.cast_vote("room1", "p0", 1)

    outcome = await rt.meetings.wait_for_resolution("room1")

    assert moves.vote_calls == 2
    assert outcome.ejected_id == bots[0]
    assert outcome.tally == {bots[0]: 1}
    assert announcer.of_type("meeting_result")[0]["closeReason"] == "timeout"


async def test_pending_bot_votes_cancelled_on_close(make_runtime, moves):
    rt = make_runtime(bot_vote_delay_min_seconds=10.0, bot_vote_delay_max_seconds=10.0)
    await start_room(rt, humans=1, bots=1)
    moves.vote = "first"
    await rt.meetings.trigger_meeting("room1", "p0")
    coordinator = rt.meetings._coordinators["room1"]
    pending = list(coordinator._pending)
    assert len(pending) == 1

    await rt.end_game("room1")
    await asyncio.sleep(0)

    assert pending[0].cancelled() or pending[0].done()
    assert moves.vote_calls == 0
