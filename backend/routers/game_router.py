"""
Game HTTP endpoints: a room is the chat channel hosting the game.

Routes:
  POST   /api/rooms/{room_id}/game        : Create lobby with the caller as host
  GET    /api/rooms/{room_id}/game        : Public game state (word and imposter hidden)
  DELETE /api/rooms/{room_id}/game        : Stop the game
  POST   /api/rooms/{room_id}/join        : Player joins the lobby
  POST   /api/rooms/{room_id}/bots        : Add an automated player
  POST   /api/rooms/{room_id}/start       : Host starts the round
  POST   /api/rooms/{room_id}/moves       : A chat message routed through the turn logic
  POST   /api/rooms/{room_id}/meetings    : Call a meeting (vote to eject)
  POST   /api/rooms/{room_id}/votes       : Cast a vote during a meeting
  GET    /api/rooms/{room_id}/role        : Private role card for one player
  GET    /api/rooms/{room_id}/turn        : Whose turn it is
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from models.errors import ExternalServiceError, GameStateError
from models.game import (
    CreateGameRequest,
    JoinGameRequest,
    MoveRequest,
    MoveStatus,
    PlayerRequest,
    VoteRequest,
)
from services.runtime import GameRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["games"])


def _http_error(exc: GameStateError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail={"code": exc.code, "message": exc.message})


@router.post("/rooms/{room_id}/game", status_code=201)
async def create_game(room_id: str, body: CreateGameRequest, rt: GameRuntime = Depends(get_runtime)):
    """Create a lobby and register the host as the first player."""
    try:
        game = await rt.registry.create_game(room_id, body.host_id, body.host_name)
    except GameStateError as exc:
        raise _http_error(exc)
    return game.to_public()


@router.get("/rooms/{room_id}/game")
async def get_game(room_id: str, rt: GameRuntime = Depends(get_runtime)):
    """Public game state. The word, hint and imposter are only included once the game has ended."""
    game = rt.registry.get_game(room_id)
    if game is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "No game found in this room."})
    return game.to_public()


@router.delete("/rooms/{room_id}/game")
async def stop_game(room_id: str, rt: GameRuntime = Depends(get_runtime)):
    if not await rt.end_game(room_id):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "No game found in this room."})
    await rt.announcer.broadcast(room_id, {"type": "game_stopped"})
    return {"status": "stopped", "room_id": room_id}


@router.post("/rooms/{room_id}/join")
async def join_game(room_id: str, body: JoinGameRequest, rt: GameRuntime = Depends(get_runtime)):
    """Add a player to the lobby. Rejected once the game has started."""
    try:
        game = await rt.registry.join_game(room_id, body.player_id, body.player_name)
    except GameStateError as exc:
        raise _http_error(exc)
    await rt.announcer.broadcast(room_id, {
        "type": "player_joined",
        "playerId": body.player_id,
        "playerName": body.player_name,
        "count": len(game.players),
    })
    return game.to_public()


@router.post("/rooms/{room_id}/bots", status_code=201)
async def add_bot(room_id: str, rt: GameRuntime = Depends(get_runtime)):
    try:
        bot = await rt.registry.add_automated_player(room_id)
    except GameStateError as exc:
        raise _http_error(exc)
    await rt.announcer.broadcast(room_id, {"type": "player_joined", "playerId": bot.id, "playerName": bot.display_name})
    return {"player_id": bot.id, "name": bot.display_name}


@router.post("/rooms/{room_id}/start")
async def start_game(room_id: str, body: PlayerRequest, rt: GameRuntime = Depends(get_runtime)):
    """
    Host starts the round.
    Returns the category and turn order, never the word. Each player fetches
    their private role card from /role.
    """
    try:
        result = await rt.turns.start_game(room_id, body.player_id)
    except GameStateError as exc:
        raise _http_error(exc)
    except ExternalServiceError as exc:
        logger.warning("[%s] Start aborted: %s", room_id, exc)
        raise HTTPException(
            status_code=503,
            detail={"code": "WORD_PROVIDER_UNAVAILABLE", "message": "Could not pick a word. Try again."},
        )
    # First player may be a bot
    rt.turns.schedule_turns(room_id)
    return result.model_dump()


@router.post("/rooms/{room_id}/moves")
async def submit_move(room_id: str, body: MoveRequest, rt: GameRuntime = Depends(get_runtime)):
    result = await rt.turns.handle_move(room_id, body.player_id, body.content)
    if result.status == MoveStatus.VALID_MOVE:
        await rt.announcer.broadcast(room_id, {
            "type": "clue",
            "playerId": result.player_id,
            "playerName": result.player_name,
            "content": result.content,
        })
        rt.turns.schedule_turns(room_id)
    return result.model_dump()


@router.post("/rooms/{room_id}/meetings")
async def call_meeting(room_id: str, body: PlayerRequest, rt: GameRuntime = Depends(get_runtime)):
    try:
        return await rt.meetings.trigger_meeting(room_id, body.player_id)
    except GameStateError as exc:
        raise _http_error(exc)


@router.post("/rooms/{room_id}/votes")
async def cast_vote(room_id: str, body: VoteRequest, rt: GameRuntime = Depends(get_runtime)):
    try:
        remaining = await rt.meetings.cast_vote(room_id, body.player_id, body.target_index)
    except GameStateError as exc:
        raise _http_error(exc)
    return {"status": "recorded", "votes_outstanding": remaining}


@router.get("/rooms/{room_id}/role")
async def get_role(
    room_id: str,
    player_id: str = Query(..., description="The player asking for their own role"),
    rt: GameRuntime = Depends(get_runtime),
):
    try:
        return rt.turns.get_role_card(room_id, player_id).model_dump()
    except GameStateError as exc:
        raise _http_error(exc)


@router.get("/rooms/{room_id}/turn")
async def get_turn(room_id: str, rt: GameRuntime = Depends(get_runtime)):
    player = rt.turns.get_current_player(room_id)
    if player is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_IN_PROGRESS", "message": "No round is in progress."})
    return {
        "player_id": player.id,
        "name": player.display_name,
        "kind": player.kind,
        "is_automated": rt.turns.is_automated_turn(room_id),
    }
