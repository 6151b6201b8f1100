"""
WebSocket Hub: the chat channel of a room.

URL: /ws/{room_id}?playerId={player_id}

Connection flow:
  1. Accept connection → validate the room has a game and the player is in it
  2. Send private "connected" message with the public game snapshot
  3. Broadcast "presence" to the other players
  4. Message loop (_handle_message dispatcher)
  5. On disconnect: broadcast "presence" again

Client → server message types handled here:
  ping    : keep-alive heartbeat → responds with "pong"
  clue    : a chat message; routed through the turn logic
  meeting : call a meeting
  vote    : vote for a player slot during a meeting

Everything the engines announce (game_started, clue, your_turn, meeting_started,
vote_update, meeting_result, ...) reaches the sockets through the shared
ConnectionManager.
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from models.errors import GameStateError
from models.game import MoveStatus
from services.connection_manager import manager
from services.runtime import GameRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter()


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws/{room_id}")
async def websocket_endpoint(
    ws: WebSocket,
    room_id: str,
    playerId: str = Query(..., description="Player id used when joining"),
):
    rt = get_runtime()

    # ── Validate game and player ───────────────────────────────────────────────
    game = rt.registry.get_game(room_id)
    if game is None:
        await ws.close(code=4404, reason="Game not found")
        return
    if game.get_player(playerId) is None:
        await ws.close(code=4403, reason="Player not found in this game")
        return

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(room_id, playerId, ws)
    await manager.send_to(room_id, playerId, {
        "type": "connected",
        "playerId": playerId,
        "gameState": game.to_public(),
    })
    await manager.broadcast(room_id, {
        "type": "presence",
        "playerId": playerId,
        "online": True,
        "count": manager.count(room_id),
    }, exclude=playerId)

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(room_id, playerId, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue
            if not isinstance(data, dict):
                data = {}

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(rt, room_id, playerId, msg_type, inner_data)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(room_id, playerId)
        await manager.broadcast(room_id, {
            "type": "presence",
            "playerId": playerId,
            "online": False,
            "count": manager.count(room_id),
        })


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(
    rt: GameRuntime,
    room_id: str,
    player_id: str,
    msg_type: str,
    data: Dict[str, Any],
) -> None:
    try:
        await _dispatch_message(rt, room_id, player_id, msg_type, data)
    except WebSocketDisconnect:
        raise
    except GameStateError as exc:
        await manager.send_to(room_id, player_id, {
            "type": "error", "message": exc.message, "code": exc.code,
        })
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", room_id, msg_type)
        await manager.send_to(room_id, player_id, {
            "type": "error", "message": "Internal server error", "code": "SERVER_ERROR",
        })


async def _dispatch_message(
    rt: GameRuntime,
    room_id: str,
    player_id: str,
    msg_type: str,
    data: Dict[str, Any],
) -> None:
    if msg_type == "ping":
        await manager.send_to(room_id, player_id, {"type": "pong"})

    elif msg_type == "clue":
        await _on_clue(rt, room_id, player_id, data)

    elif msg_type == "meeting":
        await rt.meetings.trigger_meeting(room_id, player_id)

    elif msg_type == "vote":
        await _on_vote(rt, room_id, player_id, data)

    else:
        await manager.send_to(room_id, player_id, {
            "type": "error",
            "message": f"Unknown message type: '{msg_type}'",
            "code": "UNKNOWN_TYPE",
        })


# ── Handlers ──────────────────────────────────────────────────────────────────

async def _on_clue(rt: GameRuntime, room_id: str, player_id: str, data: Dict[str, Any]) -> None:
    text = str(data.get("text", ""))[:200]
    result = await rt.turns.handle_move(room_id, player_id, text)

    if result.status == MoveStatus.VALID_MOVE:
        await rt.announcer.broadcast(room_id, {
            "type": "clue",
            "playerId": result.player_id,
            "playerName": result.player_name,
            "content": result.content,
        })
        rt.turns.schedule_turns(room_id)
    elif result.status == MoveStatus.DUPLICATE:
        await manager.send_to(room_id, player_id, {
            "type": "duplicate_clue",
            "content": result.content,
            "message": f"'{result.content}' was already used. Try another clue.",
        })
    # IGNORED: ordinary chat outside the player's turn


async def _on_vote(rt: GameRuntime, room_id: str, player_id: str, data: Dict[str, Any]) -> None:
    raw_index = data.get("targetIndex")
    if isinstance(raw_index, bool) or not isinstance(raw_index, int):
        await manager.send_to(room_id, player_id, {
            "type": "error",
            "message": "targetIndex must be an integer",
            "code": "INVALID_VOTE_TARGET",
        })
        return
    await rt.meetings.cast_vote(room_id, player_id, raw_index)
