"""
Presentation boundary: the engines publish room events through an Announcer.

ConnectionManager is the production Announcer: it tracks WebSocket connections
per room and fans every event out to the players connected to that room.
"""
import logging
from typing import Any, Dict, Optional, Protocol

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Announcer(Protocol):
    async def broadcast(self, room_id: str, message: Dict[str, Any], exclude: Optional[str] = None) -> None: ...

    async def send_to(self, room_id: str, player_id: str, message: Dict[str, Any]) -> None: ...


class ConnectionManager:
    """
    Tracks active WebSocket connections per room.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {room_id: {player_id: WebSocket}}
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, room_id: str, player_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._rooms.setdefault(room_id, {})[player_id] = ws
        logger.debug(f"[{room_id}] {player_id} connected ({self.count(room_id)} total)")

    def disconnect(self, room_id: str, player_id: str) -> None:
        room_conns = self._rooms.get(room_id, {})
        room_conns.pop(player_id, None)
        if not room_conns:
            self._rooms.pop(room_id, None)

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, room_id: str, player_id: str, message: Dict[str, Any]) -> None:
        """Send a private message to a single player."""
        ws = self._rooms.get(room_id, {}).get(player_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] send_to {player_id} failed: {exc}")
                self.disconnect(room_id, player_id)

    async def broadcast(self, room_id: str, message: Dict[str, Any], exclude: Optional[str] = None) -> None:
        """Broadcast a message to all connected players in a room."""
        for pid, ws in list(self._rooms.get(room_id, {}).items()):
            if pid == exclude:
                continue
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{room_id}] broadcast to {pid} failed: {exc}")
                self.disconnect(room_id, pid)


# Module-level singleton: imported by the runtime and the WebSocket hub
manager = ConnectionManager()
