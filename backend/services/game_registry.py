"""
GameRegistry: in-process keyed store: room_id → the one GameState for that room.

Every mutation of a room happens inside `async with registry.mutate(room_id)`,
which holds that room's asyncio.Lock, so a room has a single writer at a time
while different rooms never contend. Callers outside the engine only ever see
deep copies (get_game); the live GameState never leaves this package's engines.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from config import Settings, settings as default_settings
from models.errors import AlreadyExists, AlreadyJoined, AlreadyStarted, LobbyFull, NotFound
from models.game import AutomatedPlayer, GameState, GameStatus, HumanPlayer

logger = logging.getLogger(__name__)


class GameRegistry:

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._games: Dict[str, GameState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Tasks holding or waiting for each room lock; the lock goes when this drops to 0
        self._lock_users: Dict[str, int] = {}
        self._removal_listeners: List[Callable[[str], None]] = []

    # ── Per-room serialization ────────────────────────────────────────────────

    @asynccontextmanager
    async def _room_lock(self, room_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
                if room_id not in self._games:
                    self._locks.pop(room_id, None)

    @asynccontextmanager
    async def mutate(self, room_id: str) -> AsyncIterator[GameState]:
        """Hold the room lock and yield the live game. Raises NotFound."""
        if room_id not in self._games and room_id not in self._locks:
            raise NotFound()
        async with self._room_lock(room_id):
            game = self._games.get(room_id)
            if game is None:
                raise NotFound()
            yield game
            if room_id in self._games:
                game.check_invariants(self.settings.max_meetings_per_player)

    def on_removed(self, callback: Callable[[str], None]) -> None:
        """Register a callback run with the room id whenever a game leaves the registry."""
        self._removal_listeners.append(callback)

    def tracked_rooms(self) -> int:
        """Rooms holding any per-room state (games or locks)."""
        return len(set(self._games) | set(self._locks) | set(self._lock_users))

    def peek(self, room_id: str) -> Optional[GameState]:
        """Live reference for engine-internal reads that must not await."""
        return self._games.get(room_id)

    # ── Game CRUD ─────────────────────────────────────────────────────────────

    async def create_game(self, room_id: str, host_id: str, host_name: str) -> GameState:
        async with self._room_lock(room_id):
            if room_id in self._games:
                raise AlreadyExists()
            game = GameState(
                room_id=room_id,
                host_id=host_id,
                players=[HumanPlayer(id=host_id, display_name=host_name)],
            )
            self._games[room_id] = game
        logger.info(f"[{room_id}] Game created by host {host_id} ({host_name})")
        return game.model_copy(deep=True)

    def get_game(self, room_id: str) -> Optional[GameState]:
        """Read-only snapshot, or None when the room has no game."""
        game = self._games.get(room_id)
        return game.model_copy(deep=True) if game else None

    async def end_game(self, room_id: str) -> bool:
        """
        Remove the room's game. Returns False if there was none.

        Removal listeners run too, so a meeting still open in the room is closed.
        """
        if room_id not in self._games and room_id not in self._locks:
            return False
        async with self._room_lock(room_id):
            removed = self.remove_locked(room_id)
        return removed is not None

    def remove_locked(self, room_id: str) -> Optional[GameState]:
        """Drop the room and notify removal listeners. Caller must hold the room lock."""
        game = self._games.pop(room_id, None)
        if game is not None:
            if game.status != GameStatus.ENDED:
                game.status = GameStatus.ENDED
            logger.info(f"[{room_id}] Game removed from registry")
            for callback in self._removal_listeners:
                callback(room_id)
        return game

    def list_rooms(self) -> List[str]:
        return list(self._games)

    # ── Lobby ─────────────────────────────────────────────────────────────────

    async def join_game(self, room_id: str, player_id: str, name: str) -> GameState:
        async with self.mutate(room_id) as game:
            if game.status != GameStatus.LOBBY:
                raise AlreadyStarted()
            if game.get_player(player_id):
                raise AlreadyJoined()
            if len(game.players) >= self.settings.max_players:
                raise LobbyFull(f"The lobby is full ({self.settings.max_players} players)")
            game.players.append(HumanPlayer(id=player_id, display_name=name))
            snapshot = game.model_copy(deep=True)
        logger.info(f"[{room_id}] Player {player_id} ({name}) joined ({len(snapshot.players)} total)")
        return snapshot

    async def add_automated_player(self, room_id: str, strategy: str = "gemini") -> AutomatedPlayer:
        async with self.mutate(room_id) as game:
            if game.status != GameStatus.LOBBY:
                raise AlreadyStarted()
            if len(game.players) >= self.settings.max_players:
                raise LobbyFull(f"The lobby is full ({self.settings.max_players} players)")
            number = game.bot_count() + 1
            bot = AutomatedPlayer(
                id=f"bot_{uuid.uuid4().hex[:8]}_{number}",
                display_name=f"Bot {number}",
                strategy=strategy,
            )
            game.players.append(bot)
        logger.info(f"[{room_id}] Added {bot.display_name} ({bot.id})")
        return bot.model_copy()
