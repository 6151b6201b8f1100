from pydantic import BaseModel, Field
from typing import Annotated, Optional, List, Dict, Any, Literal, Set, Union
from enum import Enum
from datetime import datetime, timezone

from models.errors import InvariantViolation


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def normalize_move(content: str) -> str:
    """Case-insensitive key used for duplicate detection."""
    return content.strip().casefold()


MAX_MEETINGS_PER_PLAYER = 3


class GameStatus(str, Enum):
    LOBBY = "lobby"       # waiting for players to join
    PLAYING = "playing"
    VOTING = "voting"     # meeting in progress, turns suspended
    ENDED = "ended"


# ── Players ───────────────────────────────────────────────────────────────────

class _PlayerBase(BaseModel):
    id: str
    display_name: str
    meetings_called: int = 0
    joined_at: datetime = Field(default_factory=_utcnow)


class HumanPlayer(_PlayerBase):
    kind: Literal["human"] = "human"


class AutomatedPlayer(_PlayerBase):
    kind: Literal["automated"] = "automated"
    strategy: str = "gemini"  # MoveGenerator handle


Player = Annotated[Union[HumanPlayer, AutomatedPlayer], Field(discriminator="kind")]


# ── Round data ────────────────────────────────────────────────────────────────

class ClueEntry(BaseModel):
    player_id: str
    player_name: str
    content: str
    round: int = 1
    timestamp: datetime = Field(default_factory=_utcnow)


class VoteSession(BaseModel):
    called_by: str
    choices: Dict[str, int] = {}  # voter player_id → index into GameState.players
    window_open: bool = True
    opened_at: datetime = Field(default_factory=_utcnow)
    deadline: datetime


class MeetingOutcome(BaseModel):
    result: Literal["ejected", "tie", "no_votes"]
    called_by: str
    tally: Dict[str, int] = {}  # player_id → votes received
    tied: List[str] = []
    ejected_id: Optional[str] = None
    ejected_name: Optional[str] = None
    was_imposter: Optional[bool] = None
    # Revealed only when the game ends
    imposter_id: Optional[str] = None
    imposter_name: Optional[str] = None
    word: Optional[str] = None

    @property
    def game_over(self) -> bool:
        return self.result == "ejected"


class GameState(BaseModel):
    room_id: str
    status: GameStatus = GameStatus.LOBBY
    players: List[Player] = []
    host_id: str
    word: Optional[str] = None
    category: Optional[str] = None
    hint: Optional[str] = None
    imposter_id: Optional[str] = None
    turn_order: List[str] = []
    turn_index: int = 0
    round: int = 0
    clue_log: List[ClueEntry] = []
    used_moves: Set[str] = set()
    vote_session: Optional[VoteSession] = None
    meetings_held: int = 0
    last_outcome: Optional[MeetingOutcome] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None

    # ── Lookups ───────────────────────────────────────────────────────────────

    def get_player(self, player_id: str) -> Optional[Player]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    @property
    def current_player_id(self) -> Optional[str]:
        if not self.turn_order:
            return None
        return self.turn_order[self.turn_index]

    @property
    def current_player(self) -> Optional[Player]:
        pid = self.current_player_id
        return self.get_player(pid) if pid else None

    @property
    def imposter(self) -> Optional[Player]:
        return self.get_player(self.imposter_id) if self.imposter_id else None

    def automated_players(self) -> List[AutomatedPlayer]:
        return [p for p in self.players if p.kind == "automated"]

    def bot_count(self) -> int:
        return len(self.automated_players())

    def vote_candidates(self, exclude: Optional[str] = None) -> List["VoteCandidate"]:
        return [
            VoteCandidate(index=i, id=p.id, name=p.display_name)
            for i, p in enumerate(self.players)
            if p.id != exclude
        ]

    def move_context_for(
        self,
        player_id: str,
        recent_window: int = 10,
        max_meetings: int = MAX_MEETINGS_PER_PLAYER,
    ) -> "MoveContext":
        """Everything the given player may know. The imposter gets the hint instead of the word."""
        player = self.get_player(player_id)
        if player is None:
            raise ValueError(f"{player_id} is not in room {self.room_id}")
        is_imposter = player_id == self.imposter_id
        return MoveContext(
            player_id=player.id,
            player_name=player.display_name,
            category=self.category or "",
            word=None if is_imposter else self.word,
            hint=self.hint if is_imposter else None,
            is_imposter=is_imposter,
            round=self.round,
            recent_clues=[c.model_copy() for c in self.clue_log[-recent_window:]] if recent_window > 0 else [],
            used_moves=sorted(self.used_moves),
            meetings_left=max(0, max_meetings - player.meetings_called),
        )

    # ── Consistency ───────────────────────────────────────────────────────────

    def check_invariants(self, max_meetings: int = MAX_MEETINGS_PER_PLAYER) -> None:
        """Raise InvariantViolation if the state is internally inconsistent."""
        ids = [p.id for p in self.players]
        if len(ids) != len(set(ids)):
            raise InvariantViolation(f"[{self.room_id}] duplicate player ids: {ids}")

        for p in self.players:
            if p.meetings_called > max_meetings:
                raise InvariantViolation(
                    f"[{self.room_id}] {p.id} called {p.meetings_called} meetings (max {max_meetings})"
                )

        for move in self.used_moves:
            if move != normalize_move(move):
                raise InvariantViolation(f"[{self.room_id}] un-normalized move in used_moves: {move!r}")

        if self.status == GameStatus.LOBBY:
            return

        if self.imposter_id is None or ids.count(self.imposter_id) != 1:
            raise InvariantViolation(f"[{self.room_id}] imposter {self.imposter_id!r} is not exactly one player")
        if sorted(self.turn_order) != sorted(ids):
            raise InvariantViolation(f"[{self.room_id}] turn order {self.turn_order} is not a permutation of {ids}")
        if not 0 <= self.turn_index < len(self.turn_order):
            raise InvariantViolation(
                f"[{self.room_id}] turn_index {self.turn_index} out of range [0, {len(self.turn_order)})"
            )
        if self.round < 1:
            raise InvariantViolation(f"[{self.room_id}] round {self.round} < 1 after start")
        if (self.status == GameStatus.VOTING) != (self.vote_session is not None):
            raise InvariantViolation(f"[{self.room_id}] vote session does not match status {self.status.value}")

    # ── Presentation ──────────────────────────────────────────────────────────

    def to_public(self) -> Dict[str, Any]:
        """Safe representation. Omits word, hint and the imposter while the game is live."""
        data: Dict[str, Any] = {
            "room_id": self.room_id,
            "status": self.status.value,
            "host_id": self.host_id,
            "category": self.category,
            "round": self.round,
            "players": [
                {
                    "index": i,
                    "id": p.id,
                    "name": p.display_name,
                    "kind": p.kind,
                    "meetings_called": p.meetings_called,
                }
                for i, p in enumerate(self.players)
            ],
            "turn_order": self.turn_order,
            "current_player_id": self.current_player_id,
            "clues": [
                {"player_id": c.player_id, "player_name": c.player_name, "content": c.content, "round": c.round}
                for c in self.clue_log
            ],
            "voting": None,
        }
        if self.vote_session:
            data["voting"] = {
                "called_by": self.vote_session.called_by,
                "window_open": self.vote_session.window_open,
                "deadline": self.vote_session.deadline.isoformat(),
                "voters": sorted(self.vote_session.choices),
            }
        if self.status == GameStatus.ENDED:
            data["word"] = self.word
            data["imposter_id"] = self.imposter_id
        return data


# ── Collaborator payloads ─────────────────────────────────────────────────────

class RoundContent(BaseModel):
    word: str
    category: str
    hint: Optional[str] = None


class MoveContext(BaseModel):
    """What an automated player is allowed to know on its turn."""
    player_id: str
    player_name: str
    category: str
    word: Optional[str] = None   # None for the imposter
    hint: Optional[str] = None   # imposter only
    is_imposter: bool = False
    round: int = 1
    recent_clues: List[ClueEntry] = []
    used_moves: List[str] = []
    meetings_left: int = 0


class VoteCandidate(BaseModel):
    index: int  # slot in GameState.players
    id: str
    name: str


class MoveDecisionKind(str, Enum):
    CLUE = "clue"
    VOTE_INTENT = "vote_intent"


class MoveDecision(BaseModel):
    kind: MoveDecisionKind
    text: Optional[str] = None
    reason: Optional[str] = None


# ── Engine results ────────────────────────────────────────────────────────────

class MoveStatus(str, Enum):
    IGNORED = "IGNORED"
    DUPLICATE = "DUPLICATE"
    VALID_MOVE = "VALID_MOVE"


class MoveResult(BaseModel):
    status: MoveStatus
    player_id: Optional[str] = None
    player_name: Optional[str] = None
    content: Optional[str] = None
    next_player_id: Optional[str] = None
    round: Optional[int] = None


class AutomatedAction(str, Enum):
    CLUE = "CLUE"
    VOTE = "VOTE"
    PASS = "PASS"
    IGNORED = "IGNORED"


class AutomatedTurnResult(BaseModel):
    action: AutomatedAction
    player_id: Optional[str] = None
    player_name: Optional[str] = None
    clue: Optional[str] = None
    degraded: bool = False


class StartResult(BaseModel):
    room_id: str
    category: str
    turn_order: List[Dict[str, str]]  # [{id, name}]
    first_player_id: str
    round: int = 1


class RoleCard(BaseModel):
    player_id: str
    is_imposter: bool
    category: str
    word: Optional[str] = None
    hint: Optional[str] = None


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateGameRequest(BaseModel):
    host_id: str
    host_name: str = "Host"


class JoinGameRequest(BaseModel):
    player_id: str
    player_name: str


class PlayerRequest(BaseModel):
    player_id: str


class MoveRequest(BaseModel):
    player_id: str
    content: str


class VoteRequest(BaseModel):
    player_id: str
    target_index: int
