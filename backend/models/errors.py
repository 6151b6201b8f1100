"""
Error taxonomy for the imposter engine.

GameStateError     : a rejected operation; raised straight to the caller, which
                      translates `code` / `message` into something user-facing.
ExternalServiceError: WordProvider / MoveGenerator failure; always caught at the
                      call site (start aborts, bot turns degrade).
InvariantViolation : programming error; only ever raised by check_invariants().
"""


class GameStateError(Exception):
    code: str = "GAME_STATE_ERROR"
    http_status: int = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


class NotFound(GameStateError):
    """No game found in this room."""
    code = "NOT_FOUND"
    http_status = 404


class AlreadyExists(GameStateError):
    """A game is already in progress in this room."""
    code = "ALREADY_EXISTS"
    http_status = 409


class AlreadyStarted(GameStateError):
    """Game already started."""
    code = "ALREADY_STARTED"
    http_status = 409


class AlreadyJoined(GameStateError):
    """You already joined."""
    code = "ALREADY_JOINED"
    http_status = 409


class LobbyFull(GameStateError):
    """The lobby is full."""
    code = "LOBBY_FULL"
    http_status = 409


class NotHost(GameStateError):
    """Only the host can start the game."""
    code = "NOT_HOST"
    http_status = 403


class InsufficientPlayers(GameStateError):
    """Need at least 2 players to start."""
    code = "INSUFFICIENT_PLAYERS"


class MeetingLimitExceeded(GameStateError):
    """You have already called the maximum number of meetings."""
    code = "MEETING_LIMIT_EXCEEDED"
    http_status = 409


class NotInProgress(GameStateError):
    """No round is in progress."""
    code = "NOT_IN_PROGRESS"
    http_status = 409


class VotingClosed(GameStateError):
    """Voting is not open."""
    code = "VOTING_CLOSED"
    http_status = 409


class VoteAlreadyCast(GameStateError):
    """You have already voted."""
    code = "VOTE_ALREADY_CAST"
    http_status = 409


class InvalidVoteTarget(GameStateError):
    """That is not a valid player to vote for."""
    code = "INVALID_VOTE_TARGET"


class NotAPlayer(GameStateError):
    """You are not in this game."""
    code = "NOT_A_PLAYER"
    http_status = 403


class ExternalServiceError(Exception):
    """A text-generation collaborator failed or returned something unusable."""

    def __init__(self, service: str, detail: str = ""):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} failed: {detail}" if detail else f"{service} failed")


class InvariantViolation(AssertionError):
    """GameState is internally inconsistent."""
