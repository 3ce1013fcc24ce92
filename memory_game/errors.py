from __future__ import annotations

from typing import Optional


class MemoryGameError(ValueError):
    """Base class for session protocol errors.

    ``str(err)`` is always the stable snake_case ``code`` so callers can map
    errors the same way they map plain ``ValueError("code")`` values. Extra
    context goes in ``detail``.
    """

    code = "memory_game_error"
    retryable = False

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(self.code)
        self.detail = detail

    def __repr__(self) -> str:
        if self.detail:
            return f"{type(self).__name__}({self.code!r}, detail={self.detail!r})"
        return f"{type(self).__name__}({self.code!r})"


class NotAuthenticated(MemoryGameError):
    code = "not_authenticated"


class RoomNotFound(MemoryGameError):
    code = "room_not_found"


class RoomFull(MemoryGameError):
    code = "room_full"


class NotYourTurn(MemoryGameError):
    code = "not_your_turn"


class TurnBusy(MemoryGameError):
    code = "turn_busy"


class InvalidTile(MemoryGameError):
    code = "invalid_tile"


class GameNotActive(MemoryGameError):
    code = "game_not_active"


class StartRejected(MemoryGameError):
    code = "start_rejected"


class InvalidArgument(MemoryGameError):
    code = "invalid_argument"


class InvariantViolation(MemoryGameError):
    code = "invariant_violation"


class StoreUnavailable(MemoryGameError):
    code = "store_unavailable"
    retryable = True
