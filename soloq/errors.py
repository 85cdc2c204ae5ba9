"""Error kinds raised by the matchmaking engine."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class CommandResult(Enum):
    """Outcome reported to the command surface for join/leave/respond."""

    OK = "ok"
    ALREADY_QUEUED = "already_queued"
    NOT_QUEUED = "not_queued"
    STATE_CONFLICT = "state_conflict"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_ALREADY_RESOLVED = "session_already_resolved"
    STORE_UNAVAILABLE = "store_unavailable"
    UNKNOWN_PLAYER = "unknown_player"


class MatchmakingError(RuntimeError):
    """Base class for matchmaking failures."""

    result = CommandResult.STATE_CONFLICT


class AlreadyQueued(MatchmakingError):
    """Raised when a player already holds a queue entry."""

    result = CommandResult.ALREADY_QUEUED


class NotQueued(MatchmakingError):
    """Raised when removing a player that has no queue entry."""

    result = CommandResult.NOT_QUEUED


class StateConflict(MatchmakingError):
    """Raised when a player's state does not match the expected one.

    Callers should retry against fresh state or treat the request as stale.
    """

    result = CommandResult.STATE_CONFLICT

    def __init__(self, message: str, player_id: Optional[str] = None, actual=None):
        super().__init__(message)
        self.player_id = player_id
        self.actual = actual


class UnknownPlayer(MatchmakingError):
    """Raised for commands naming a player that never registered."""

    result = CommandResult.UNKNOWN_PLAYER


class SessionNotFound(MatchmakingError):
    """Raised when a ready-check session does not exist."""

    result = CommandResult.SESSION_NOT_FOUND


class SessionAlreadyResolved(MatchmakingError):
    """Raised for late responses after a session was confirmed or disbanded."""

    result = CommandResult.SESSION_ALREADY_RESOLVED


class StoreUnavailable(MatchmakingError):
    """Raised when the durable store cannot be reached.

    Nothing was committed, so the triggering operation is safe to retry.
    """

    result = CommandResult.STORE_UNAVAILABLE


__all__ = [
    "AlreadyQueued",
    "CommandResult",
    "MatchmakingError",
    "NotQueued",
    "SessionAlreadyResolved",
    "SessionNotFound",
    "StateConflict",
    "StoreUnavailable",
    "UnknownPlayer",
]
