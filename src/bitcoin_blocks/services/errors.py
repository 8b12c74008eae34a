"""Error taxonomy shared by every engine entry point.

Each error carries a stable ``kind`` string so callers (the HTTP layer, UIs,
background workers) can react to the specific failure without parsing
messages.
"""

from __future__ import annotations


class GameError(Exception):
    """Base exception for engine failures."""

    kind = "game_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(GameError):
    """Input failed validation before any state was touched."""

    kind = "validation_error"


class NotFoundError(GameError):
    """The referenced round, transfer or record does not exist."""

    kind = "not_found"


class InvalidStateError(GameError):
    """The target is not in the state the operation requires."""

    kind = "invalid_state"


class DuplicateError(GameError):
    """A uniqueness constraint rejected the write."""

    kind = "duplicate"


class UnauthorizedError(GameError):
    """The acting principal is not allowed to perform the operation."""

    kind = "unauthorized"


class NoParticipantsError(GameError):
    """Result computation was requested for a round without guesses."""

    kind = "no_participants"


class UpstreamUnavailableError(GameError):
    """An external data source failed after bounded retries."""

    kind = "upstream_unavailable"

    def __init__(self, message: str, *, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error
