"""Domain errors raised by the gamification services.

Each error carries the HTTP status the API layer renders it with and a
stable machine-readable `code`, so services never import FastAPI and
clients can tell errors sharing a status apart.
"""

from __future__ import annotations


class GamificationError(Exception):
    """Base class for expected, request-scoped failures."""

    status_code: int = 400
    code: str = "gamification_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(GamificationError):
    """Badge, achievement, streak or entry does not exist."""

    status_code = 404
    code = "not_found"


class InvalidStateError(GamificationError):
    """Operation not allowed in the entity's current state."""

    status_code = 409
    code = "invalid_state"


class ConflictError(GamificationError):
    """Concurrent writers could not be reconciled."""

    status_code = 409
    code = "conflict"


class ValidationError(GamificationError):
    """Caller supplied a value outside the accepted domain."""

    status_code = 422
    code = "validation_error"
