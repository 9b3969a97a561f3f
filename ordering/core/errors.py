"""
Domain Errors

Every failure a caller can act on is one of these. The HTTP layer maps
``kind`` and ``status_code`` straight into the standard error response.
"""

from typing import Optional

__all__ = [
    "OrderingError",
    "NotFoundError",
    "InvalidArgumentError",
    "ForbiddenError",
    "InvalidStateTransitionError",
    "ConflictError",
    "UnauthenticatedError",
]


class OrderingError(Exception):
    """Base class for errors surfaced to API clients."""

    kind: str = "error"
    status_code: int = 500

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to the standard error payload."""
        return {
            "success": False,
            "error": self.kind,
            "detail": self.message,
        }


class NotFoundError(OrderingError):
    kind = "not_found"
    status_code = 404


class InvalidArgumentError(OrderingError):
    kind = "invalid_argument"
    status_code = 400


class ForbiddenError(OrderingError):
    kind = "forbidden"
    status_code = 403


class InvalidStateTransitionError(OrderingError):
    kind = "invalid_state_transition"
    status_code = 409


# Optimistic concurrency lost after all retries
class ConflictError(OrderingError):
    kind = "conflict"
    status_code = 409


class UnauthenticatedError(OrderingError):
    kind = "unauthenticated"
    status_code = 401
