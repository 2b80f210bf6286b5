from __future__ import annotations

from typing import Any


class RepositoryError(Exception):
    """Base repository error."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable, times out, or is not configured."""

    kind = "transient"
    retryable = True


class RepositoryPoolExhaustedError(RepositoryUnavailableError):
    """Raised when every pooled connection is busy and the wait queue is full."""

    kind = "pool_exhausted"


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""

    kind = "not_found"


class RepositoryConflictError(RepositoryError):
    """Raised when an operation collides with existing state."""

    kind = "conflict"


class InvalidTransitionError(RepositoryConflictError):
    """Raised when a requested admin status is not reachable from the current one."""

    kind = "invalid_transition"

    def __init__(self, current_status: str | None, requested_status: str) -> None:
        super().__init__(f"invalid status transition: {current_status or 'NONE'} -> {requested_status}")
        self.current_status = current_status
        self.requested_status = requested_status

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["current_status"] = self.current_status
        detail["requested_status"] = self.requested_status
        return detail


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""

    kind = "unauthorized"


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""

    kind = "validation"


class InvalidRedirectError(RepositoryValidationError):
    """Raised when redirect fields are missing or inconsistent with the status."""

    kind = "invalid_redirect"


class SelfRedirectError(InvalidRedirectError):
    """Raised when an admin tries to redirect a grievance to themselves."""

    kind = "self_redirect"


class RepositoryInternalError(RepositoryError):
    """Raised for unexpected failures; the message never carries internals."""

    kind = "internal"
