"""Legal admin-status graph for grievance tracking.

Every component that needs to decide whether a new tracking entry may be
appended asks this module; no other module encodes transition rules.
"""

from __future__ import annotations

from app.services.errors import InvalidTransitionError
from app.services.history import AdminStatus, TrackingEntry

ALLOWED_ADMIN_TRANSITIONS: dict[AdminStatus, frozenset[AdminStatus]] = {
    AdminStatus.NEW: frozenset({AdminStatus.PENDING, AdminStatus.REDIRECTED}),
    AdminStatus.PENDING: frozenset({AdminStatus.RESOLVED, AdminStatus.REJECTED, AdminStatus.REDIRECTED}),
    AdminStatus.REDIRECTED: frozenset({AdminStatus.PENDING, AdminStatus.RESOLVED, AdminStatus.REJECTED}),
    AdminStatus.RESOLVED: frozenset(),
    AdminStatus.REJECTED: frozenset(),
}
TERMINAL_ADMIN_STATUSES = frozenset(
    status for status, allowed in ALLOWED_ADMIN_TRANSITIONS.items() if not allowed
)


def is_terminal(status: AdminStatus) -> bool:
    return status in TERMINAL_ADMIN_STATUSES


def allowed_next(current: AdminStatus | None) -> frozenset[AdminStatus]:
    if current is None:
        return frozenset(AdminStatus)
    return ALLOWED_ADMIN_TRANSITIONS[current]


def validate_admin_transition(current: AdminStatus | None, requested: AdminStatus) -> None:
    # No prior entry only happens for the system-generated first entry.
    if current is None:
        return
    if requested not in ALLOWED_ADMIN_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, requested.value)


def check_entry_transition(latest: TrackingEntry | None, requested: AdminStatus) -> None:
    validate_admin_transition(latest.admin_status if latest else None, requested)


def validate_system_close(current: AdminStatus | None) -> None:
    """Soft close may terminate any open grievance, never an already closed one."""
    if current is not None and is_terminal(current):
        raise InvalidTransitionError(current.value, AdminStatus.RESOLVED.value)
