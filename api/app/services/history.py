from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

SYSTEM_ACTOR = "SYSTEM"


class AdminStatus(str, Enum):
    NEW = "NEW"
    PENDING = "PENDING"
    REDIRECTED = "REDIRECTED"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


class StudentStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


CLOSED_STUDENT_STATUSES = frozenset({StudentStatus.RESOLVED, StudentStatus.REJECTED})


@dataclass(frozen=True, slots=True)
class TrackingDraft:
    """An admin action that has not been persisted yet."""

    grievance_id: str
    response_text: str
    admin_status: AdminStatus
    student_status: StudentStatus
    response_by: str
    redirect_to: str | None = None
    redirect_from: str | None = None
    is_redirect: bool = False
    has_attachments: bool = False


@dataclass(frozen=True, slots=True)
class TrackingEntry:
    id: int
    grievance_id: str
    response_text: str
    admin_status: AdminStatus
    student_status: StudentStatus
    response_by: str
    response_at: datetime
    redirect_to: str | None = None
    redirect_from: str | None = None
    is_redirect: bool = False
    has_attachments: bool = False
    admin_name: str | None = None
    admin_role: str | None = None


@dataclass(frozen=True, slots=True)
class ResolutionTime:
    total_ms: int
    total_hours: float
    total_days: float


@dataclass(frozen=True, slots=True)
class CurrentStatus:
    admin: AdminStatus
    student: StudentStatus


@dataclass(frozen=True, slots=True)
class HistorySummary:
    total_entries: int
    current_status: CurrentStatus
    created_at: datetime | None
    last_updated: datetime | None
    redirect_count: int = 0
    involved_admins: int = 0
    resolution_time: ResolutionTime | None = None


@dataclass(frozen=True, slots=True)
class TrackingHistory:
    grievance_id: str
    summary: HistorySummary
    entries: list[TrackingEntry] = field(default_factory=list)


def _ordering_key(entry: TrackingEntry) -> tuple[datetime, int]:
    return (entry.response_at, entry.id)


def latest_by_timestamp(entries: Iterable[TrackingEntry]) -> TrackingEntry | None:
    """Current status of a grievance: the entry with the greatest ``response_at``.

    Entries sharing a timestamp are ordered by id, matching the repository's
    ``order by response_at desc, id desc``.
    """
    return max(entries, key=_ordering_key, default=None)


def chronological(entries: Iterable[TrackingEntry]) -> list[TrackingEntry]:
    return sorted(entries, key=_ordering_key)


def compute_resolution_time(started_at: datetime, finished_at: datetime) -> ResolutionTime:
    total_ms = max(0, int((finished_at - started_at).total_seconds() * 1000))
    return ResolutionTime(
        total_ms=total_ms,
        total_hours=round(total_ms / (1000 * 60 * 60), 1),
        total_days=round(total_ms / (1000 * 60 * 60 * 24), 1),
    )


def summarize_history(
    entries: Iterable[TrackingEntry],
    *,
    grievance_created_at: datetime | None = None,
) -> HistorySummary:
    ordered = chronological(entries)
    if not ordered:
        return HistorySummary(
            total_entries=0,
            current_status=CurrentStatus(admin=AdminStatus.NEW, student=StudentStatus.SUBMITTED),
            created_at=grievance_created_at,
            last_updated=grievance_created_at,
        )

    first = ordered[0]
    latest = ordered[-1]
    resolution_time = None
    if latest.student_status in CLOSED_STUDENT_STATUSES:
        resolution_time = compute_resolution_time(first.response_at, latest.response_at)

    return HistorySummary(
        total_entries=len(ordered),
        current_status=CurrentStatus(admin=latest.admin_status, student=latest.student_status),
        created_at=first.response_at,
        last_updated=latest.response_at,
        redirect_count=sum(1 for entry in ordered if entry.is_redirect),
        involved_admins=len({entry.response_by for entry in ordered if entry.response_by != SYSTEM_ACTOR}),
        resolution_time=resolution_time,
    )
