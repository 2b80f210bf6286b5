from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from functools import lru_cache
from typing import Any

from opentelemetry import trace

from app.services.audit import (
    ACTION_GRIEVANCE_CLOSED,
    ACTION_GRIEVANCE_REDIRECTED,
    ACTION_TRACKING_CREATED,
    AuditLogger,
    get_audit_logger,
)
from app.services.errors import (
    InvalidRedirectError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryInternalError,
    RepositoryNotFoundError,
    SelfRedirectError,
)
from app.services.grievance_repository import GrievanceRepository, get_grievance_repository
from app.services.history import (
    AdminStatus,
    StudentStatus,
    TrackingDraft,
    TrackingEntry,
    TrackingHistory,
    summarize_history,
)
from app.services.tracking_repository import TrackingRepository, get_tracking_repository
from app.services.transitions import check_entry_transition, validate_admin_transition

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class TrackingService:
    """Admin actions on a grievance's tracking history.

    Each action is validated against the current status, then persisted by the
    repository, which repeats the transition check inside the write
    transaction so that two concurrent actions cannot both move the grievance
    out of the same status.
    """

    def __init__(
        self,
        tracking_repository: TrackingRepository,
        grievance_repository: GrievanceRepository,
        audit_logger: AuditLogger,
    ) -> None:
        self._tracking = tracking_repository
        self._grievances = grievance_repository
        self._audit = audit_logger

    async def create_tracking_entry(self, draft: TrackingDraft, acting_admin_id: str) -> TrackingEntry:
        with tracer.start_as_current_span("tracking.create_entry") as span:
            span.set_attribute("grievance.id", draft.grievance_id)
            span.set_attribute("tracking.admin_status", draft.admin_status.value)
            with _opaque_internal_errors(
                "failed to create tracking entry",
                grievance_id=draft.grievance_id,
                admin_id=acting_admin_id,
            ):
                entry = await self._append(draft, acting_admin_id)

        self._audit.log_admin_action(
            acting_admin_id,
            ACTION_TRACKING_CREATED,
            {
                "grievance_id": entry.grievance_id,
                "tracking_id": entry.id,
                "admin_status": entry.admin_status.value,
                "student_status": entry.student_status.value,
            },
        )
        return entry

    async def redirect_grievance(
        self,
        grievance_id: str,
        from_admin_id: str,
        to_admin_id: str,
        comment: str,
    ) -> TrackingEntry:
        with tracer.start_as_current_span("tracking.redirect") as span:
            span.set_attribute("grievance.id", grievance_id)
            with _opaque_internal_errors(
                "failed to redirect grievance",
                grievance_id=grievance_id,
                from_admin_id=from_admin_id,
                to_admin_id=to_admin_id,
            ):
                if from_admin_id == to_admin_id:
                    raise SelfRedirectError("cannot redirect a grievance to yourself")
                if not await self._tracking.exists_grievance(grievance_id):
                    raise RepositoryNotFoundError(f"grievance {grievance_id} not found")
                if not await self._tracking.exists_active_admin(from_admin_id):
                    raise RepositoryNotFoundError(f"active admin {from_admin_id} not found")
                if not await self._tracking.exists_active_admin(to_admin_id):
                    raise RepositoryNotFoundError(f"redirect target admin {to_admin_id} not found")

                draft = TrackingDraft(
                    grievance_id=grievance_id,
                    response_text=comment,
                    admin_status=AdminStatus.REDIRECTED,
                    student_status=StudentStatus.UNDER_REVIEW,
                    response_by=from_admin_id,
                    redirect_to=to_admin_id,
                    redirect_from=from_admin_id,
                    is_redirect=True,
                )
                entry = await self._append(draft, from_admin_id)

        logger.info(
            "grievance redirected grievance_id=%s from_admin_id=%s to_admin_id=%s",
            grievance_id,
            from_admin_id,
            to_admin_id,
        )
        self._audit.log_admin_action(
            from_admin_id,
            ACTION_GRIEVANCE_REDIRECTED,
            {"grievance_id": grievance_id, "tracking_id": entry.id, "redirect_to": to_admin_id},
        )
        return entry

    async def get_current_status(self, grievance_id: str) -> TrackingEntry | None:
        with tracer.start_as_current_span("tracking.current_status"):
            with _opaque_internal_errors("failed to get current tracking status", grievance_id=grievance_id):
                entry = await self._tracking.latest_by_grievance(grievance_id)
        if entry is None:
            logger.info("no tracking history grievance_id=%s", grievance_id)
        return entry

    async def get_history(self, grievance_id: str) -> TrackingHistory:
        with tracer.start_as_current_span("tracking.history") as span:
            span.set_attribute("grievance.id", grievance_id)
            with _opaque_internal_errors("failed to retrieve tracking history", grievance_id=grievance_id):
                created_at = await self._grievances.get_created_at(grievance_id)
                if created_at is None:
                    raise RepositoryNotFoundError(f"grievance {grievance_id} not found")
                entries = await self._tracking.history_by_grievance(grievance_id)

        summary = summarize_history(entries, grievance_created_at=created_at)
        return TrackingHistory(grievance_id=grievance_id, summary=summary, entries=entries)

    async def close_grievance(
        self,
        grievance_id: str,
        acting_admin_id: str,
        *,
        reason: str | None = None,
    ) -> TrackingEntry:
        with tracer.start_as_current_span("tracking.close"):
            with _opaque_internal_errors(
                "failed to close grievance",
                grievance_id=grievance_id,
                admin_id=acting_admin_id,
            ):
                entry = await self._grievances.soft_close(grievance_id, reason=reason)

        self._audit.log_admin_action(
            acting_admin_id,
            ACTION_GRIEVANCE_CLOSED,
            {"grievance_id": grievance_id, "tracking_id": entry.id, "reason": reason},
        )
        return entry

    async def _append(self, draft: TrackingDraft, acting_admin_id: str) -> TrackingEntry:
        if draft.response_by != acting_admin_id:
            raise RepositoryForbiddenError("admins can only create tracking entries on their own behalf")

        current = await self._tracking.latest_by_grievance(draft.grievance_id)
        validate_admin_transition(current.admin_status if current else None, draft.admin_status)
        draft = self._validate_redirect(draft)

        requested = draft.admin_status
        return await self._tracking.create(
            draft,
            check_transition=lambda latest: check_entry_transition(latest, requested),
        )

    @staticmethod
    def _validate_redirect(draft: TrackingDraft) -> TrackingDraft:
        if draft.is_redirect:
            if not draft.redirect_to:
                raise InvalidRedirectError("redirect_to must be specified for redirect actions")
            if draft.admin_status is not AdminStatus.REDIRECTED:
                raise InvalidRedirectError("admin_status must be REDIRECTED for redirect actions")
            if draft.redirect_to == draft.response_by:
                raise SelfRedirectError("cannot redirect a grievance to yourself")
            if not draft.redirect_from:
                return replace(draft, redirect_from=draft.response_by)
            if draft.redirect_from != draft.response_by:
                raise InvalidRedirectError("redirect_from must be the responding admin")
            return draft

        if draft.admin_status is AdminStatus.REDIRECTED:
            raise InvalidRedirectError("REDIRECTED status requires is_redirect")
        if draft.redirect_to or draft.redirect_from:
            raise InvalidRedirectError("redirect_to and redirect_from require is_redirect")
        return draft


@contextmanager
def _opaque_internal_errors(message: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except RepositoryError:
        raise
    except Exception as exc:
        logger.exception("%s %s", message, " ".join(f"{key}={value}" for key, value in context.items()))
        raise RepositoryInternalError(message) from exc


@lru_cache
def get_tracking_service() -> TrackingService:
    return TrackingService(
        tracking_repository=get_tracking_repository(),
        grievance_repository=get_grievance_repository(),
        audit_logger=get_audit_logger(),
    )
