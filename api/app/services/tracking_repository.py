from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache

import asyncpg  # type: ignore[import-untyped]

from app.services.database import ConnectionPoolManager, get_pool_manager
from app.services.errors import RepositoryNotFoundError
from app.services.history import (
    SYSTEM_ACTOR,
    AdminStatus,
    StudentStatus,
    TrackingDraft,
    TrackingEntry,
)

logger = logging.getLogger(__name__)

TransitionCheck = Callable[[TrackingEntry | None], None]

_ENTRY_COLUMNS = """
  t.id,
  t.grievance_id,
  t.response_text,
  t.admin_status,
  t.student_status,
  t.response_by,
  t.response_at,
  t.redirect_to,
  t.redirect_from,
  t.is_redirect,
  t.has_attachments,
  a.name as admin_name,
  a.role as admin_role
"""

_LATEST_ENTRY_SQL = f"""
select {_ENTRY_COLUMNS}
from tracking t
left join admins a on a.admin_id = t.response_by
where t.grievance_id = $1
order by t.response_at desc, t.id desc
limit 1
"""

# response_at is assigned after the grievance row lock is held and never
# precedes the grievance's previous entry.
_INSERT_ENTRY_SQL = f"""
with inserted as (
  insert into tracking (
    grievance_id,
    response_text,
    admin_status,
    student_status,
    response_by,
    response_at,
    redirect_to,
    redirect_from,
    is_redirect,
    has_attachments
  )
  values (
    $1,
    $2,
    $3,
    $4,
    $5,
    greatest(
      clock_timestamp(),
      coalesce(
        (select max(response_at) from tracking where grievance_id = $1),
        '-infinity'::timestamptz
      )
    ),
    $6,
    $7,
    $8,
    $9
  )
  returning *
)
select {_ENTRY_COLUMNS}
from inserted t
left join admins a on a.admin_id = t.response_by
"""


class TrackingRepository:
    """Append-only access to the ``tracking`` table.

    Rows are inserted and read, never updated or deleted.
    """

    def __init__(self, db: ConnectionPoolManager) -> None:
        self._db = db

    async def create(
        self,
        draft: TrackingDraft,
        *,
        check_transition: TransitionCheck | None = None,
    ) -> TrackingEntry:
        async with self._db.transaction() as conn:
            await self.lock_grievance(conn, draft.grievance_id)

            if not await self._active_admin_exists(conn, draft.response_by):
                raise RepositoryNotFoundError(f"active admin {draft.response_by} not found")

            if draft.is_redirect and draft.redirect_to:
                if not await self._active_admin_exists(conn, draft.redirect_to):
                    raise RepositoryNotFoundError(f"redirect target admin {draft.redirect_to} not found")

            if check_transition is not None:
                latest = await self.fetch_latest(conn, draft.grievance_id)
                check_transition(latest)

            entry = await self._insert(conn, draft)

        logger.info(
            "tracking entry created id=%s grievance_id=%s admin_status=%s response_by=%s",
            entry.id,
            entry.grievance_id,
            entry.admin_status.value,
            entry.response_by,
        )
        return entry

    async def append_system_entry(
        self,
        conn: asyncpg.Connection,
        *,
        grievance_id: str,
        response_text: str,
        admin_status: AdminStatus,
        student_status: StudentStatus,
        has_attachments: bool = False,
    ) -> TrackingEntry:
        draft = TrackingDraft(
            grievance_id=grievance_id,
            response_text=response_text,
            admin_status=admin_status,
            student_status=student_status,
            response_by=SYSTEM_ACTOR,
            has_attachments=has_attachments,
        )
        return await self._insert(conn, draft)

    async def latest_by_grievance(self, grievance_id: str) -> TrackingEntry | None:
        row = await self._db.fetchrow(_LATEST_ENTRY_SQL, grievance_id)
        return self._entry_from_row(row) if row else None

    async def history_by_grievance(self, grievance_id: str) -> list[TrackingEntry]:
        rows = await self._db.execute(
            f"""
            select {_ENTRY_COLUMNS}
            from tracking t
            left join admins a on a.admin_id = t.response_by
            where t.grievance_id = $1
            order by t.response_at asc, t.id asc
            """,
            grievance_id,
        )
        return [self._entry_from_row(row) for row in rows]

    async def exists_grievance(self, grievance_id: str) -> bool:
        return bool(
            await self._db.fetchval(
                "select exists(select 1 from grievances where grievance_id = $1)",
                grievance_id,
            )
        )

    async def exists_active_admin(self, admin_id: str) -> bool:
        return bool(
            await self._db.fetchval(
                "select exists(select 1 from admins where admin_id = $1 and is_active = true)",
                admin_id,
            )
        )

    async def lock_grievance(self, conn: asyncpg.Connection, grievance_id: str) -> None:
        # Serializes writers of one grievance; other grievances are unaffected.
        locked = await conn.fetchval(
            "select 1 from grievances where grievance_id = $1 for update",
            grievance_id,
        )
        if not locked:
            raise RepositoryNotFoundError(f"grievance {grievance_id} not found")

    async def fetch_latest(self, conn: asyncpg.Connection, grievance_id: str) -> TrackingEntry | None:
        row = await conn.fetchrow(_LATEST_ENTRY_SQL, grievance_id)
        return self._entry_from_row(row) if row else None

    @staticmethod
    async def _active_admin_exists(conn: asyncpg.Connection, admin_id: str) -> bool:
        return bool(
            await conn.fetchval(
                "select exists(select 1 from admins where admin_id = $1 and is_active = true)",
                admin_id,
            )
        )

    async def _insert(self, conn: asyncpg.Connection, draft: TrackingDraft) -> TrackingEntry:
        row = await conn.fetchrow(
            _INSERT_ENTRY_SQL,
            draft.grievance_id,
            draft.response_text,
            draft.admin_status.value,
            draft.student_status.value,
            draft.response_by,
            draft.redirect_to,
            draft.redirect_from,
            draft.is_redirect,
            draft.has_attachments,
        )
        return self._entry_from_row(row)

    @staticmethod
    def _entry_from_row(row: asyncpg.Record) -> TrackingEntry:
        return TrackingEntry(
            id=int(row["id"]),
            grievance_id=row["grievance_id"],
            response_text=row["response_text"],
            admin_status=AdminStatus(row["admin_status"]),
            student_status=StudentStatus(row["student_status"]),
            response_by=row["response_by"],
            response_at=row["response_at"],
            redirect_to=row["redirect_to"],
            redirect_from=row["redirect_from"],
            is_redirect=bool(row["is_redirect"]),
            has_attachments=bool(row["has_attachments"]),
            admin_name=row["admin_name"],
            admin_role=row["admin_role"],
        )


@lru_cache
def get_tracking_repository() -> TrackingRepository:
    return TrackingRepository(get_pool_manager())
