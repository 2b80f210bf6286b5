from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache

import asyncpg  # type: ignore[import-untyped]

from app.core.auth import QueryScope
from app.services.database import ConnectionPoolManager, get_pool_manager
from app.services.errors import RepositoryConflictError, RepositoryNotFoundError
from app.services.history import AdminStatus, StudentStatus, TrackingEntry
from app.services.tracking_repository import TrackingRepository, get_tracking_repository
from app.services.transitions import validate_system_close

logger = logging.getLogger(__name__)

GRIEVANCE_ID_PATTERN = r"^(GRV-\d{4}-\d{6}|ISSUE-\d{6}-\d{5})$"
GRIEVANCE_ID_RE = re.compile(GRIEVANCE_ID_PATTERN)
GRIEVANCE_ID_ATTEMPTS = 3
INITIAL_RESPONSE_TEXT = "Grievance submitted successfully. Under review by admin."
SOFT_CLOSE_RESPONSE_TEXT = "Grievance has been closed/archived by system."

# Latest entry per grievance uses the same ordering as latest_by_timestamp.
_OVERVIEW_SELECT = """
select
  g.grievance_id,
  g.roll_no,
  g.campus_id,
  g.issue_code,
  g.subject,
  g.description,
  g.has_attachments,
  g.created_at,
  t.admin_status,
  t.student_status,
  t.response_at
from grievances g
left join issue_types i on i.issue_code = g.issue_code
left join lateral (
  select admin_status, student_status, response_at
  from tracking
  where tracking.grievance_id = g.grievance_id
  order by response_at desc, id desc
  limit 1
) t on true
"""


@dataclass(slots=True)
class GrievanceDraft:
    roll_no: str
    campus_id: int
    issue_code: int
    subject: str
    description: str
    has_attachments: bool = False


@dataclass(slots=True)
class Grievance:
    grievance_id: str
    roll_no: str
    campus_id: int
    issue_code: int
    subject: str
    description: str
    has_attachments: bool
    created_at: datetime


@dataclass(slots=True)
class GrievanceOverview:
    grievance: Grievance
    current_admin_status: AdminStatus | None = None
    current_student_status: StudentStatus | None = None
    last_updated: datetime | None = None


def is_valid_grievance_id(value: str) -> bool:
    return bool(GRIEVANCE_ID_RE.match(value))


def generate_grievance_id(*, now: datetime | None = None) -> str:
    year = (now or datetime.now(timezone.utc)).year
    return f"GRV-{year}-{secrets.randbelow(1_000_000):06d}"


class GrievanceRepository:
    def __init__(self, db: ConnectionPoolManager, tracking: TrackingRepository) -> None:
        self._db = db
        self._tracking = tracking

    async def create(self, draft: GrievanceDraft) -> tuple[Grievance, TrackingEntry]:
        """Insert a grievance together with its initial NEW/SUBMITTED entry.

        Generated ids are random; a collision is retried with a fresh id a few
        times before the conflict is surfaced.
        """
        for attempt in range(1, GRIEVANCE_ID_ATTEMPTS + 1):
            grievance_id = generate_grievance_id()
            try:
                async with self._db.transaction() as conn:
                    grievance = await self._insert(conn, grievance_id, draft)
                    initial_entry = await self._tracking.append_system_entry(
                        conn,
                        grievance_id=grievance_id,
                        response_text=INITIAL_RESPONSE_TEXT,
                        admin_status=AdminStatus.NEW,
                        student_status=StudentStatus.SUBMITTED,
                        has_attachments=draft.has_attachments,
                    )
            except RepositoryConflictError:
                if attempt == GRIEVANCE_ID_ATTEMPTS:
                    raise
                logger.warning("grievance id collision grievance_id=%s attempt=%s", grievance_id, attempt)
                continue

            logger.info(
                "grievance created grievance_id=%s roll_no=%s campus_id=%s",
                grievance.grievance_id,
                grievance.roll_no,
                grievance.campus_id,
            )
            return grievance, initial_entry

        raise RepositoryConflictError("grievance id already exists")  # pragma: no cover

    async def get(self, grievance_id: str) -> Grievance:
        row = await self._db.fetchrow(
            """
            select
              grievance_id,
              roll_no,
              campus_id,
              issue_code,
              subject,
              description,
              has_attachments,
              created_at
            from grievances
            where grievance_id = $1
            """,
            grievance_id,
        )
        if not row:
            raise RepositoryNotFoundError(f"grievance {grievance_id} not found")
        return self._grievance_from_row(row)

    async def exists(self, grievance_id: str) -> bool:
        return bool(
            await self._db.fetchval(
                "select exists(select 1 from grievances where grievance_id = $1)",
                grievance_id,
            )
        )

    async def get_created_at(self, grievance_id: str) -> datetime | None:
        return await self._db.fetchval(
            "select created_at from grievances where grievance_id = $1",
            grievance_id,
        )

    async def exists_in_scope(self, grievance_id: str, scope: QueryScope) -> bool:
        return bool(
            await self._db.fetchval(
                """
                select exists(
                  select 1
                  from grievances g
                  left join issue_types i on i.issue_code = g.issue_code
                  where g.grievance_id = $1
                    and ($2::int is null or g.campus_id = $2::int)
                    and ($3::text is null or i.department = $3::text)
                )
                """,
                grievance_id,
                scope.campus_id,
                scope.department,
            )
        )

    async def list_in_scope(
        self,
        scope: QueryScope,
        *,
        limit: int,
        offset: int = 0,
        admin_status: AdminStatus | None = None,
    ) -> list[GrievanceOverview]:
        """Newest grievances first, each with its latest tracking status."""
        rows = await self._db.execute(
            f"""
            {_OVERVIEW_SELECT}
            where ($1::int is null or g.campus_id = $1::int)
              and ($2::text is null or i.department = $2::text)
              and ($3::text is null or t.admin_status = $3::text)
            order by g.created_at desc, g.grievance_id desc
            limit $4 offset $5
            """,
            scope.campus_id,
            scope.department,
            admin_status.value if admin_status else None,
            limit,
            offset,
        )
        return [self._overview_from_row(row) for row in rows]

    async def list_by_roll_no(self, roll_no: str, *, limit: int, offset: int = 0) -> list[GrievanceOverview]:
        rows = await self._db.execute(
            f"""
            {_OVERVIEW_SELECT}
            where g.roll_no = $1
            order by g.created_at desc, g.grievance_id desc
            limit $2 offset $3
            """,
            roll_no,
            limit,
            offset,
        )
        return [self._overview_from_row(row) for row in rows]

    async def soft_close(self, grievance_id: str, *, reason: str | None = None) -> TrackingEntry:
        async with self._db.transaction() as conn:
            await self._tracking.lock_grievance(conn, grievance_id)
            latest = await self._tracking.fetch_latest(conn, grievance_id)
            validate_system_close(latest.admin_status if latest else None)
            entry = await self._tracking.append_system_entry(
                conn,
                grievance_id=grievance_id,
                response_text=reason or SOFT_CLOSE_RESPONSE_TEXT,
                admin_status=AdminStatus.RESOLVED,
                student_status=StudentStatus.RESOLVED,
            )

        logger.info("grievance soft-closed grievance_id=%s tracking_id=%s", grievance_id, entry.id)
        return entry

    @staticmethod
    async def _insert(conn: asyncpg.Connection, grievance_id: str, draft: GrievanceDraft) -> Grievance:
        row = await conn.fetchrow(
            """
            insert into grievances (
              grievance_id,
              roll_no,
              campus_id,
              issue_code,
              subject,
              description,
              has_attachments
            )
            values ($1, $2, $3, $4, $5, $6, $7)
            returning
              grievance_id,
              roll_no,
              campus_id,
              issue_code,
              subject,
              description,
              has_attachments,
              created_at
            """,
            grievance_id,
            draft.roll_no,
            draft.campus_id,
            draft.issue_code,
            draft.subject,
            draft.description,
            draft.has_attachments,
        )
        return GrievanceRepository._grievance_from_row(row)

    @staticmethod
    def _grievance_from_row(row: asyncpg.Record) -> Grievance:
        return Grievance(
            grievance_id=row["grievance_id"],
            roll_no=row["roll_no"],
            campus_id=int(row["campus_id"]),
            issue_code=int(row["issue_code"]),
            subject=row["subject"],
            description=row["description"],
            has_attachments=bool(row["has_attachments"]),
            created_at=row["created_at"],
        )

    @classmethod
    def _overview_from_row(cls, row: asyncpg.Record) -> GrievanceOverview:
        admin_status = row["admin_status"]
        student_status = row["student_status"]
        return GrievanceOverview(
            grievance=cls._grievance_from_row(row),
            current_admin_status=AdminStatus(admin_status) if admin_status else None,
            current_student_status=StudentStatus(student_status) if student_status else None,
            last_updated=row["response_at"],
        )


@lru_cache
def get_grievance_repository() -> GrievanceRepository:
    return GrievanceRepository(get_pool_manager(), get_tracking_repository())
