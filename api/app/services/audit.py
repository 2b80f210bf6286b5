from __future__ import annotations

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Protocol

from app.services.database import get_pool_manager

logger = logging.getLogger(__name__)

ACTION_TRACKING_CREATED = "TRACKING_CREATED"
ACTION_GRIEVANCE_REDIRECTED = "GRIEVANCE_REDIRECTED"
ACTION_GRIEVANCE_CLOSED = "GRIEVANCE_CLOSED"


class AuditStatementExecutor(Protocol):
    async def execute(self, query: str, *args: Any) -> Any: ...


class AuditLogger:
    """Fire-and-forget writer for ``admin_audit_log``.

    Writes run as background tasks outside any tracking transaction. A failed
    write is logged and dropped; it never reaches the caller.
    """

    def __init__(self, db: AuditStatementExecutor) -> None:
        self._db = db
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def log_admin_action(self, admin_id: str, action_type: str, details: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("audit write skipped, no running loop admin_id=%s action_type=%s", admin_id, action_type)
            return

        task = loop.create_task(self._write(admin_id, action_type, details))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _write(self, admin_id: str, action_type: str, details: dict[str, Any]) -> None:
        try:
            await self._db.execute(
                """
                insert into admin_audit_log (admin_id, action_type, details)
                values ($1, $2, $3::jsonb)
                """,
                admin_id,
                action_type,
                json.dumps(details, default=str),
            )
        except Exception as exc:  # noqa: BLE001 - audit failures never abort tracking writes
            logger.warning(
                "audit write failed admin_id=%s action_type=%s error=%s",
                admin_id,
                action_type,
                exc,
            )


@lru_cache
def get_audit_logger() -> AuditLogger:
    return AuditLogger(get_pool_manager())
