from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

import app.core.security as security
from app.core.config import get_settings
from app.core.ratelimit import get_rate_limiter
from app.main import app
from app.services.audit import AuditLogger, get_audit_logger
from app.services.database import ConnectionPoolManager, get_pool_manager
from app.services.errors import InvalidTransitionError
from app.services.grievance_repository import GrievanceRepository, get_grievance_repository
from app.services.history import AdminStatus, StudentStatus, TrackingDraft
from app.services.tracking_repository import TrackingRepository, get_tracking_repository
from app.services.tracking_service import TrackingService, get_tracking_service

MIGRATION_PATH = Path(__file__).resolve().parents[2] / "db" / "migrations" / "0001_tracking.sql"
GRIEVANCE_ID = "GRV-2025-000123"
AUTH_HEADERS = {"Authorization": "Bearer token"}

T = TypeVar("T")

CACHED_GETTERS = (
    get_settings,
    get_pool_manager,
    get_tracking_repository,
    get_grievance_repository,
    get_audit_logger,
    get_tracking_service,
    get_rate_limiter,
)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("GT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require GT_DATABASE_URL or DATABASE_URL")
    _run(_execute(url, MIGRATION_PATH.read_text()))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset_and_seed(database_url))


@pytest.fixture
def api_client(database_url: str) -> TestClient:
    os.environ["GT_DATABASE_URL"] = database_url
    os.environ["GT_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["GT_SUPABASE_ANON_KEY"] = "anon-key"
    _clear_caches()

    with TestClient(app) as client:
        yield client

    os.environ.pop("GT_SUPABASE_URL", None)
    os.environ.pop("GT_SUPABASE_ANON_KEY", None)
    _clear_caches()


def _mock_admin(monkeypatch: pytest.MonkeyPatch, admin_id: str) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {"id": f"user-{admin_id.lower()}", "app_metadata": {"role": "SUPER_ADMIN", "admin_id": admin_id}}

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def test_tracking_lifecycle_against_postgres(
    api_client: TestClient,
    database_url: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_admin(monkeypatch, "A1")
    pending = api_client.post(
        "/tracking",
        json={
            "grievance_id": GRIEVANCE_ID,
            "response_text": "Looking into it",
            "admin_status": "PENDING",
            "student_status": "UNDER_REVIEW",
            "response_by": "A1",
        },
        headers=AUTH_HEADERS,
    )
    assert pending.status_code == 201
    assert pending.json()["admin_name"] == "Admin One"

    current = api_client.get(f"/tracking/{GRIEVANCE_ID}/status", headers=AUTH_HEADERS)
    assert current.json()["entry"]["id"] == pending.json()["id"]

    redirected = api_client.post(
        f"/tracking/{GRIEVANCE_ID}/redirect",
        json={"redirect_to": "A2", "comment": "needs exam dept"},
        headers=AUTH_HEADERS,
    )
    assert redirected.status_code == 201
    assert redirected.json()["redirect_from"] == "A1"

    _mock_admin(monkeypatch, "A2")
    resolved = api_client.post(
        "/tracking",
        json={
            "grievance_id": GRIEVANCE_ID,
            "response_text": "Result published",
            "admin_status": "RESOLVED",
            "student_status": "RESOLVED",
            "response_by": "A2",
        },
        headers=AUTH_HEADERS,
    )
    assert resolved.status_code == 201

    reopened = api_client.post(
        "/tracking",
        json={
            "grievance_id": GRIEVANCE_ID,
            "response_text": "Reopening",
            "admin_status": "PENDING",
            "student_status": "UNDER_REVIEW",
            "response_by": "A2",
        },
        headers=AUTH_HEADERS,
    )
    assert reopened.status_code == 409
    assert reopened.json()["detail"]["kind"] == "invalid_transition"

    history = api_client.get(f"/tracking/{GRIEVANCE_ID}", headers=AUTH_HEADERS).json()
    assert history["summary"]["total_entries"] == 4
    assert history["summary"]["current_status"] == {"admin": "RESOLVED", "student": "RESOLVED"}
    timestamps = [entry["response_at"] for entry in history["entries"]]
    assert timestamps == sorted(timestamps)


def test_missing_admin_does_not_persist_entry(
    api_client: TestClient,
    database_url: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_admin(monkeypatch, "A404")
    before = _run(_tracking_count(database_url))

    response = api_client.post(
        "/tracking",
        json={
            "grievance_id": GRIEVANCE_ID,
            "response_text": "ghost",
            "admin_status": "PENDING",
            "student_status": "UNDER_REVIEW",
            "response_by": "A404",
        },
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 404
    assert _run(_tracking_count(database_url)) == before


def test_concurrent_redirects_serialize_on_grievance_lock(database_url: str) -> None:
    async def race() -> list[Any]:
        db = ConnectionPoolManager(
            database_url=database_url,
            min_pool_size=1,
            max_pool_size=4,
            max_waiting=10,
            acquire_timeout_seconds=5.0,
            command_timeout_seconds=5.0,
        )
        tracking = TrackingRepository(db)
        service = TrackingService(tracking, GrievanceRepository(db, tracking), AuditLogger(db))
        try:
            await service.create_tracking_entry(
                _pending_draft(),
                "A1",
            )
            results = await asyncio.gather(
                service.redirect_grievance(GRIEVANCE_ID, "A1", "A2", "to A2"),
                service.redirect_grievance(GRIEVANCE_ID, "A1", "A3", "to A3"),
                return_exceptions=True,
            )
            await service._audit.drain()
            return results
        finally:
            await db.close()

    results = _run(race())

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidTransitionError)
    redirects = _run(
        _fetchval(database_url, "select count(*) from tracking where grievance_id = $1 and is_redirect", GRIEVANCE_ID)
    )
    assert redirects == 1


def test_tracking_rows_are_append_only(database_url: str) -> None:
    with pytest.raises(asyncpg.exceptions.CheckViolationError):
        _run(_execute(database_url, "update tracking set response_text = 'edited'"))
    with pytest.raises(asyncpg.exceptions.CheckViolationError):
        _run(_execute(database_url, "delete from tracking"))


def test_soft_close_and_create_grievance(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def _student(**_: Any) -> dict[str, Any]:
        return {"id": "user-s1", "app_metadata": {"roll_no": "41521001"}}

    monkeypatch.setattr(security, "_fetch_supabase_user", _student)
    created = api_client.post(
        "/grievances",
        json={"campus_id": 1, "issue_code": 10, "subject": "Fee refund", "description": "Refund pending."},
        headers=AUTH_HEADERS,
    )
    assert created.status_code == 201
    grievance_id = created.json()["grievance"]["grievance_id"]
    assert grievance_id.startswith("GRV-")

    _mock_admin(monkeypatch, "A1")
    closed = api_client.delete(f"/grievances/{grievance_id}", headers=AUTH_HEADERS)
    assert closed.status_code == 200
    assert closed.json()["admin_status"] == "RESOLVED"
    assert api_client.delete(f"/grievances/{grievance_id}", headers=AUTH_HEADERS).status_code == 409



def test_grievance_lists_carry_latest_status(
    api_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _mock_admin(monkeypatch, "A1")
    api_client.post(
        "/tracking",
        json={
            "grievance_id": GRIEVANCE_ID,
            "response_text": "Looking into it",
            "admin_status": "PENDING",
            "student_status": "UNDER_REVIEW",
            "response_by": "A1",
        },
        headers=AUTH_HEADERS,
    )

    listed = api_client.get("/grievances", params={"status": "PENDING"}, headers=AUTH_HEADERS)
    assert listed.status_code == 200
    [item] = listed.json()["items"]
    assert item["grievance"]["grievance_id"] == GRIEVANCE_ID
    assert item["current_student_status"] == "UNDER_REVIEW"
    assert api_client.get("/grievances", params={"status": "NEW"}, headers=AUTH_HEADERS).json()["items"] == []

    async def _student(**_: Any) -> dict[str, Any]:
        return {"id": "user-s1", "app_metadata": {"roll_no": "41521001"}}

    monkeypatch.setattr(security, "_fetch_supabase_user", _student)
    mine = api_client.get("/grievances/my-grievances", headers=AUTH_HEADERS)
    assert [item["grievance"]["grievance_id"] for item in mine.json()["items"]] == [GRIEVANCE_ID]

def _pending_draft() -> TrackingDraft:
    return TrackingDraft(
        grievance_id=GRIEVANCE_ID,
        response_text="Looking into it",
        admin_status=AdminStatus.PENDING,
        student_status=StudentStatus.UNDER_REVIEW,
        response_by="A1",
    )


def _clear_caches() -> None:
    for getter in CACHED_GETTERS:
        getter.cache_clear()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _reset_and_seed(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              tracking,
              grievances,
              issue_types,
              admins,
              admin_audit_log
            restart identity cascade
            """
        )
        await conn.executemany(
            """
            insert into admins (admin_id, name, email, role, campus_id, department)
            values ($1, $2, $3, 'SUPER_ADMIN', null, null)
            """,
            [
                ("A1", "Admin One", "a1@example.edu"),
                ("A2", "Admin Two", "a2@example.edu"),
                ("A3", "Admin Three", "a3@example.edu"),
            ],
        )
        await conn.execute("insert into issue_types (issue_code, title, department) values (10, 'Examinations', 'EXAMS')")
        await conn.execute(
            """
            insert into grievances (grievance_id, roll_no, campus_id, issue_code, subject, description)
            values ($1, '41521001', 1, 10, 'Exam result not published', 'Semester 3 results are missing.')
            """,
            GRIEVANCE_ID,
        )
        await conn.execute(
            """
            insert into tracking (grievance_id, response_text, admin_status, student_status, response_by)
            values ($1, 'Grievance submitted successfully. Under review by admin.', 'NEW', 'SUBMITTED', 'SYSTEM')
            """,
            GRIEVANCE_ID,
        )
    finally:
        await conn.close()


async def _tracking_count(database_url: str) -> int:
    return await _fetchval(database_url, "select count(*) from tracking where grievance_id = $1", GRIEVANCE_ID)


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()
