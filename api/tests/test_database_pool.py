from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, TypeVar

import pytest
from asyncpg import exceptions as pg_exc

import app.services.database as database
from app.services.database import ConnectionPoolManager
from app.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryPoolExhaustedError,
    RepositoryUnavailableError,
)

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


class FakeTransaction:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn

    async def __aenter__(self) -> FakeTransaction:
        self.conn.events.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.conn.events.append("rollback" if exc_type else "commit")
        return False


class FakeConnection:
    def __init__(self) -> None:
        self.events: list[str] = []
        self.fail_with: BaseException | None = None

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    async def fetchval(self, query: str, *args: Any) -> Any:
        if self.fail_with is not None:
            raise self.fail_with
        return 1

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        if self.fail_with is not None:
            raise self.fail_with
        return {"value": 1}

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        if self.fail_with is not None:
            raise self.fail_with
        return [{"value": 1}]


class FakePool:
    def __init__(self, size: int) -> None:
        self.connections = [FakeConnection() for _ in range(size)]
        self._idle = list(self.connections)
        self.released: list[FakeConnection] = []

    def get_size(self) -> int:
        return len(self.connections)

    def get_idle_size(self) -> int:
        return len(self._idle)

    async def acquire(self, timeout: float | None = None) -> FakeConnection:
        if self._idle:
            return self._idle.pop()
        await asyncio.sleep(timeout or 0)
        raise asyncio.TimeoutError()

    async def release(self, conn: FakeConnection) -> None:
        self.released.append(conn)
        self._idle.append(conn)

    async def close(self) -> None:
        self._idle.clear()


def _manager(pool: FakePool, *, max_waiting: int = 0, acquire_timeout: float = 0.01) -> ConnectionPoolManager:
    manager = ConnectionPoolManager(
        database_url="postgresql://tracking@localhost/tracking",
        min_pool_size=1,
        max_pool_size=pool.get_size(),
        max_waiting=max_waiting,
        acquire_timeout_seconds=acquire_timeout,
        command_timeout_seconds=1.0,
    )
    manager._pool = pool  # type: ignore[assignment]
    return manager


def test_transaction_commits_and_releases() -> None:
    pool = FakePool(size=1)
    manager = _manager(pool)

    async def scenario() -> Any:
        async with manager.transaction() as conn:
            return await conn.fetchval("select 1")

    assert _run(scenario()) == 1
    conn = pool.connections[0]
    assert conn.events == ["begin", "commit"]
    assert pool.released == [conn]
    assert pool.get_idle_size() == 1


def test_transaction_rolls_back_and_releases_on_error() -> None:
    pool = FakePool(size=1)
    manager = _manager(pool)

    async def scenario() -> None:
        async with manager.transaction():
            raise RepositoryNotFoundError("grievance GRV-2025-000404 not found")

    with pytest.raises(RepositoryNotFoundError):
        _run(scenario())

    assert pool.connections[0].events == ["begin", "rollback"]
    assert pool.get_idle_size() == 1


@pytest.mark.parametrize(
    ("driver_error", "expected"),
    [
        (pg_exc.UniqueViolationError("duplicate key value"), RepositoryConflictError),
        (pg_exc.ForeignKeyViolationError("missing admin"), RepositoryNotFoundError),
        (pg_exc.CheckViolationError("tracking rows are append-only"), RepositoryConflictError),
        (pg_exc.SerializationError("could not serialize access"), RepositoryUnavailableError),
        (pg_exc.DeadlockDetectedError("deadlock detected"), RepositoryUnavailableError),
        (ConnectionResetError("connection reset by peer"), RepositoryUnavailableError),
    ],
)
def test_driver_errors_are_translated(driver_error: BaseException, expected: type[Exception]) -> None:
    pool = FakePool(size=1)
    manager = _manager(pool)
    pool.connections[0].fail_with = driver_error

    async def scenario() -> None:
        async with manager.transaction() as conn:
            await conn.fetchval("insert into tracking ...")

    with pytest.raises(expected):
        _run(scenario())

    assert pool.connections[0].events == ["begin", "rollback"]
    assert pool.get_idle_size() == 1


def test_saturated_pool_fails_fast_when_wait_queue_full() -> None:
    pool = FakePool(size=1)
    manager = _manager(pool, max_waiting=0)

    async def scenario() -> None:
        async with manager.transaction():
            with pytest.raises(RepositoryPoolExhaustedError) as excinfo:
                await manager.fetchval("select 1")
            assert excinfo.value.retryable
            assert excinfo.value.kind == "pool_exhausted"

    _run(scenario())
    assert pool.get_idle_size() == 1


def test_acquire_timeout_is_transient() -> None:
    pool = FakePool(size=1)
    manager = _manager(pool, max_waiting=5, acquire_timeout=0.01)

    async def scenario() -> None:
        async with manager.transaction():
            with pytest.raises(RepositoryUnavailableError) as excinfo:
                await manager.execute("select 1")
            assert not isinstance(excinfo.value, RepositoryPoolExhaustedError)
            assert manager.pool_status().waiting == 0

    _run(scenario())


def test_pool_status_reports_usage() -> None:
    pool = FakePool(size=2)
    manager = _manager(pool)

    async def scenario() -> None:
        async with manager.transaction():
            status = manager.pool_status()
            assert status.total == 2
            assert status.idle == 1
            assert status.in_use == 1
            assert status.max_size == 2

    _run(scenario())


def test_run_in_transaction_returns_callback_result() -> None:
    pool = FakePool(size=1)
    manager = _manager(pool)

    async def read(conn: Any) -> Any:
        return await conn.fetchrow("select 1 as value")

    assert _run(manager.run_in_transaction(read)) == {"value": 1}


def test_health_check_reports_failure_without_raising() -> None:
    pool = FakePool(size=1)
    manager = _manager(pool)

    assert _run(manager.health_check()) is True

    pool.connections[0].fail_with = OSError("connection refused")
    assert _run(manager.health_check()) is False


def test_missing_database_url_is_unavailable() -> None:
    manager = ConnectionPoolManager(
        database_url=None,
        min_pool_size=1,
        max_pool_size=2,
        max_waiting=1,
        acquire_timeout_seconds=1.0,
        command_timeout_seconds=1.0,
    )

    with pytest.raises(RepositoryUnavailableError):
        _run(manager.fetchval("select 1"))
    assert _run(manager.health_check()) is False
    assert manager.pool_status().total == 0


def test_concurrent_first_use_creates_a_single_pool(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[FakePool] = []

    async def fake_create_pool(**kwargs: Any) -> FakePool:
        await asyncio.sleep(0.01)
        pool = FakePool(size=kwargs["max_size"])
        created.append(pool)
        return pool

    monkeypatch.setattr(database.asyncpg, "create_pool", fake_create_pool)
    manager = ConnectionPoolManager(
        database_url="postgresql://tracking@localhost/tracking",
        min_pool_size=1,
        max_pool_size=5,
        max_waiting=5,
        acquire_timeout_seconds=1.0,
        command_timeout_seconds=1.0,
    )

    async def scenario() -> list[Any]:
        return await asyncio.gather(*(manager.fetchval("select 1") for _ in range(5)))

    assert _run(scenario()) == [1] * 5
    assert len(created) == 1
    assert manager.pool_status().max_size == 5
