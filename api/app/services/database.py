from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from app.core.config import get_settings
from app.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryPoolExhaustedError,
    RepositoryUnavailableError,
)

T = TypeVar("T")
logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS: tuple[type[BaseException], ...] = (
    pg_exc.PostgresConnectionError,
    pg_exc.ConnectionDoesNotExistError,
    pg_exc.CannotConnectNowError,
    pg_exc.TooManyConnectionsError,
    pg_exc.AdminShutdownError,
    pg_exc.QueryCanceledError,
    pg_exc.SerializationError,
    pg_exc.DeadlockDetectedError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass(slots=True)
class PoolStatus:
    total: int
    idle: int
    waiting: int
    max_size: int

    @property
    def in_use(self) -> int:
        return max(0, self.total - self.idle)


class ConnectionPoolManager:
    """Owns the asyncpg pool and the only transaction primitive the repositories use.

    Admission is first-come first-served through asyncpg's acquire queue. The
    number of callers waiting for a connection is bounded by ``max_waiting``;
    once reached, new callers fail immediately with
    :class:`RepositoryPoolExhaustedError` instead of queueing.
    """

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        max_waiting: int,
        acquire_timeout_seconds: float,
        command_timeout_seconds: float,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = max(0, min_pool_size)
        self.max_pool_size = max(1, max_pool_size, self.min_pool_size)
        self.max_waiting = max(0, max_waiting)
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()
        self._waiting = 0

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._pool_lock = asyncio.Lock()

    async def execute(self, query: str, *args: Any) -> list[asyncpg.Record]:
        with _translate_db_errors():
            async with self._acquire() as conn:
                return list(await conn.fetch(query, *args))

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        with _translate_db_errors():
            async with self._acquire() as conn:
                return await conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        with _translate_db_errors():
            async with self._acquire() as conn:
                return await conn.fetchval(query, *args)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        started_at = time.perf_counter()
        with _translate_db_errors():
            async with self._acquire() as conn:
                try:
                    async with conn.transaction():
                        yield conn
                except BaseException as exc:
                    logger.debug(
                        "transaction rolled back duration_ms=%.2f error=%s",
                        (time.perf_counter() - started_at) * 1000.0,
                        type(exc).__name__,
                    )
                    raise

    async def run_in_transaction(self, fn: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
        async with self.transaction() as conn:
            return await fn(conn)

    def pool_status(self) -> PoolStatus:
        if self._pool is None:
            return PoolStatus(total=0, idle=0, waiting=self._waiting, max_size=self.max_pool_size)
        return PoolStatus(
            total=self._pool.get_size(),
            idle=self._pool.get_idle_size(),
            waiting=self._waiting,
            max_size=self.max_pool_size,
        )

    async def health_check(self) -> bool:
        try:
            return await self.fetchval("select 1") == 1
        except RepositoryError as exc:
            logger.warning("database health check failed kind=%s error=%s", exc.kind, exc)
            return False

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        saturated = pool.get_idle_size() == 0 and pool.get_size() >= self.max_pool_size
        if saturated and self._waiting >= self.max_waiting:
            raise RepositoryPoolExhaustedError(
                f"connection pool exhausted: {self._waiting} callers already waiting",
            )

        self._waiting += 1
        try:
            conn = await pool.acquire(timeout=self.acquire_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise RepositoryUnavailableError("timed out waiting for a database connection") from exc
        finally:
            self._waiting -= 1

        try:
            yield conn
        finally:
            await pool.release(conn)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("GT_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        # Concurrent first callers must share one pool.
        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=self.command_timeout_seconds,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc
            return self._pool


@contextmanager
def _translate_db_errors() -> Iterator[None]:
    try:
        yield
    except RepositoryError:
        raise
    except pg_exc.UniqueViolationError as exc:
        raise RepositoryConflictError("duplicate record") from exc
    except pg_exc.ForeignKeyViolationError as exc:
        raise RepositoryNotFoundError("referenced record not found") from exc
    except pg_exc.CheckViolationError as exc:
        raise RepositoryConflictError("record violates a table constraint") from exc
    except TRANSIENT_DB_ERRORS as exc:
        logger.warning("transient database failure error=%s", type(exc).__name__)
        raise RepositoryUnavailableError("database temporarily unavailable") from exc


@lru_cache
def get_pool_manager() -> ConnectionPoolManager:
    settings = get_settings()
    return ConnectionPoolManager(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        max_waiting=settings.database_pool_max_waiting,
        acquire_timeout_seconds=settings.database_pool_acquire_timeout_seconds,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
