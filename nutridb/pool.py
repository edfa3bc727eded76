"""Async connection pool for one PostgreSQL endpoint using asyncpg.

`DatabaseManager` owns one of these for the primary and, optionally, one for
the read replica. The pool is safe for concurrent use: asyncpg hands each
connection to exactly one caller and `aacquire()` always gives it back.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal, Self

import asyncpg
from asyncpg import Pool, Record

from .enums import QueryLogLevel
from .exceptions import ClosedManagerError, OperationCanceledError, PoolNotInitializedError
from .health import HealthCheckResult, PoolStats
from .logger import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
    from types import TracebackType

    from asyncpg.pool import PoolConnectionProxy

    from .config import PoolConfig

logger = get_logger(__name__)

type IsolationLevel = Literal["read_uncommitted", "read_committed", "repeatable_read", "serializable"]

_MAX_LOGGED_SQL = 200


def _truncate_sql(query: str) -> str:
    compact = " ".join(query.split())
    if len(compact) <= _MAX_LOGGED_SQL:
        return compact
    return compact[:_MAX_LOGGED_SQL] + "..."


class AsyncConnectionPool:
    """Async connection pool for a single PostgreSQL endpoint.

    Examples
    --------
    >>> async with AsyncConnectionPool(settings.primary_pool_config()) as pool:
    ...     rows = await pool.afetch("SELECT * FROM foods WHERE calories < $1", 200)
    ...     await pool.aexecute("INSERT INTO meals (user_id, eaten_at) VALUES ($1, now())", user_id)
    """

    __slots__ = (
        "_acquire_count",
        "_closed",
        "_config",
        "_init_lock",
        "_last_recycle",
        "_max_lifetime_closed",
        "_pool",
        "_wait_count",
        "_wait_duration_s",
    )

    def __init__(self, config: PoolConfig) -> None:
        self._config = config
        self._pool: Pool[Record] | None = None
        self._closed = False
        self._init_lock = asyncio.Lock()
        self._last_recycle = time.monotonic()
        self._acquire_count = 0
        self._wait_count = 0
        self._wait_duration_s = 0.0
        self._max_lifetime_closed = 0

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "AsyncConnectionPool context manager exiting with exception",
                endpoint=self.name,
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.aclose()

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    @property
    def pool(self) -> Pool[Record]:
        """Access the underlying asyncpg pool.

        Raises
        ------
        PoolNotInitializedError
            If pool has not been initialized via `ainitialize()`.
        ClosedManagerError
            If the pool was closed, directly or by its manager.
        """
        if self._pool is None:
            if self._closed:
                msg = f"{self.name} pool is closed"
                raise ClosedManagerError(msg)
            msg = f"{self.name} pool not initialized. Call ainitialize() first."
            raise PoolNotInitializedError(msg)
        return self._pool

    async def ainitialize(self) -> None:
        """Create the asyncpg pool and verify it with a round trip.

        Idempotent. An asyncio lock serializes concurrent callers so only
        one pool is ever created per instance.

        Raises
        ------
        Exception
            Whatever asyncpg raises when the endpoint is unreachable or
            rejects the credentials.
        """
        async with self._init_lock:
            if self._pool is not None:
                return

            pool = await asyncpg.create_pool(**self._config.to_pool_params())
            try:
                async with pool.acquire() as conn:
                    await conn.execute("SELECT 1")
            except BaseException:
                pool.terminate()
                raise

            self._pool = pool
            self._last_recycle = time.monotonic()
            self._closed = False

            logger.info(
                "AsyncConnectionPool initialized",
                endpoint=self.name,
                dsn=self._config.redacted_dsn,
                min_size=self._config.min_size,
                max_size=self._config.max_size,
            )

    async def aclose(self) -> None:
        """Close the connection pool. Safe to call more than once."""
        if self._pool is not None:
            pool, self._pool = self._pool, None
            self._closed = True
            await pool.close()
            logger.info("AsyncConnectionPool closed", endpoint=self.name)

    async def aping(self, timeout: float) -> float:
        """Run a liveness probe bounded by ``timeout``.

        Parameters
        ----------
        timeout
            Deadline in seconds covering both acquire and round trip.

        Returns
        -------
        float
            Probe latency in seconds.

        Raises
        ------
        OperationCanceledError
            If the deadline expires. The connection is released before this is raised.
        """
        pool = self.pool
        start = time.perf_counter()
        try:
            async with asyncio.timeout(timeout), pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except TimeoutError as e:
            msg = f"{self.name} liveness probe exceeded {timeout}s"
            raise OperationCanceledError(msg) from e
        return time.perf_counter() - start

    async def ahealth_check(self, timeout: float = 5.0) -> HealthCheckResult:
        """Probe the endpoint and snapshot its connection counts.

        Never raises for endpoint failures; they are reported as UNHEALTHY.
        """
        if self._pool is None:
            return HealthCheckResult.not_open(self.name, self._config.max_size)

        try:
            latency_s = await self.aping(timeout)
        except Exception as e:
            return HealthCheckResult.failed(self.name, self._config.max_size, e)

        return HealthCheckResult.passed(
            self.name,
            latency_s=latency_s,
            open_connections=self._pool.get_size(),
            idle_connections=self._pool.get_idle_size(),
            max_open_connections=self._pool.get_max_size(),
        )

    async def _amaybe_recycle(self, pool: Pool[Record]) -> None:
        max_lifetime = self._config.max_lifetime
        if max_lifetime <= 0:
            return

        now = time.monotonic()
        if now - self._last_recycle < max_lifetime:
            return

        self._last_recycle = now
        expired = pool.get_size()
        self._max_lifetime_closed += expired
        await pool.expire_connections()
        logger.debug("Recycled pool connections past max lifetime", endpoint=self.name, expired=expired)

    @asynccontextmanager
    async def aacquire(self, timeout: float | None = None) -> AsyncIterator[PoolConnectionProxy[Record]]:
        """Acquire a connection from the pool.

        Parameters
        ----------
        timeout
            Maximum seconds to wait for a free connection. ``None`` waits indefinitely.

        Yields
        ------
        PoolConnectionProxy[Record]
            A connection proxy that is returned to the pool on exit.

        Raises
        ------
        OperationCanceledError
            If no connection became available within ``timeout``.
        """
        pool = self.pool
        await self._amaybe_recycle(pool)

        saturated = pool.get_idle_size() == 0 and pool.get_size() >= pool.get_max_size()
        start = time.perf_counter()
        try:
            conn = await pool.acquire(timeout=timeout)
        except TimeoutError as e:
            msg = f"timed out after {timeout}s waiting for a {self.name} connection"
            raise OperationCanceledError(msg) from e

        self._acquire_count += 1
        if saturated:
            self._wait_count += 1
            self._wait_duration_s += time.perf_counter() - start

        try:
            yield conn
        finally:
            await pool.release(conn)

    @asynccontextmanager
    async def atransaction(
        self,
        isolation: IsolationLevel = "read_committed",
        *,
        readonly: bool = False,
        deferrable: bool = False,
        timeout: float | None = None,
    ) -> AsyncIterator[PoolConnectionProxy[Record]]:
        """Acquire a connection and start a transaction.

        Leaving the block normally commits; leaving it with an exception
        (including cancellation) rolls back.

        Parameters
        ----------
        isolation
            Transaction isolation level.
        readonly
            If True, PostgreSQL rejects writes inside the transaction.
        deferrable
            If True and readonly=True, allows deferrable transactions.
        timeout
            Acquire timeout in seconds.
        """
        async with (
            self.aacquire(timeout=timeout) as conn,
            conn.transaction(
                isolation=isolation,
                readonly=readonly,
                deferrable=deferrable,
            ),
        ):
            yield conn

    def _log_query(self, query: str, elapsed_s: float, error: BaseException | None = None) -> None:
        level = self._config.query_log_level
        if level is QueryLogLevel.SILENT:
            return

        elapsed_ms = round(elapsed_s * 1000, 3)
        if error is not None:
            logger.error(
                "Query failed",
                endpoint=self.name,
                sql=_truncate_sql(query),
                elapsed_ms=elapsed_ms,
                error=f"{type(error).__name__}: {error}",
            )
            return

        threshold = self._config.slow_query_threshold
        if threshold > 0 and elapsed_s >= threshold and level.rank >= QueryLogLevel.WARN.rank:
            logger.warning(
                "Slow query",
                endpoint=self.name,
                sql=_truncate_sql(query),
                elapsed_ms=elapsed_ms,
                threshold_ms=round(threshold * 1000, 3),
            )
        elif level.rank >= QueryLogLevel.INFO.rank:
            logger.info("Query executed", endpoint=self.name, sql=_truncate_sql(query), elapsed_ms=elapsed_ms)

    async def _arun[T](
        self,
        query: str,
        call: Callable[[PoolConnectionProxy[Record]], Awaitable[T]],
    ) -> T:
        async with self.aacquire() as conn:
            start = time.perf_counter()
            try:
                result = await call(conn)
            except Exception as e:
                self._log_query(query, time.perf_counter() - start, error=e)
                raise
            self._log_query(query, time.perf_counter() - start)
            return result

    async def aexecute(self, query: str, *args: object, timeout: float | None = None) -> str:
        """Execute a query without returning results.

        Returns
        -------
        str
            Command status string (e.g., "INSERT 0 1").
        """
        return await self._arun(query, lambda conn: conn.execute(query, *args, timeout=timeout))

    async def aexecutemany(self, query: str, args: Iterable[Sequence[object]], timeout: float | None = None) -> None:
        """Execute a query with multiple parameter sets."""
        await self._arun(query, lambda conn: conn.executemany(query, args, timeout=timeout))

    async def afetch(self, query: str, *args: object, timeout: float | None = None) -> list[Record]:
        """Execute a query and return all rows."""
        return await self._arun(query, lambda conn: conn.fetch(query, *args, timeout=timeout))

    async def afetchrow(self, query: str, *args: object, timeout: float | None = None) -> Record | None:
        """Execute a query and return the first row, or None."""
        return await self._arun(query, lambda conn: conn.fetchrow(query, *args, timeout=timeout))

    async def afetchval(self, query: str, *args: object, timeout: float | None = None) -> Any:
        """Execute a query and return the first value of the first row."""
        return await self._arun(query, lambda conn: conn.fetchval(query, *args, timeout=timeout))

    def stats(self) -> PoolStats:
        """Snapshot of pool counters. Contains no connection-string material."""
        size = self._pool.get_size() if self._pool is not None else 0
        idle = self._pool.get_idle_size() if self._pool is not None else 0
        return PoolStats(
            max_open_connections=self._config.max_size,
            open_connections=size,
            in_use=max(size - idle, 0),
            idle=idle,
            acquire_count=self._acquire_count,
            wait_count=self._wait_count,
            wait_duration_s=round(self._wait_duration_s, 6),
            max_lifetime_closed=self._max_lifetime_closed,
        )

    @property
    def pool_size(self) -> int:
        """Current number of connections in the pool."""
        if self._pool is None:
            return 0
        return self._pool.get_size()

    @property
    def pool_max_size(self) -> int:
        """Maximum pool size from configuration."""
        return self._config.max_size
