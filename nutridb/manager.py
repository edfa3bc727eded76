"""Primary/replica database manager.

Routing rules
-------------
- Writes always go to the primary. `get_write_pool()` never probes.
- Reads go to the replica only if a liveness probe on it succeeds right now.
  `aget_read_pool()` probes on every call and caches nothing, so a replica
  that dies is abandoned on the very next read and picked up again as soon
  as it answers.
- A replica that cannot be reached at startup is dropped with a warning and
  the manager runs primary-only. An unreachable primary is fatal.

Lifecycle
---------
``UNINITIALIZED -> OPEN -> CLOSED``. The owning process constructs the
manager, passes it to whatever needs database access, and closes it from
its shutdown path::

    async with DatabaseManager.from_settings(DatabaseSettings()) as db:
        pool = await db.aget_read_pool()
        foods = await pool.afetch("SELECT id, name FROM foods WHERE name ILIKE $1", "%oat%")

        await db.atransaction(lambda conn: conn.execute(
            "INSERT INTO meal_entries (user_id, food_id, grams) VALUES ($1, $2, $3)", user_id, food_id, 40
        ))
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Self

from .config import DatabaseSettings
from .enums import HealthStatus, ManagerState
from .exceptions import (
    ClosedManagerError,
    DatabaseConnectionError,
    DatabaseError,
    OperationCanceledError,
    PoolNotInitializedError,
    ReplicaDegradedError,
    UnhealthyPrimaryError,
)
from .health import ClusterHealthResult, PoolStats
from .health_checker import HealthChecker
from .logger import get_logger
from .pool import AsyncConnectionPool, IsolationLevel
from .resilience import aretry_operation
from .schema import MigratableSchema

if TYPE_CHECKING:
    import types
    from collections.abc import Awaitable, Callable

    from asyncpg import Record
    from asyncpg.pool import PoolConnectionProxy

    from .resilience import RetryConfig

logger = get_logger(__name__)

# Endpoint probes inside ahealth() are each bounded by health_check_timeout;
# the checker deadline must outlast them so a hung replica reports DEGRADED.
_CHECKER_DEADLINE_FACTOR = 2.0


class DatabaseManager:
    """Owns the primary pool, the optional replica pool and the health checker.

    Parameters
    ----------
    settings
        Immutable database settings.
    primary
        Pool for the writable primary.
    replica
        Pool for the read replica, or None when running primary-only.
    """

    __slots__ = ("_health_checker", "_primary", "_replica", "_retry_config", "_settings", "_state")

    def __init__(
        self,
        settings: DatabaseSettings,
        primary: AsyncConnectionPool,
        replica: AsyncConnectionPool | None = None,
    ) -> None:
        self._settings = settings
        self._primary = primary
        self._replica = replica
        self._retry_config: RetryConfig = settings.retry_config()
        self._state = ManagerState.UNINITIALIZED
        self._health_checker = HealthChecker(
            self.ahealth,
            interval=settings.health_check_interval,
            timeout=settings.health_check_timeout * _CHECKER_DEADLINE_FACTOR,
        )

    @classmethod
    def from_settings(cls, settings: DatabaseSettings | None = None) -> Self:
        """Build a manager and its pools without connecting."""
        settings = settings or DatabaseSettings()
        primary = AsyncConnectionPool(settings.primary_pool_config())
        replica_config = settings.replica_pool_config()
        replica = AsyncConnectionPool(replica_config) if replica_config is not None else None
        return cls(settings, primary, replica)

    @classmethod
    async def aopen(cls, settings: DatabaseSettings | None = None) -> Self:
        """Build a manager and connect it.

        Raises
        ------
        DatabaseConnectionError
            If the primary cannot be reached.
        """
        manager = cls.from_settings(settings)
        await manager.ainitialize()
        return manager

    async def __aenter__(self) -> Self:
        await self.ainitialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        if exc_type is not None and exc_val is not None:
            logger.error(
                "DatabaseManager exiting with exception",
                exc_type=exc_type.__name__,
                exc_val=str(exc_val),
            )
        await self.aclose()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self._state.value}, replica={self._replica is not None})"

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    @property
    def has_replica(self) -> bool:
        """True when a replica pool is attached (it may still be unhealthy)."""
        return self._replica is not None

    @property
    def health_checker(self) -> HealthChecker:
        return self._health_checker

    def _ensure_open(self) -> None:
        if self._state is ManagerState.CLOSED:
            raise ClosedManagerError("DatabaseManager is closed")
        if self._state is ManagerState.UNINITIALIZED:
            raise PoolNotInitializedError("DatabaseManager not initialized. Call ainitialize() first.")

    async def ainitialize(self) -> None:
        """Connect the primary, then the replica, then start the health checker.

        Idempotent while open.

        Raises
        ------
        DatabaseConnectionError
            If the primary cannot be reached. Nothing is left open.
        ClosedManagerError
            If the manager was already closed.
        """
        if self._state is ManagerState.OPEN:
            return
        if self._state is ManagerState.CLOSED:
            raise ClosedManagerError("DatabaseManager is closed and cannot be reopened")

        try:
            await self._primary.ainitialize()
        except Exception as e:
            logger.error(
                "Failed to connect to primary database",
                dsn=self._primary.config.redacted_dsn,
                error=f"{type(e).__name__}: {e}",
            )
            raise DatabaseConnectionError("primary", f"{type(e).__name__}: {e}") from e

        if self._replica is not None:
            try:
                await self._replica.ainitialize()
            except Exception as e:
                logger.warning(
                    "Failed to connect to read replica, reads will use primary",
                    dsn=self._replica.config.redacted_dsn,
                    error=f"{type(e).__name__}: {e}",
                )
                self._replica = None

        self._state = ManagerState.OPEN
        self._health_checker.start()
        logger.info("Database manager opened", replica=self._replica is not None)

    async def aclose(self) -> None:
        """Stop the health checker and close both pools.

        A second call is a no-op. Every other operation raises
        `ClosedManagerError` afterwards.

        Raises
        ------
        DatabaseError
            If a pool failed to close. Both pools are still attempted.
        """
        if self._state is ManagerState.CLOSED:
            return
        self._state = ManagerState.CLOSED

        await self._health_checker.astop()

        errors: list[BaseException] = []
        for pool in (self._primary, self._replica):
            if pool is None:
                continue
            try:
                await pool.aclose()
            except Exception as e:
                logger.warning("Failed to close pool", endpoint=pool.name, error=str(e))
                errors.append(e)

        if errors:
            msg = f"database close errors: {[str(e) for e in errors]}"
            raise DatabaseError(msg) from errors[0]

        logger.info("Database manager closed")

    async def _aprobe_replica(self, replica: AsyncConnectionPool) -> None:
        try:
            await replica.aping(self._settings.health_check_timeout)
        except Exception as e:
            msg = f"replica liveness probe failed: {type(e).__name__}: {e}"
            raise ReplicaDegradedError(msg) from e

    async def aget_read_pool(self) -> AsyncConnectionPool:
        """Return the replica if it answers a liveness probe right now, else the primary."""
        self._ensure_open()
        replica = self._replica
        if replica is None:
            return self._primary

        try:
            await self._aprobe_replica(replica)
        except ReplicaDegradedError as e:
            self._ensure_open()
            logger.warning("Read replica unhealthy, falling back to primary", error=str(e))
            return self._primary

        self._ensure_open()
        return replica

    def get_write_pool(self) -> AsyncConnectionPool:
        """Return the primary. Never probes."""
        self._ensure_open()
        return self._primary

    async def ahealth(self) -> ClusterHealthResult:
        """Probe the primary and the replica concurrently.

        Returns
        -------
        ClusterHealthResult
            HEALTHY, or DEGRADED when the replica failed its probe.

        Raises
        ------
        UnhealthyPrimaryError
            If the primary failed its probe. Replica failures are only logged.
        """
        self._ensure_open()
        timeout = self._settings.health_check_timeout

        if self._replica is not None:
            primary_health, replica_health = await asyncio.gather(
                self._primary.ahealth_check(timeout),
                self._replica.ahealth_check(timeout),
            )
        else:
            primary_health = await self._primary.ahealth_check(timeout)
            replica_health = None

        if not primary_health.is_healthy:
            msg = f"primary database unhealthy: {primary_health.error}"
            raise UnhealthyPrimaryError(msg)

        result = ClusterHealthResult.from_probes(primary_health, replica_health)
        if result.status is HealthStatus.DEGRADED and replica_health is not None:
            logger.warning("Read replica health check failed", error=replica_health.error)
        return result

    def stats(self) -> dict[str, PoolStats]:
        """Pool counters keyed by endpoint name (``primary``, ``replica``)."""
        self._ensure_open()
        stats = {"primary": self._primary.stats()}
        if self._replica is not None:
            stats["replica"] = self._replica.stats()
        return stats

    async def aretry[T](self, op: Callable[[], Awaitable[T]]) -> T:
        """Run ``op`` under the manager's retry policy.

        Raises
        ------
        NonRetryableError
            ``op`` failed with a constraint or input error.
        RetryExhaustedError
            ``op`` failed ``max_retries`` times with transient errors.
        """
        self._ensure_open()
        return await aretry_operation(op, self._retry_config)

    async def _arun_in_transaction[T](
        self,
        pool: AsyncConnectionPool,
        fn: Callable[[PoolConnectionProxy[Record]], Awaitable[T]],
        *,
        isolation: IsolationLevel,
        readonly: bool,
        timeout: float | None,
    ) -> T:
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline, pool.atransaction(isolation, readonly=readonly) as conn:
                return await fn(conn)
        except TimeoutError as e:
            if deadline.expired():
                msg = f"transaction on {pool.name} exceeded {timeout}s and was rolled back"
                raise OperationCanceledError(msg) from e
            logger.warning("Transaction rolled back", endpoint=pool.name, error_type=type(e).__name__)
            raise
        except Exception as e:
            logger.warning("Transaction rolled back", endpoint=pool.name, error_type=type(e).__name__)
            raise

    async def atransaction[T](
        self,
        fn: Callable[[PoolConnectionProxy[Record]], Awaitable[T]],
        *,
        isolation: IsolationLevel = "read_committed",
        timeout: float | None = None,
    ) -> T:
        """Run ``fn(conn)`` in a transaction on the primary.

        Commits when ``fn`` returns and rolls back when it raises or is
        cancelled. Returns whatever ``fn`` returns.

        Parameters
        ----------
        fn
            Unit of work receiving the transaction's connection.
        isolation
            Transaction isolation level.
        timeout
            Deadline in seconds for the whole unit of work.

        Raises
        ------
        OperationCanceledError
            The deadline expired. The transaction was rolled back and the connection released.
        """
        self._ensure_open()
        return await self._arun_in_transaction(
            self._primary, fn, isolation=isolation, readonly=False, timeout=timeout
        )

    async def areplica_transaction[T](
        self,
        fn: Callable[[PoolConnectionProxy[Record]], Awaitable[T]],
        *,
        isolation: IsolationLevel = "read_committed",
        timeout: float | None = None,
    ) -> T:
        """Run ``fn(conn)`` in a READ ONLY transaction on the read pool.

        The pool comes from `aget_read_pool()`, so this lands on the primary
        when the replica is down. Either way PostgreSQL rejects writes
        with ``ReadOnlySQLTransactionError``.
        """
        pool = await self.aget_read_pool()
        return await self._arun_in_transaction(pool, fn, isolation=isolation, readonly=True, timeout=timeout)

    async def amigrate(self, *schemas: MigratableSchema) -> None:
        """Apply each schema's DDL, in order, in one primary transaction with retry.

        Raises
        ------
        TypeError
            If an argument does not implement `MigratableSchema`.
        """
        self._ensure_open()
        for schema in schemas:
            if not isinstance(schema, MigratableSchema):
                msg = f"{schema!r} does not implement MigratableSchema"
                raise TypeError(msg)
        if not schemas:
            return

        async def migrate() -> None:
            async with self._primary.atransaction() as conn:
                for schema in schemas:
                    for statement in schema.migration_statements():
                        await conn.execute(statement)

        await self.aretry(migrate)
        logger.info("Database migration complete", tables=[schema.table_name for schema in schemas])
