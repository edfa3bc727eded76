"""Resilient PostgreSQL access for the nutrition tracker backend.

This package provides:

- `DatabaseManager`: primary + optional read replica with read/write routing,
  retry, transactions, migrations and a background health checker
- `AsyncConnectionPool`: one asyncpg pool for one endpoint
- `DatabaseSettings`: ``DATABASE_*`` environment configuration

Usage
-----
::

    configure_logging(LoggingConfig(json_output=True))
    settings = DatabaseSettings()
    async with DatabaseManager.from_settings(settings) as db:
        pool = await db.aget_read_pool()              # replica if healthy
        await db.get_write_pool().aexecute("...")     # always primary
        await db.aretry(lambda: db.get_write_pool().aexecute("..."))
"""

from __future__ import annotations

from .config import DatabaseSettings, PoolConfig, redact_dsn
from .enums import ErrorCategory, HealthStatus, ManagerState, QueryLogLevel
from .exceptions import (
    ClosedManagerError,
    DatabaseConnectionError,
    DatabaseError,
    NonRetryableError,
    OperationCanceledError,
    PoolNotInitializedError,
    ReplicaDegradedError,
    RetryExhaustedError,
    UnhealthyPrimaryError,
)
from .health import ClusterHealthResult, HealthCheckResult, PoolStats
from .health_checker import HealthChecker
from .logger import LoggingConfig, configure_logging
from .manager import DatabaseManager
from .pool import AsyncConnectionPool, IsolationLevel
from .resilience import RetryConfig, aretry_operation, classify_error, retry
from .schema import ColumnSpec, IndexSpec, MigratableSchema, TableSchema

__all__ = [
    "AsyncConnectionPool",
    "ClosedManagerError",
    "ClusterHealthResult",
    "ColumnSpec",
    "DatabaseConnectionError",
    "DatabaseError",
    "DatabaseManager",
    "DatabaseSettings",
    "ErrorCategory",
    "HealthCheckResult",
    "HealthChecker",
    "HealthStatus",
    "IndexSpec",
    "IsolationLevel",
    "LoggingConfig",
    "ManagerState",
    "MigratableSchema",
    "NonRetryableError",
    "OperationCanceledError",
    "PoolConfig",
    "PoolNotInitializedError",
    "PoolStats",
    "QueryLogLevel",
    "ReplicaDegradedError",
    "RetryConfig",
    "RetryExhaustedError",
    "TableSchema",
    "UnhealthyPrimaryError",
    "aretry_operation",
    "classify_error",
    "configure_logging",
    "redact_dsn",
    "retry",
]
