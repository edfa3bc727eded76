from __future__ import annotations

from enum import StrEnum


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    INITIALIZING = "initializing"


class ManagerState(StrEnum):
    UNINITIALIZED = "uninitialized"
    OPEN = "open"
    CLOSED = "closed"


class QueryLogLevel(StrEnum):
    """Verbosity of per-query logging, from quietest to loudest."""

    SILENT = "silent"
    ERROR = "error"
    WARN = "warn"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _QUERY_LOG_RANKS[self]


_QUERY_LOG_RANKS = {
    QueryLogLevel.SILENT: 0,
    QueryLogLevel.ERROR: 1,
    QueryLogLevel.WARN: 2,
    QueryLogLevel.INFO: 3,
}


class ErrorCategory(StrEnum):
    """Tag attached to a failed database operation for retry decisions."""

    TRANSIENT = "transient"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    INVALID_INPUT = "invalid_input"
    DIVISION_BY_ZERO = "division_by_zero"
    OUT_OF_RANGE = "out_of_range"

    @property
    def is_retryable(self) -> bool:
        return self is ErrorCategory.TRANSIENT
