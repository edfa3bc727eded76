"""Error taxonomy raised across the public boundary of `nutridb`.

Every error a caller can observe derives from `DatabaseError`, so route
handlers can catch the whole family with one clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .enums import ErrorCategory


class DatabaseError(Exception):
    """Base class for all nutridb errors."""


class PoolNotInitializedError(DatabaseError):
    """Raised when a pool or manager is used before `ainitialize()`."""


class DatabaseConnectionError(DatabaseError):
    """Raised when a pool cannot be established or pinged."""

    def __init__(self, endpoint: str, message: str) -> None:
        super().__init__(f"{endpoint} database connection failed: {message}")
        self.endpoint = endpoint


class UnhealthyPrimaryError(DatabaseError):
    """Raised when the liveness probe on the primary fails."""


class ReplicaDegradedError(DatabaseError):
    """Replica liveness probe failed. Handled internally, reads fall back to primary."""


class ClosedManagerError(DatabaseError):
    """Raised when a manager, or a pool handle taken from it, is used after `aclose()`."""


class OperationCanceledError(DatabaseError):
    """Raised when a deadline expires before a blocking operation completes."""


class RetryExhaustedError(DatabaseError):
    """All retry attempts failed.

    Attributes
    ----------
    attempts
        Number of times the operation was invoked.
    last_error
        The exception raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"database operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class NonRetryableError(DatabaseError):
    """The operation failed with an error class that a retry cannot fix.

    Attributes
    ----------
    category
        Classification tag of the underlying error.
    attempts
        Number of times the operation was invoked (always 1 for a first-attempt failure).
    last_error
        The underlying exception.
    """

    def __init__(self, category: ErrorCategory, last_error: BaseException, attempts: int = 1) -> None:
        super().__init__(f"non-retryable database error ({category}): {last_error}")
        self.category = category
        self.attempts = attempts
        self.last_error = last_error
