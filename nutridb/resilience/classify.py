"""Tag database errors with an `ErrorCategory` for retry decisions.

Classification keys off the SQLSTATE code asyncpg attaches to every server
error, never off message text.
"""

from __future__ import annotations

from ..enums import ErrorCategory

_SQLSTATE_CATEGORIES: dict[str, ErrorCategory] = {
    "23505": ErrorCategory.UNIQUE_VIOLATION,
    "23503": ErrorCategory.FOREIGN_KEY_VIOLATION,
    "22012": ErrorCategory.DIVISION_BY_ZERO,
    "22003": ErrorCategory.OUT_OF_RANGE,  # numeric_value_out_of_range
    "22008": ErrorCategory.OUT_OF_RANGE,  # datetime_field_overflow
    "22020": ErrorCategory.OUT_OF_RANGE,  # invalid_limit_value
    "22P02": ErrorCategory.INVALID_INPUT,  # invalid_text_representation
    "22007": ErrorCategory.INVALID_INPUT,  # invalid_datetime_format
    "22023": ErrorCategory.INVALID_INPUT,  # invalid_parameter_value
}

# SQLSTATE class -> category for codes not listed above
_SQLSTATE_CLASS_CATEGORIES: dict[str, ErrorCategory] = {
    "23": ErrorCategory.CONSTRAINT_VIOLATION,
    "22": ErrorCategory.INVALID_INPUT,
}


def classify_error(exc: BaseException) -> ErrorCategory:
    """Return the category of ``exc``.

    Errors that already carry an `ErrorCategory` in a ``category`` attribute
    keep it. Server errors are classified by SQLSTATE. Anything else is
    treated as transient.

    Examples
    --------
    >>> classify_error(asyncpg.UniqueViolationError("duplicate key"))
    <ErrorCategory.UNIQUE_VIOLATION: 'unique_violation'>
    >>> classify_error(ConnectionResetError())
    <ErrorCategory.TRANSIENT: 'transient'>
    """
    tag = getattr(exc, "category", None)
    if isinstance(tag, ErrorCategory):
        return tag

    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(sqlstate, str) and len(sqlstate) == 5:
        if sqlstate in _SQLSTATE_CATEGORIES:
            return _SQLSTATE_CATEGORIES[sqlstate]
        if sqlstate[:2] in _SQLSTATE_CLASS_CATEGORIES:
            return _SQLSTATE_CLASS_CATEGORIES[sqlstate[:2]]

    if isinstance(exc, ZeroDivisionError):
        return ErrorCategory.DIVISION_BY_ZERO

    return ErrorCategory.TRANSIENT


def is_retryable(exc: BaseException) -> bool:
    """True when retrying ``exc`` could succeed. Cancellation is never retried."""
    if not isinstance(exc, Exception):
        return False
    return classify_error(exc).is_retryable
