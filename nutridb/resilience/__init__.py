from __future__ import annotations

from .classify import classify_error, is_retryable
from .config import RetryConfig
from .retry import aretry_operation, build_retrying, retry

__all__ = [
    "RetryConfig",
    "aretry_operation",
    "build_retrying",
    "classify_error",
    "is_retryable",
    "retry",
]
