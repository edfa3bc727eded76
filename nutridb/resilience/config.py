from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RetryConfig(BaseModel):
    """Configuration for retrying database operations with linear backoff.

    The n-th retry waits ``n * interval`` seconds, so three attempts with a
    one second interval sleep 1s then 2s.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total invocations, including the first")
    interval: float = Field(default=1.0, ge=0, description="Base backoff interval in seconds")
