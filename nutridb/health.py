from __future__ import annotations

from datetime import UTC, datetime
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .enums import HealthStatus


class HealthCheckResult(BaseModel):
    """Outcome of one liveness probe against a single endpoint.

    Connection counts are a snapshot taken right after the probe; they are
    zero when the probe failed or the pool is not open.
    """

    model_config = ConfigDict(frozen=True)

    endpoint: str
    status: HealthStatus
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    latency_s: float | None = None
    open_connections: int = 0
    idle_connections: int = 0
    max_open_connections: int
    error: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def saturation(self) -> float:
        """Share of the connection budget checked out, 0.0 to 1.0."""
        if self.max_open_connections == 0:
            return 0.0
        return (self.open_connections - self.idle_connections) / self.max_open_connections

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @classmethod
    def not_open(cls, endpoint: str, max_open_connections: int) -> Self:
        return cls(
            endpoint=endpoint,
            status=HealthStatus.INITIALIZING,
            max_open_connections=max_open_connections,
            error="pool is not open",
        )

    @classmethod
    def failed(cls, endpoint: str, max_open_connections: int, error: BaseException | str) -> Self:
        """Build an UNHEALTHY result; exceptions are rendered as ``Type: message``."""
        if isinstance(error, BaseException):
            error = f"{type(error).__name__}: {error}"
        return cls(
            endpoint=endpoint,
            status=HealthStatus.UNHEALTHY,
            max_open_connections=max_open_connections,
            error=error,
        )

    @classmethod
    def passed(
        cls,
        endpoint: str,
        latency_s: float,
        open_connections: int,
        idle_connections: int,
        max_open_connections: int,
    ) -> Self:
        return cls(
            endpoint=endpoint,
            status=HealthStatus.HEALTHY,
            latency_s=latency_s,
            open_connections=open_connections,
            idle_connections=idle_connections,
            max_open_connections=max_open_connections,
        )


class ClusterHealthResult(BaseModel):
    """Primary probe plus the replica probe when a replica is configured."""

    model_config = ConfigDict(frozen=True)

    status: HealthStatus
    primary: HealthCheckResult
    replica: HealthCheckResult | None = None

    @classmethod
    def from_probes(cls, primary: HealthCheckResult, replica: HealthCheckResult | None) -> Self:
        """DEGRADED when only the replica failed, otherwise the primary's status."""
        status = primary.status
        if primary.is_healthy and replica is not None and not replica.is_healthy:
            status = HealthStatus.DEGRADED
        return cls(status=status, primary=primary, replica=replica)

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    @property
    def is_operational(self) -> bool:
        """Writes and reads can be served, the replica aside."""
        return self.primary.is_healthy

    @property
    def replica_available(self) -> bool:
        return self.replica is not None and self.replica.is_healthy


class PoolStats(BaseModel):
    """Connection pool counters for one endpoint.

    Only numbers live here: no DSN, host or credential material.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_open_connections: int
    open_connections: int
    in_use: int
    idle: int
    acquire_count: int
    wait_count: int
    wait_duration_s: float
    max_lifetime_closed: int
