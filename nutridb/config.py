"""Configuration models for the nutridb connection layer.

- `DatabaseSettings`: process-wide settings loaded from ``DATABASE_*`` env vars
- `PoolConfig`: resolved settings for one endpoint (primary or replica)
"""

from __future__ import annotations

from typing import Any, Self
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .enums import QueryLogLevel
from .resilience.config import RetryConfig

_ALLOWED_SCHEMES = frozenset({"postgresql", "postgres"})
_SENSITIVE_QUERY_KEYS = frozenset({"password", "passfile", "sslpassword", "sslkey"})


def redact_dsn(dsn: str) -> str:
    """Render a DSN with credentials masked, safe for logs.

    Examples
    --------
    >>> redact_dsn("postgresql://app:hunter2@db:5432/nutrition")
    'postgresql://app:***@db:5432/nutrition'
    """
    parts = urlsplit(dsn)
    netloc = parts.netloc
    if "@" in netloc:
        userinfo, _, hostinfo = netloc.rpartition("@")
        user = userinfo.split(":", 1)[0]
        netloc = f"{user}:***@{hostinfo}" if ":" in userinfo else f"{user}@{hostinfo}"

    query = parts.query
    if query:
        pairs = [(k, "***" if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in parse_qsl(query)]
        query = urlencode(pairs, safe="*")

    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class PoolConfig(BaseModel):
    """Resolved configuration for a single endpoint's connection pool."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    dsn: SecretStr
    min_size: int = Field(default=10, ge=0)
    max_size: int = Field(default=25, ge=1)
    max_inactive_connection_lifetime: float = Field(default=300.0, ge=0.0)
    max_lifetime: float = Field(default=300.0, ge=0.0, description="0 disables recycling")
    command_timeout: float = Field(default=60.0, gt=0.0)
    query_log_level: QueryLogLevel = Field(default=QueryLogLevel.WARN)
    slow_query_threshold: float = Field(default=0.2, ge=0.0)
    application_name: str = Field(default="nutridb")

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.min_size > self.max_size:
            msg = f"min_size ({self.min_size}) must not exceed max_size ({self.max_size})"
            raise ValueError(msg)
        return self

    @property
    def redacted_dsn(self) -> str:
        return redact_dsn(self.dsn.get_secret_value())

    def to_pool_params(self) -> dict[str, Any]:
        """Convert config to asyncpg.create_pool() parameters.

        Returns
        -------
        dict[str, Any]
            Parameters for asyncpg.create_pool(). Contains the raw DSN, never log it.
        """
        return {
            "dsn": self.dsn.get_secret_value(),
            "min_size": self.min_size,
            "max_size": self.max_size,
            "max_inactive_connection_lifetime": self.max_inactive_connection_lifetime,
            "command_timeout": self.command_timeout,
            "server_settings": {"application_name": self.application_name},
        }


class DatabaseSettings(BaseSettings):
    """Database settings for the nutrition tracker backend.

    Values are read once at process start from ``DATABASE_*`` environment
    variables (or a ``.env`` file) and never mutated afterwards.

    Examples
    --------
    >>> settings = DatabaseSettings(
    ...     url=SecretStr("postgresql://app:pw@primary.db:5432/nutrition"),
    ...     read_replica_url=SecretStr("postgresql://app:pw@replica.db:5432/nutrition"),
    ... )
    >>> settings.primary_pool_config().max_size
    25
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DATABASE_",
        extra="ignore",
        frozen=True,
    )

    url: SecretStr = Field(default=SecretStr("postgresql://postgres@localhost:5432/postgres"))
    read_replica_url: SecretStr | None = Field(default=None)

    max_open_connections: int = Field(default=25, ge=1, le=1000)
    max_idle_connections: int = Field(default=10, ge=0, le=1000)
    connection_max_lifetime: float = Field(default=300.0, ge=0.0)
    connection_max_idle_time: float = Field(default=300.0, ge=0.0)

    health_check_interval: float = Field(default=30.0, gt=0.0)
    health_check_timeout: float = Field(default=5.0, gt=0.0)

    max_retries: int = Field(default=3, ge=1, le=100)
    retry_interval: float = Field(default=1.0, ge=0.0)

    query_log_level: QueryLogLevel = Field(default=QueryLogLevel.WARN)
    slow_query_threshold: float = Field(default=0.2, ge=0.0)
    command_timeout: float = Field(default=60.0, gt=0.0, le=3600.0)
    application_name: str = Field(default="nutridb", min_length=1)

    @field_validator("url", "read_replica_url", mode="after")
    @classmethod
    def _check_scheme(cls, value: SecretStr | None) -> SecretStr | None:
        if value is None:
            return value
        scheme = urlsplit(value.get_secret_value()).scheme
        if scheme not in _ALLOWED_SCHEMES:
            msg = f"unsupported database URL scheme {scheme!r}, expected postgresql://"
            raise ValueError(msg)
        return value

    @field_validator("read_replica_url", mode="before")
    @classmethod
    def _empty_replica_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> Self:
        if self.max_idle_connections > self.max_open_connections:
            msg = (
                f"max_idle_connections ({self.max_idle_connections}) must not exceed "
                f"max_open_connections ({self.max_open_connections})"
            )
            raise ValueError(msg)
        return self

    @property
    def has_replica(self) -> bool:
        return self.read_replica_url is not None

    def _pool_config(self, name: str, dsn: SecretStr) -> PoolConfig:
        return PoolConfig(
            name=name,
            dsn=dsn,
            min_size=self.max_idle_connections,
            max_size=self.max_open_connections,
            max_inactive_connection_lifetime=self.connection_max_idle_time,
            max_lifetime=self.connection_max_lifetime,
            command_timeout=self.command_timeout,
            query_log_level=self.query_log_level,
            slow_query_threshold=self.slow_query_threshold,
            application_name=self.application_name,
        )

    def primary_pool_config(self) -> PoolConfig:
        return self._pool_config("primary", self.url)

    def replica_pool_config(self) -> PoolConfig | None:
        if self.read_replica_url is None:
            return None
        return self._pool_config("replica", self.read_replica_url)

    def retry_config(self) -> RetryConfig:
        return RetryConfig(max_attempts=self.max_retries, interval=self.retry_interval)
