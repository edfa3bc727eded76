"""Shared fixtures for integration tests against a real PostgreSQL.

Provides:
- postgres_container: Session-scoped PostgreSQL container
- postgres_dsn: Connection string for the container
- settings: DatabaseSettings using the container as primary and replica
- foods_schema: The ``foods`` table definition
- manager: Function-scoped open DatabaseManager with an empty ``foods`` table
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from docker import from_env  # type: ignore[import-untyped]
from docker.errors import DockerException  # type: ignore[import-untyped]
from pydantic import SecretStr
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from nutridb import ColumnSpec, DatabaseManager, DatabaseSettings, IndexSpec, TableSchema

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

FOODS = TableSchema(
    table_name="foods",
    columns=(
        ColumnSpec(name="id", sql_type="BIGSERIAL", primary_key=True),
        ColumnSpec(name="name", sql_type="TEXT", nullable=False, unique=True),
        ColumnSpec(name="calories_per_100g", sql_type="NUMERIC(7, 2)", nullable=False, default="0"),
    ),
    indexes=(IndexSpec(name="idx_foods_calories", columns=("calories_per_100g",)),),
)


def pytest_configure(config: pytest.Config) -> None:  # noqa: ARG001
    """Point testcontainers at the local Docker socket before fixtures run."""
    if not os.environ.get("DOCKER_HOST"):
        possible_sockets = [
            Path("/var/run/docker.sock"),
            Path.home() / ".docker" / "run" / "docker.sock",
        ]
        for socket_path in possible_sockets:
            if socket_path.exists():
                os.environ["DOCKER_HOST"] = f"unix://{socket_path}"
                os.environ["TESTCONTAINERS_DOCKER_SOCKET_OVERRIDE"] = str(socket_path)
                break

    # Ryuk (testcontainers cleanup daemon) has known issues on macOS/Docker Desktop
    if sys.platform == "darwin" and not os.environ.get("TESTCONTAINERS_RYUK_DISABLED"):
        os.environ["TESTCONTAINERS_RYUK_DISABLED"] = "true"


def _is_docker_available() -> bool:
    """Check if the Docker daemon answers a ping, not just that the socket exists."""
    try:
        client = from_env()
        client.ping()
    except DockerException:
        return False
    else:
        return True


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Provide session-scoped PostgreSQL container.

    Yields
    ------
    PostgresContainer
        Running PostgreSQL container instance.
    """
    if not _is_docker_available():
        pytest.skip("Docker daemon not accessible")

    with PostgresContainer("postgres:17-alpine") as container:
        yield container


@pytest.fixture(scope="session")
def postgres_dsn(postgres_container: PostgresContainer) -> str:
    host = postgres_container.get_container_host_ip()
    port = postgres_container.get_exposed_port(5432)
    return (
        f"postgresql://{postgres_container.username}:{postgres_container.password}"
        f"@{host}:{port}/{postgres_container.dbname}"
    )


@pytest.fixture
def foods_schema() -> TableSchema:
    return FOODS


@pytest.fixture
def settings(postgres_dsn: str) -> DatabaseSettings:
    """Primary and replica both point at the container."""
    return DatabaseSettings(
        url=SecretStr(postgres_dsn),
        read_replica_url=SecretStr(postgres_dsn),
        max_open_connections=5,
        max_idle_connections=1,
        health_check_interval=60.0,
        health_check_timeout=2.0,
        max_retries=3,
        retry_interval=0.05,
        application_name="nutridb_test",
    )


@pytest_asyncio.fixture
async def manager(settings: DatabaseSettings) -> AsyncIterator[DatabaseManager]:
    """Open manager with the ``foods`` table migrated and emptied."""
    async with DatabaseManager.from_settings(settings) as db:
        await db.amigrate(FOODS)
        await db.get_write_pool().aexecute("TRUNCATE TABLE foods RESTART IDENTITY")
        yield db
