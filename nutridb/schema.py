"""Schemas that know how to migrate themselves.

`DatabaseManager.amigrate()` accepts any object implementing
`MigratableSchema`. `TableSchema` is the stock implementation: it emits
idempotent DDL, so running a migration twice is harmless and a migration
against an older table adds the columns and indexes it is missing.

Foreign key constraints are not emitted; tables can therefore be migrated
in any order.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from collections.abc import Sequence

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_SQL_TYPE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\s*\d+(\s*,\s*\d+)?\s*\))?(\[\])?$")
_FORBIDDEN_DEFAULT_TOKENS = (";", "--", "/*")


def quote_identifier(name: str) -> str:
    """Validate and double-quote a PostgreSQL identifier.

    Raises
    ------
    ValueError
        If ``name`` is not a plain identifier.
    """
    if not _IDENTIFIER_RE.match(name):
        msg = f"invalid SQL identifier: {name!r}"
        raise ValueError(msg)
    return f'"{name}"'


@runtime_checkable
class MigratableSchema(Protocol):
    """Anything that can describe its own idempotent DDL."""

    @property
    def table_name(self) -> str: ...

    def migration_statements(self) -> Sequence[str]: ...


class ColumnSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    sql_type: str
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    default: str | None = Field(default=None, description="SQL expression, e.g. now() or 0")

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        quote_identifier(value)
        return value

    @field_validator("sql_type")
    @classmethod
    def _check_sql_type(cls, value: str) -> str:
        if not _SQL_TYPE_RE.match(value.strip()):
            msg = f"invalid SQL type: {value!r}"
            raise ValueError(msg)
        return value.strip()

    @field_validator("default")
    @classmethod
    def _check_default(cls, value: str | None) -> str | None:
        if value is not None and any(token in value for token in _FORBIDDEN_DEFAULT_TOKENS):
            msg = f"default expression must be a single SQL expression: {value!r}"
            raise ValueError(msg)
        return value

    def definition(self) -> str:
        parts = [quote_identifier(self.name), self.sql_type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif not self.nullable:
            parts.append("NOT NULL")
        if self.unique and not self.primary_key:
            parts.append("UNIQUE")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        return " ".join(parts)


class IndexSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    columns: tuple[str, ...] = Field(min_length=1)
    unique: bool = False

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        quote_identifier(value)
        return value


class TableSchema(BaseModel):
    """Declarative table definition implementing `MigratableSchema`.

    Examples
    --------
    >>> foods = TableSchema(
    ...     table_name="foods",
    ...     columns=(
    ...         ColumnSpec(name="id", sql_type="BIGSERIAL", primary_key=True),
    ...         ColumnSpec(name="name", sql_type="TEXT", nullable=False, unique=True),
    ...         ColumnSpec(name="calories_per_100g", sql_type="NUMERIC(7, 2)", nullable=False),
    ...     ),
    ...     indexes=(IndexSpec(name="idx_foods_calories", columns=("calories_per_100g",)),),
    ... )
    >>> await manager.amigrate(foods)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    table_name: str
    columns: tuple[ColumnSpec, ...] = Field(min_length=1)
    indexes: tuple[IndexSpec, ...] = Field(default_factory=tuple)

    @field_validator("table_name")
    @classmethod
    def _check_table_name(cls, value: str) -> str:
        quote_identifier(value)
        return value

    @model_validator(mode="after")
    def _check_references(self) -> TableSchema:
        names = [column.name for column in self.columns]
        if len(set(names)) != len(names):
            msg = f"duplicate column names in {self.table_name}"
            raise ValueError(msg)
        if sum(column.primary_key for column in self.columns) > 1:
            msg = f"{self.table_name} declares more than one primary key column"
            raise ValueError(msg)
        for index in self.indexes:
            unknown = set(index.columns) - set(names)
            if unknown:
                msg = f"index {index.name} references unknown columns {sorted(unknown)}"
                raise ValueError(msg)
        return self

    def migration_statements(self) -> list[str]:
        table = quote_identifier(self.table_name)
        column_defs = ",\n    ".join(column.definition() for column in self.columns)
        statements = [f"CREATE TABLE IF NOT EXISTS {table} (\n    {column_defs}\n)"]

        statements.extend(
            f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column.definition()}"
            for column in self.columns
            if not column.primary_key
        )

        for index in self.indexes:
            unique = "UNIQUE " if index.unique else ""
            columns = ", ".join(quote_identifier(name) for name in index.columns)
            statements.append(
                f"CREATE {unique}INDEX IF NOT EXISTS {quote_identifier(index.name)} ON {table} ({columns})"
            )

        return statements
