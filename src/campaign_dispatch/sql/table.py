# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table base class with Columns-based schema (async version)."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from .adapters import SqliteAdapter
from .column import Columns

if TYPE_CHECKING:
    from .sqldb import SqlDb


class Table:
    """Base class for async table managers.

    Subclasses define columns and indexes via the configure() hook and
    implement domain-specific operations.

    Attributes:
        name: Table name in database.
        db: SqlDb instance reference.
        columns: Column definitions.
    """

    name: str

    def __init__(self, db: SqlDb) -> None:
        self.db = db
        if not hasattr(self, "name") or not self.name:
            raise ValueError(f"{type(self).__name__} must define 'name'")

        self.columns = Columns()
        self.configure()

    def configure(self) -> None:
        """Override to define columns. Called during __init__."""
        pass

    @property
    def adapter(self):
        return self.db.adapter

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def create_table_sql(self) -> str:
        """Generate CREATE TABLE IF NOT EXISTS statement."""
        col_defs = []
        for col in self.columns.values():
            if col.primary_key and col.type_ == "INTEGER":
                col_defs.append(self.adapter.pk_column(col.name))
            else:
                col_defs.append(col.to_sql())
        return f"CREATE TABLE IF NOT EXISTS {self.name} (\n    " + ",\n    ".join(col_defs) + "\n)"

    def create_indexes_sql(self) -> list[str]:
        return [idx.to_sql(self.name) for idx in self.columns.indexes]

    async def create_schema(self) -> None:
        """Create table and its indexes if they do not exist."""
        await self.adapter.execute(self.create_table_sql())
        for statement in self.create_indexes_sql():
            await self.adapter.execute(statement)

    async def existing_columns(self) -> set[str]:
        """Return column names currently present in the database table."""
        if isinstance(self.adapter, SqliteAdapter):
            info = await self.adapter.fetch_all(f"PRAGMA table_info({self.name})")
        else:
            info = await self.adapter.fetch_all(
                "SELECT column_name AS name FROM information_schema.columns "
                "WHERE table_name = :table",
                {"table": self.name},
            )
        return {row["name"] for row in info}

    async def sync_schema(self) -> None:
        """Sync table schema by adding any missing columns.

        Safe to call on every startup - existing columns are left alone.
        Works with both SQLite and PostgreSQL.
        """
        present = await self.existing_columns()
        for col in self.columns.values():
            if col.primary_key or col.name in present:
                continue
            await self.adapter.execute(
                f"ALTER TABLE {self.name} ADD COLUMN {col.to_sql()}"
            )

    # -------------------------------------------------------------------------
    # JSON Encoding/Decoding
    # -------------------------------------------------------------------------

    def _encode_json_fields(self, data: dict[str, Any]) -> dict[str, Any]:
        """Encode JSON fields for storage."""
        result = dict(data)
        for col_name in self.columns.json_columns():
            if col_name in result and result[col_name] is not None:
                result[col_name] = json.dumps(result[col_name])
        return result

    def _decode_json_fields(self, row: dict[str, Any]) -> dict[str, Any]:
        """Decode JSON fields from storage."""
        result = dict(row)
        for col_name in self.columns.json_columns():
            if col_name in result and isinstance(result[col_name], str):
                result[col_name] = json.loads(result[col_name])
        return result

    def _decode_rows(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Decode JSON fields in multiple rows."""
        return [self._decode_json_fields(row) for row in rows]

    # -------------------------------------------------------------------------
    # CRUD Operations
    # -------------------------------------------------------------------------

    async def insert(self, data: dict[str, Any]) -> int:
        return await self.adapter.insert(self.name, self._encode_json_fields(data))

    async def insert_many(self, rows: list[dict[str, Any]]) -> int:
        """Insert several rows sharing the same key set."""
        if not rows:
            return 0
        columns = list(rows[0].keys())
        col_list = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join(f":{c}" for c in columns)
        return await self.adapter.execute_many(
            f"INSERT INTO {self.name} ({col_list}) VALUES ({placeholders})",
            [self._encode_json_fields(r) for r in rows],
        )

    async def select(
        self,
        columns: list[str] | None = None,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = await self.adapter.select(self.name, columns, where, order_by, limit)
        return self._decode_rows(rows)

    async def select_one(
        self,
        columns: list[str] | None = None,
        where: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        row = await self.adapter.select_one(self.name, columns, where)
        return self._decode_json_fields(row) if row else None

    async def update(self, values: dict[str, Any], where: dict[str, Any]) -> int:
        return await self.adapter.update(self.name, self._encode_json_fields(values), where)

    async def delete(self, where: dict[str, Any]) -> int:
        return await self.adapter.delete(self.name, where)

    async def exists(self, where: dict[str, Any]) -> bool:
        return await self.adapter.exists(self.name, where)

    async def count(self, where: dict[str, Any] | None = None) -> int:
        return await self.adapter.count(self.name, where)

    async def upsert(
        self,
        data: dict[str, Any],
        conflict_columns: list[str],
        update_extras: list[str] | None = None,
    ) -> int:
        """Insert or update on conflict."""
        encoded = self._encode_json_fields(data)
        return await self.adapter.upsert(
            self.name, encoded, conflict_columns, update_extras
        )

    async def insert_ignore(self, data: dict[str, Any], conflict_columns: list[str]) -> int:
        """Insert unless the row already exists. Returns 1 when a row was added."""
        encoded = self._encode_json_fields(data)
        return await self.adapter.insert_ignore(self.name, encoded, conflict_columns)

    # -------------------------------------------------------------------------
    # Raw Query
    # -------------------------------------------------------------------------

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute raw query, return single row."""
        row = await self.adapter.fetch_one(query, params)
        return self._decode_json_fields(row) if row else None

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute raw query, return all rows."""
        rows = await self.adapter.fetch_all(query, params)
        return self._decode_rows(rows)

    async def execute(
        self, query: str, params: dict[str, Any] | None = None
    ) -> int:
        """Execute raw query, return affected row count."""
        return await self.adapter.execute(query, params)


__all__ = ["Table", "expand_in"]


def expand_in(prefix: str, values: list[Any] | tuple[Any, ...] | set[Any]) -> tuple[str, dict[str, Any]]:
    """Build ``(:p_0, :p_1, ...)`` and its params for an IN predicate.

    An empty collection yields ``(NULL)`` which matches nothing.
    """
    items = list(values)
    if not items:
        return "(NULL)", {}
    names = [f"{prefix}_{i}" for i in range(len(items))]
    return "(" + ", ".join(f":{n}" for n in names) + ")", dict(zip(names, items, strict=True))
