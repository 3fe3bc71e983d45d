# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import aiosqlite

from .base import DbAdapter, Statement

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence


def _casefold(value: Any) -> Any:
    """SQL ``casefold(x)``: Unicode case folding; SQLite's LOWER() only folds ASCII."""
    return value.casefold() if isinstance(value, str) else value


class SqliteAdapter(DbAdapter):
    """SQLite async adapter. Opens connection per-operation for thread safety.

    Per-operation connections mean ``:memory:`` databases do not persist
    between calls; use a file path for anything beyond a smoke test.
    """

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
            busy_timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout

    def pk_column(self, name: str) -> str:
        return f'"{name}" INTEGER PRIMARY KEY AUTOINCREMENT'

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
            await db.create_function("casefold", 1, _casefold, deterministic=True)
            yield db

    async def connect(self) -> None:
        """SQLite connections are opened per-operation, this is a no-op."""
        pass

    async def close(self) -> None:
        """SQLite connections are closed per-operation, this is a no-op."""
        pass

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connect() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def execute_many(
        self, query: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute query multiple times with different params (batch insert)."""
        if not params_list:
            return 0
        async with self._connect() as db:
            await db.executemany(query, params_list)
            await db.commit()
            return len(params_list)

    async def execute_atomic(self, statements: Sequence[Statement]) -> list[int]:
        """Run all statements inside one ``BEGIN IMMEDIATE`` transaction."""
        counts: list[int] = []
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for query, params in statements:
                    cursor = await db.execute(query, params)
                    counts.append(cursor.rowcount)
            except Exception:
                await db.rollback()
                raise
            await db.commit()
        return counts

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connect() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connect() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._connect() as db:
            await db.executescript(script)
            await db.commit()
