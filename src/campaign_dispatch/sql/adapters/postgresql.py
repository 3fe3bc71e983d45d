# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""PostgreSQL async adapter using psycopg3 with connection pooling."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from .base import DbAdapter, Statement

if TYPE_CHECKING:
    from collections.abc import Sequence

# Segment text conditions call casefold(); lower() is Unicode-aware on a UTF8 database.
CASEFOLD_FUNCTION = (
    "CREATE OR REPLACE FUNCTION casefold(text) RETURNS text "
    "LANGUAGE sql IMMUTABLE AS $$ SELECT lower($1) $$"
)


class PostgresAdapter(DbAdapter):
    """PostgreSQL async adapter using psycopg3 with connection pooling.

    Converts :name placeholders to %(name)s for psycopg compatibility.
    """

    def __init__(self, dsn: str, pool_size: int = 10):
        self.dsn = dsn
        self.pool_size = pool_size
        self._pool: Any = None

        # Verify psycopg is available at init time
        try:
            import psycopg  # noqa: F401
        except ImportError as e:
            raise ImportError(
                "PostgreSQL support requires psycopg. "
                "Install with: pip install campaign-dispatch[postgresql]"
            ) from e

    def pk_column(self, name: str) -> str:
        return f'"{name}" SERIAL PRIMARY KEY'

    def _convert_placeholders(self, query: str) -> str:
        """Convert :name placeholders to %(name)s for psycopg.

        Uses negative lookbehind to preserve PostgreSQL :: cast operators.
        """
        return re.sub(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)", r"%(\1)s", query)

    async def connect(self) -> None:
        """Establish connection pool."""
        from psycopg_pool import AsyncConnectionPool

        self._pool = AsyncConnectionPool(
            self.dsn,
            min_size=1,
            max_size=self.pool_size,
            open=False,
        )
        await self._pool.open()
        async with self._pool.connection() as conn:
            await conn.execute(CASEFOLD_FUNCTION)
            await conn.commit()

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        query = self._convert_placeholders(query)
        async with self._pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(query, params or {})
            await conn.commit()
            return cur.rowcount

    async def execute_many(
        self, query: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute query multiple times with different params (batch insert)."""
        if not params_list:
            return 0
        query = self._convert_placeholders(query)
        async with self._pool.connection() as conn, conn.cursor() as cur:
            await cur.executemany(query, params_list)
            await conn.commit()
            return len(params_list)

    async def execute_atomic(self, statements: Sequence[Statement]) -> list[int]:
        """Run all statements inside ``conn.transaction()``."""
        counts: list[int] = []
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    for query, params in statements:
                        await cur.execute(self._convert_placeholders(query), params)
                        counts.append(cur.rowcount)
        return counts

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        from psycopg.rows import dict_row

        query = self._convert_placeholders(query)
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params or {})
                return await cur.fetchone()

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        from psycopg.rows import dict_row

        query = self._convert_placeholders(query)
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params or {})
                return await cur.fetchall()

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(script)
            await conn.commit()
