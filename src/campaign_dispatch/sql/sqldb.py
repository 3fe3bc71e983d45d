# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Database manager holding an adapter and the registered tables."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .adapters import DbAdapter, get_adapter

if TYPE_CHECKING:
    from .table import Table


class SqlDb:
    """Async database with table registration.

    Tables are registered by class; ``check_structure()`` creates every
    registered table and its indexes.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self.adapter: DbAdapter = get_adapter(connection_string)
        self.tables: dict[str, Table] = {}

    async def connect(self) -> None:
        await self.adapter.connect()

    async def close(self) -> None:
        await self.adapter.close()

    def add_table(self, table_class: type[Table]) -> Table:
        """Instantiate and register a table manager."""
        table = table_class(self)
        self.tables[table.name] = table
        return table

    def table(self, name: str) -> Table:
        if name not in self.tables:
            raise ValueError(f"Table '{name}' is not registered")
        return self.tables[name]

    async def check_structure(self) -> None:
        """Create all registered tables and indexes if missing."""
        for table in self.tables.values():
            await table.create_schema()

    async def sync_structure(self) -> None:
        """Add columns declared in code but missing from existing tables."""
        for table in self.tables.values():
            await table.sync_schema()
