# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for Columns-declared schemas, schema sync and JSON columns."""

import pytest

from campaign_dispatch.dispatch_db import DispatchDb
from campaign_dispatch.sql import Columns, Integer, SqlDb, String, Table


class WidgetsTable(Table):
    name = "widgets"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("label", String, nullable=False)
        c.column("state", String, default="'new'")
        c.column("attrs", String, json_encoded=True)
        c.index("idx_widgets_state", "state")


class WidgetsTableV2(WidgetsTable):
    def configure(self) -> None:
        super().configure()
        self.columns.column("weight", Integer, default=0)


class TestColumns:
    """Tests for column and index SQL rendering."""

    def test_column_sql(self):
        """Constraints and defaults are rendered in order."""
        cols = Columns()
        col = cols.column("status", String, nullable=False, default="'draft'")
        assert col.to_sql() == '"status" TEXT NOT NULL DEFAULT \'draft\''

    def test_numeric_default(self):
        """Non-string defaults are rendered as literals."""
        cols = Columns()
        assert cols.column("n", Integer, default=3).to_sql() == '"n" INTEGER DEFAULT 3'

    def test_unique_index(self):
        """Unique indexes render CREATE UNIQUE INDEX IF NOT EXISTS."""
        cols = Columns()
        idx = cols.index("uq_x", "a", "b", unique=True)
        assert idx.to_sql("t") == 'CREATE UNIQUE INDEX IF NOT EXISTS uq_x ON t ("a", "b")'

    def test_json_columns_and_primary_key(self):
        """json_columns() and primary_key() report declared metadata."""
        table = WidgetsTable(SqlDb(":memory:"))
        assert table.columns.json_columns() == ["attrs"]
        assert table.columns.primary_key() == "id"


class TestTableSchema:
    """Tests for schema creation and sync on SQLite."""

    @pytest.mark.asyncio
    async def test_create_and_json_roundtrip(self, tmp_path):
        """JSON columns are encoded on write and decoded on read."""
        db = SqlDb(str(tmp_path / "w.db"))
        widgets = db.add_table(WidgetsTable)
        await db.check_structure()
        await widgets.insert({"id": "w1", "label": "one", "attrs": {"color": "red"}})
        row = await widgets.select_one(where={"id": "w1"})
        assert row["attrs"] == {"color": "red"}
        assert row["state"] == "new"

    @pytest.mark.asyncio
    async def test_sync_schema_adds_missing_columns(self, tmp_path):
        """A column added to the declaration appears after sync_structure()."""
        path = str(tmp_path / "w.db")
        old = SqlDb(path)
        old.add_table(WidgetsTable)
        await old.check_structure()

        new = SqlDb(path)
        table = new.add_table(WidgetsTableV2)
        await new.check_structure()
        await new.sync_structure()
        assert "weight" in await table.existing_columns()

    def test_unknown_table_raises(self):
        """table() refuses names that were never registered."""
        db = SqlDb(":memory:")
        with pytest.raises(ValueError):
            db.table("nope")

    def test_table_requires_name(self):
        """A Table subclass without a name is rejected."""

        class Nameless(Table):
            pass

        with pytest.raises(ValueError, match="must define 'name'"):
            Nameless(SqlDb(":memory:"))


class TestDispatchDb:
    """Tests for the pre-registered dispatch schema."""

    @pytest.mark.asyncio
    async def test_init_db_creates_every_table(self, tmp_path):
        """init_db() creates all entity tables and is idempotent."""
        db = DispatchDb(str(tmp_path / "d.db"))
        await db.init_db()
        await db.init_db()
        rows = await db.adapter.fetch_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        )
        names = {r["name"] for r in rows}
        assert {
            "customers",
            "customer_tags",
            "segments",
            "segment_customers",
            "email_campaigns",
            "email_jobs",
            "campaign_recipients",
            "email_suppressions",
            "email_validation_cache",
            "email_retry_config",
            "delivery_events",
            "send_log",
            "email_tracking",
        } <= names
