# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for adapter selection and the SQLite adapter."""

import sqlite3

import pytest

from campaign_dispatch.sql import SqliteAdapter, expand_in, get_adapter


class TestGetAdapter:
    """Tests for connection-string dispatch."""

    def test_absolute_path_is_sqlite(self):
        """A bare absolute path selects SQLite."""
        adapter = get_adapter("/tmp/dispatch.db")
        assert isinstance(adapter, SqliteAdapter)
        assert adapter.db_path == "/tmp/dispatch.db"

    def test_relative_name_is_sqlite(self):
        """A file name without a scheme selects SQLite."""
        adapter = get_adapter("dispatch.db")
        assert isinstance(adapter, SqliteAdapter)

    def test_sqlite_prefix(self):
        """sqlite:<path> strips the scheme."""
        adapter = get_adapter("sqlite:/data/x.db")
        assert isinstance(adapter, SqliteAdapter)
        assert adapter.db_path == "/data/x.db"

    def test_memory(self):
        """:memory: selects an in-memory SQLite adapter."""
        adapter = get_adapter(":memory:")
        assert adapter.db_path == ":memory:"

    def test_unknown_scheme_raises(self):
        """Unsupported schemes are rejected."""
        with pytest.raises(ValueError, match="Unknown database type"):
            get_adapter("mysql://localhost/db")

    def test_postgresql_scheme(self):
        """postgresql:// selects the PostgreSQL adapter when psycopg is installed."""
        pytest.importorskip("psycopg")
        pytest.importorskip("psycopg_pool")
        from campaign_dispatch.sql.adapters.postgresql import PostgresAdapter

        adapter = get_adapter("postgres://user:pw@localhost/db")
        assert isinstance(adapter, PostgresAdapter)
        assert adapter.dsn == "postgresql://user:pw@localhost/db"


class TestExpandIn:
    """Tests for IN-list expansion."""

    def test_expands_values(self):
        """Each value gets its own named placeholder."""
        sql, params = expand_in("city", ["Athens", "Patras"])
        assert sql == "(:city_0, :city_1)"
        assert params == {"city_0": "Athens", "city_1": "Patras"}

    def test_empty_matches_nothing(self):
        """An empty list renders a predicate that matches no row."""
        assert expand_in("x", []) == ("(NULL)", {})


class TestSqliteAdapter:
    """Tests for CRUD helpers and atomic batches."""

    @pytest.mark.asyncio
    async def test_insert_and_select(self, tmp_path):
        """insert() then select_one() round-trips a row."""
        adapter = SqliteAdapter(str(tmp_path / "a.db"))
        await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY, name TEXT, qty INTEGER)")
        await adapter.insert("items", {"id": "a", "name": "apple", "qty": 3})
        row = await adapter.select_one("items", where={"id": "a"})
        assert row == {"id": "a", "name": "apple", "qty": 3}

    @pytest.mark.asyncio
    async def test_where_none_means_is_null(self, tmp_path):
        """A None value in where becomes IS NULL."""
        adapter = SqliteAdapter(str(tmp_path / "a.db"))
        await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY, name TEXT)")
        await adapter.insert("items", {"id": "a", "name": None})
        await adapter.insert("items", {"id": "b", "name": "bee"})
        rows = await adapter.select("items", where={"name": None})
        assert [r["id"] for r in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_upsert_updates_on_conflict(self, tmp_path):
        """upsert() replaces non-key columns of an existing row."""
        adapter = SqliteAdapter(str(tmp_path / "a.db"))
        await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY, name TEXT)")
        await adapter.upsert("items", {"id": "a", "name": "one"}, ["id"])
        await adapter.upsert("items", {"id": "a", "name": "two"}, ["id"])
        assert await adapter.count("items") == 1
        assert (await adapter.select_one("items", where={"id": "a"}))["name"] == "two"

    @pytest.mark.asyncio
    async def test_insert_ignore_reports_collision(self, tmp_path):
        """insert_ignore() returns 0 when the row already exists."""
        adapter = SqliteAdapter(str(tmp_path / "a.db"))
        await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY, name TEXT)")
        assert await adapter.insert_ignore("items", {"id": "a", "name": "x"}, ["id"]) == 1
        assert await adapter.insert_ignore("items", {"id": "a", "name": "y"}, ["id"]) == 0
        assert (await adapter.select_one("items", where={"id": "a"}))["name"] == "x"

    @pytest.mark.asyncio
    async def test_execute_atomic_returns_rowcounts(self, tmp_path):
        """Each statement's row count is reported in order."""
        adapter = SqliteAdapter(str(tmp_path / "a.db"))
        await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY, qty INTEGER)")
        await adapter.insert("items", {"id": "a", "qty": 1})
        counts = await adapter.execute_atomic(
            [
                ("UPDATE items SET qty = 2 WHERE id = :id", {"id": "a"}),
                ("UPDATE items SET qty = 2 WHERE id = :id", {"id": "missing"}),
                ("INSERT INTO items (id, qty) VALUES (:id, 0)", {"id": "b"}),
            ]
        )
        assert counts == [1, 0, 1]

    @pytest.mark.asyncio
    async def test_execute_atomic_rolls_back(self, tmp_path):
        """A failing statement undoes the earlier ones."""
        adapter = SqliteAdapter(str(tmp_path / "a.db"))
        await adapter.execute("CREATE TABLE items (id TEXT PRIMARY KEY, qty INTEGER)")
        await adapter.insert("items", {"id": "a", "qty": 1})
        with pytest.raises(sqlite3.IntegrityError):
            await adapter.execute_atomic(
                [
                    ("UPDATE items SET qty = 5 WHERE id = :id", {"id": "a"}),
                    ("INSERT INTO items (id, qty) VALUES (:id, 0)", {"id": "a"}),
                ]
            )
        assert (await adapter.select_one("items", where={"id": "a"}))["qty"] == 1


class TestPostgresPlaceholders:
    """Tests for :name to %(name)s rewriting."""

    def test_converts_named_params_and_keeps_casts(self):
        """Named parameters are rewritten; ``::`` casts are preserved."""
        pytest.importorskip("psycopg")
        from campaign_dispatch.sql.adapters.postgresql import PostgresAdapter

        adapter = PostgresAdapter("postgresql://localhost/db")
        query = adapter._convert_placeholders("SELECT :id::text WHERE org_id = :org_id")
        assert query == "SELECT %(id)s::text WHERE org_id = %(org_id)s"
