# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: a file-backed database, a controllable clock and a fake transport."""

from __future__ import annotations

import itertools
from typing import Any

import pytest
import pytest_asyncio

from campaign_dispatch.config_loader import DispatchConfig
from campaign_dispatch.dispatch_db import DispatchDb
from tests.helpers import FakeClock, FakeTransport


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def config(tmp_path) -> DispatchConfig:
    return DispatchConfig(
        db_path=str(tmp_path / "dispatch.db"),
        mx_check=False,
        concurrency=4,
        max_items_per_run=1000,
        time_budget_ms=55_000,
    )


@pytest_asyncio.fixture
async def db(config):
    database = DispatchDb(config.db_path)
    await database.init_db()
    yield database
    await database.close()


@pytest.fixture
def make_customer(db):
    """Insert a customer; returns its id."""
    counter = itertools.count(1)

    async def _make(org_id: str = "org1", email: str | None = None, **fields: Any) -> str:
        n = next(counter)
        record = {
            "org_id": org_id,
            "email": email if email is not None else f"customer{n}@example.com",
            "first_name": fields.pop("first_name", f"First{n}"),
            "last_name": fields.pop("last_name", f"Last{n}"),
            **fields,
        }
        return await db.customers.add(record)

    return _make


@pytest.fixture
def make_campaign(db):
    """Insert a draft campaign; returns its id."""

    async def _make(org_id: str = "org1", filters: dict[str, Any] | None = None, **fields: Any) -> str:
        return await db.campaigns.add(
            {
                "org_id": org_id,
                "name": fields.pop("name", "Spring newsletter"),
                "subject": fields.pop("subject", "Hello {{firstName}}"),
                "content": fields.pop("content", "<html><body><p>Hi {{firstName}}</p></body></html>"),
                "from_email": fields.pop("from_email", "news@shop.example"),
                "recipient_filters": filters if filters is not None else {},
                **fields,
            }
        )

    return _make
