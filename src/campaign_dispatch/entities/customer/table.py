# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Customers table manager (read side used by recipient resolution)."""

from __future__ import annotations

import time
import uuid
from typing import Any

from ...sql import Integer, Real, String, Table, expand_in

# SQLite caps host parameters per statement; stay well below it.
IN_CHUNK = 500

# Attributes copied into the recipient snapshot for personalization.
MERGE_COLUMNS = ("first_name", "last_name", "company", "email", "city", "phone")


class CustomersTable(Table):
    """Tenant customer records.

    Boolean flags (is_vip, is_active, unsubscribed) are stored as INTEGER 0/1.
    A customer is eligible for campaigns when it has an email, is active and
    has not unsubscribed.
    """

    name = "customers"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("first_name", String)
        c.column("last_name", String)
        c.column("company", String)
        c.column("email", String)
        c.column("phone", String)
        c.column("mobile", String)
        c.column("city", String)
        c.column("country", String)
        c.column("category", String)
        c.column("afm", String)
        c.column("doy", String)
        c.column("revenue", Real)
        c.column("lead_score", Integer)
        c.column("lifecycle_stage", String)
        c.column("lead_source", String)
        c.column("is_vip", Integer, default=0)
        c.column("is_active", Integer, default=1)
        c.column("unsubscribed", Integer, default=0)
        c.column("created_at", Integer)
        c.index("idx_customers_org_email", "org_id", "email")
        c.index("idx_customers_org_city", "org_id", "city")

    @staticmethod
    def eligible_clause(alias: str = "c") -> str:
        """SQL predicate selecting customers that may receive campaigns."""
        return (
            f"{alias}.org_id = :org_id AND {alias}.email IS NOT NULL AND {alias}.email <> '' "
            f"AND {alias}.is_active = 1 AND {alias}.unsubscribed = 0"
        )

    async def add(self, customer: dict[str, Any]) -> str:
        """Insert or update a customer. Returns its id."""
        record = {col: customer.get(col) for col in self.columns if col in customer}
        record["id"] = customer.get("id") or uuid.uuid4().hex
        record["org_id"] = customer["org_id"]
        for flag, default in (("is_vip", 0), ("is_active", 1), ("unsubscribed", 0)):
            record[flag] = 1 if customer.get(flag, default) else 0
        record.setdefault("created_at", int(time.time()))
        await self.upsert(record, conflict_columns=["id"])
        return record["id"]

    async def get(self, org_id: str, customer_id: str) -> dict[str, Any] | None:
        return await self.select_one(where={"org_id": org_id, "id": customer_id})

    async def eligible_by_ids(self, org_id: str, customer_ids: list[str]) -> list[dict[str, Any]]:
        """Eligible customers among an explicit id list."""
        if not customer_ids:
            return []
        in_sql, params = expand_in("cid", customer_ids)
        params["org_id"] = org_id
        return await self.fetch_all(
            f"SELECT c.* FROM customers c WHERE {self.eligible_clause()} AND c.id IN {in_sql}",
            params,
        )

    async def unsubscribed_subset(self, org_id: str, emails: list[str]) -> set[str]:
        """Which of the normalized ``emails`` belong to an unsubscribed customer of the tenant."""
        found: set[str] = set()
        for start in range(0, len(emails), IN_CHUNK):
            in_sql, params = expand_in("em", emails[start:start + IN_CHUNK])
            params["org_id"] = org_id
            rows = await self.fetch_all(
                "SELECT DISTINCT LOWER(TRIM(email)) AS email FROM customers "
                f"WHERE org_id = :org_id AND unsubscribed = 1 AND LOWER(TRIM(email)) IN {in_sql}",
                params,
            )
            found.update(row["email"] for row in rows)
        return found

    async def mark_unsubscribed(self, org_id: str, email: str) -> int:
        """Flag every customer of the tenant using this address as unsubscribed."""
        return await self.execute(
            "UPDATE customers SET unsubscribed = 1 "
            "WHERE org_id = :org_id AND LOWER(TRIM(email)) = :email",
            {"org_id": org_id, "email": email},
        )


__all__ = ["CustomersTable", "MERGE_COLUMNS"]
