# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email suppressions table manager.

Unique on ``(org_id, email)``; emails are stored normalized (trimmed,
lowercase). Rows are only ever added, except by explicit removal.
"""

from __future__ import annotations

import time
from typing import Any

from ...sql import Integer, Statement, String, Table, expand_in

# SQLite caps host parameters per statement; stay well below it.
IN_CHUNK = 500


class EmailSuppressionsTable(Table):
    name = "email_suppressions"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("email", String, nullable=False)
        c.column("reason", String, nullable=False)
        c.column("source_campaign_id", String)
        c.column("created_at", Integer)
        c.index("uq_email_suppressions", "org_id", "email", unique=True)

    def add_statement(
        self,
        org_id: str,
        email: str,
        reason: str,
        campaign_id: str | None = None,
        now: int | None = None,
    ) -> Statement:
        """INSERT ... ON CONFLICT DO NOTHING for use inside a transaction."""
        return (
            "INSERT INTO email_suppressions (org_id, email, reason, source_campaign_id, created_at) "
            "VALUES (:org_id, :email, :reason, :campaign_id, :created_at) "
            "ON CONFLICT (org_id, email) DO NOTHING",
            {
                "org_id": org_id,
                "email": email,
                "reason": reason,
                "campaign_id": campaign_id,
                "created_at": int(time.time()) if now is None else now,
            },
        )

    async def add(
        self,
        org_id: str,
        email: str,
        reason: str,
        campaign_id: str | None = None,
        now: int | None = None,
    ) -> bool:
        """Suppress an address. Returns False when it was already suppressed."""
        query, params = self.add_statement(org_id, email, reason, campaign_id, now)
        return await self.execute(query, params) == 1

    async def get(self, org_id: str, email: str) -> dict[str, Any] | None:
        return await self.select_one(where={"org_id": org_id, "email": email})

    async def contains(self, org_id: str, email: str) -> bool:
        return await self.exists(where={"org_id": org_id, "email": email})

    async def subset(self, org_id: str, emails: list[str]) -> set[str]:
        """Which of ``emails`` are suppressed for the tenant."""
        found: set[str] = set()
        for start in range(0, len(emails), IN_CHUNK):
            chunk = emails[start:start + IN_CHUNK]
            in_sql, params = expand_in("em", chunk)
            params["org_id"] = org_id
            rows = await self.fetch_all(
                f"SELECT email FROM email_suppressions WHERE org_id = :org_id AND email IN {in_sql}",
                params,
            )
            found.update(row["email"] for row in rows)
        return found

    async def remove(self, org_id: str, email: str) -> bool:
        return await self.delete(where={"org_id": org_id, "email": email}) > 0

    async def list_for_org(
        self, org_id: str, reason: str | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"org_id": org_id}
        if reason:
            where["reason"] = reason
        return await self.select(where=where, order_by="created_at DESC, email", limit=limit)

    async def counts_by_reason(self, org_id: str) -> dict[str, int]:
        rows = await self.fetch_all(
            "SELECT reason, COUNT(*) AS cnt FROM email_suppressions "
            "WHERE org_id = :org_id GROUP BY reason",
            {"org_id": org_id},
        )
        return {row["reason"]: int(row["cnt"]) for row in rows}


__all__ = ["EmailSuppressionsTable", "IN_CHUNK"]
