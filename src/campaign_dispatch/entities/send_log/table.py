# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Send log table manager for per-tenant rate limiting."""

from __future__ import annotations

from ...sql import Integer, String, Table


class SendLogTable(Table):
    """Timestamp of each accepted send, per tenant.

    Counted over sliding windows by the rate limiter; shared by every
    processor instance through the database.
    """

    name = "send_log"

    def configure(self) -> None:
        c = self.columns
        c.column("org_id", String)
        c.column("timestamp", Integer)
        c.index("idx_send_log_org_ts", "org_id", "timestamp")

    async def log(self, org_id: str, timestamp: int) -> None:
        await self.insert({"org_id": org_id, "timestamp": timestamp})

    async def count_since(self, org_id: str, since_ts: int) -> int:
        """Count sends after since_ts for the given tenant."""
        row = await self.db.adapter.fetch_one(
            "SELECT COUNT(*) as cnt FROM send_log WHERE org_id = :org_id AND timestamp > :since_ts",
            {"org_id": org_id, "since_ts": since_ts},
        )
        return int(row["cnt"]) if row else 0

    async def purge_before(self, threshold: int) -> int:
        return await self.execute(
            "DELETE FROM send_log WHERE timestamp < :threshold", {"threshold": threshold}
        )


__all__ = ["SendLogTable"]
