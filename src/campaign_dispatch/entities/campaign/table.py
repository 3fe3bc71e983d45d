# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email campaigns table manager.

Campaigns are authored elsewhere; this core only reads their content and
moves ``status`` and the aggregate counters.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from ...sql import Integer, String, Table, expand_in


class EmailCampaignsTable(Table):
    name = "email_campaigns"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("name", String)
        c.column("subject", String)
        c.column("content", String)
        c.column("from_name", String)
        c.column("from_email", String)
        c.column("reply_to", String)
        c.column("status", String, default="'draft'")
        c.column("recipient_filters", String, json_encoded=True)
        c.column("total_recipients", Integer, default=0)
        c.column("sent_count", Integer, default=0)
        c.column("bounce_count", Integer, default=0)
        c.column("failed_count", Integer, default=0)
        c.column("scheduled_at", Integer)
        c.column("sent_at", Integer)
        c.column("created_at", Integer)
        c.column("updated_at", Integer)
        c.index("idx_email_campaigns_org", "org_id", "status")

    async def add(self, campaign: dict[str, Any]) -> str:
        """Insert a campaign definition. Returns its id."""
        now = int(time.time())
        campaign_id = campaign.get("id") or uuid.uuid4().hex
        await self.insert(
            {
                "id": campaign_id,
                "org_id": campaign["org_id"],
                "name": campaign.get("name"),
                "subject": campaign.get("subject"),
                "content": campaign.get("content"),
                "from_name": campaign.get("from_name"),
                "from_email": campaign.get("from_email"),
                "reply_to": campaign.get("reply_to"),
                "status": campaign.get("status", "draft"),
                "recipient_filters": campaign.get("recipient_filters") or {},
                "created_at": now,
                "updated_at": now,
            }
        )
        return campaign_id

    async def get(self, campaign_id: str, org_id: str | None = None) -> dict[str, Any] | None:
        where: dict[str, Any] = {"id": campaign_id}
        if org_id is not None:
            where["org_id"] = org_id
        return await self.select_one(where=where)

    async def status_of(self, campaign_id: str) -> str | None:
        row = await self.fetch_one(
            "SELECT status FROM email_campaigns WHERE id = :id", {"id": campaign_id}
        )
        return row["status"] if row else None

    async def set_status(
        self,
        campaign_id: str,
        status: str,
        *,
        only_from: tuple[str, ...] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        """Move the campaign to ``status``; with ``only_from`` the move is conditional.

        Returns True if the row changed.
        """
        values = {"status": status, "updated_at": int(time.time()), **(extra or {})}
        set_sql = ", ".join(f"{k} = :v_{k}" for k in values)
        params = {f"v_{k}": v for k, v in values.items()}
        params["id"] = campaign_id
        query = f"UPDATE email_campaigns SET {set_sql} WHERE id = :id"
        if only_from:
            in_sql, in_params = expand_in("from_status", only_from)
            query += f" AND status IN {in_sql}"
            params.update(in_params)
        return await self.execute(query, params) > 0

    async def update_counters(
        self,
        campaign_id: str,
        *,
        total: int,
        sent: int,
        bounced: int,
        failed: int,
    ) -> None:
        await self.update(
            {
                "total_recipients": total,
                "sent_count": sent,
                "bounce_count": bounced,
                "failed_count": failed,
                "updated_at": int(time.time()),
            },
            where={"id": campaign_id},
        )


__all__ = ["EmailCampaignsTable"]
