# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email tracking table manager: recipient opens and link clicks.

Every pixel load is an ``open`` row. Clicks are stored once per
``(campaign, recipient, url)``.
"""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table

MAX_USER_AGENT_LENGTH = 512


class EmailTrackingTable(Table):
    name = "email_tracking"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("campaign_id", String, nullable=False)
        c.column("recipient_id", String, nullable=False)
        c.column("event_type", String, nullable=False)
        c.column("link_url", String)
        c.column("ip_address", String)
        c.column("user_agent", String)
        c.column("created_at", Integer, nullable=False)
        c.index("idx_email_tracking_campaign", "campaign_id", "event_type")
        c.index("idx_email_tracking_recipient", "recipient_id", "event_type")

    def _record(
        self,
        recipient: dict[str, Any],
        event_type: str,
        now: int,
        link_url: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> dict[str, Any]:
        return {
            "org_id": recipient["org_id"],
            "campaign_id": recipient["campaign_id"],
            "recipient_id": recipient["id"],
            "event_type": event_type,
            "link_url": link_url,
            "ip_address": ip_address,
            "user_agent": (user_agent or None) and user_agent[:MAX_USER_AGENT_LENGTH],
            "created_at": now,
        }

    async def record_open(
        self,
        recipient: dict[str, Any],
        now: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self.insert(self._record(recipient, "open", now, None, ip_address, user_agent))

    async def record_click(
        self,
        recipient: dict[str, Any],
        url: str,
        now: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Store a click unless this recipient already clicked ``url``. Returns True when stored."""
        record = self._record(recipient, "click", now, url, ip_address, user_agent)
        rowcount = await self.execute(
            "INSERT INTO email_tracking "
            "(org_id, campaign_id, recipient_id, event_type, link_url, ip_address, user_agent, created_at) "
            "SELECT :org_id, :campaign_id, :recipient_id, :event_type, :link_url, :ip_address, "
            ":user_agent, :created_at WHERE NOT EXISTS ("
            "SELECT 1 FROM email_tracking WHERE campaign_id = :campaign_id "
            "AND recipient_id = :recipient_id AND event_type = 'click' AND link_url = :link_url)",
            record,
        )
        return rowcount == 1

    async def for_recipient(self, recipient_id: str) -> list[dict[str, Any]]:
        return await self.select(where={"recipient_id": recipient_id}, order_by="created_at, id")

    async def counts_for_campaign(self, campaign_id: str) -> dict[str, int]:
        """Total and unique-recipient opens and clicks."""
        row = await self.fetch_one(
            "SELECT "
            "COALESCE(SUM(CASE WHEN event_type = 'open' THEN 1 ELSE 0 END), 0) AS opens, "
            "COUNT(DISTINCT CASE WHEN event_type = 'open' THEN recipient_id END) AS unique_opens, "
            "COALESCE(SUM(CASE WHEN event_type = 'click' THEN 1 ELSE 0 END), 0) AS clicks, "
            "COUNT(DISTINCT CASE WHEN event_type = 'click' THEN recipient_id END) AS unique_clicks "
            "FROM email_tracking WHERE campaign_id = :campaign_id",
            {"campaign_id": campaign_id},
        )
        row = row or {}
        return {
            key: int(row.get(key) or 0)
            for key in ("opens", "unique_opens", "clicks", "unique_clicks")
        }


__all__ = ["EmailTrackingTable"]
