# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery events table manager: append-only history of attempts.

Event types: ``sent``, ``deferred`` (retry scheduled), ``failed``,
``bounced`` and ``mx_invalid``.
"""

from __future__ import annotations

from typing import Any

from ...sql import Integer, Statement, String, Table


class DeliveryEventsTable(Table):
    name = "delivery_events"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("campaign_id", String, nullable=False)
        c.column("recipient_id", String, nullable=False)
        c.column("event_type", String, nullable=False)
        c.column("event_ts", Integer, nullable=False)
        c.column("attempt", Integer)
        c.column("category", String)
        c.column("detail", String)
        c.index("idx_delivery_events_recipient", "recipient_id", "event_ts")
        c.index("idx_delivery_events_campaign", "campaign_id", "event_type")

    def add_statement(
        self,
        recipient: dict[str, Any],
        event_type: str,
        event_ts: int,
        *,
        attempt: int | None = None,
        category: str | None = None,
        detail: str | None = None,
    ) -> Statement:
        return (
            "INSERT INTO delivery_events "
            "(org_id, campaign_id, recipient_id, event_type, event_ts, attempt, category, detail) "
            "VALUES (:org_id, :campaign_id, :recipient_id, :event_type, :event_ts, :attempt, "
            ":category, :detail)",
            {
                "org_id": recipient["org_id"],
                "campaign_id": recipient["campaign_id"],
                "recipient_id": recipient["id"],
                "event_type": event_type,
                "event_ts": event_ts,
                "attempt": attempt,
                "category": category,
                "detail": (detail or None) and detail[:1000],
            },
        )

    async def for_recipient(self, recipient_id: str) -> list[dict[str, Any]]:
        return await self.select(where={"recipient_id": recipient_id}, order_by="event_ts, id")

    async def for_campaign(
        self, campaign_id: str, event_type: str | None = None
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"campaign_id": campaign_id}
        if event_type:
            where["event_type"] = event_type
        return await self.select(where=where, order_by="event_ts, id")


__all__ = ["DeliveryEventsTable"]
