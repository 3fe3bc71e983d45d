# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign recipients table manager: the per-recipient delivery ledger.

One row per resolved address per campaign, written once when the campaign
is enqueued and afterwards mutated only by the delivery engine. Rows whose
status is ``sent`` or ``bounced`` are never updated again.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from ...sql import Integer, Statement, String, Table

if TYPE_CHECKING:
    from ...models import ResolvedRecipient

OPEN_STATUSES = ("pending", "failed")


class CampaignRecipientsTable(Table):
    name = "campaign_recipients"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("campaign_id", String, nullable=False)
        c.column("customer_id", String)
        c.column("email", String, nullable=False)
        c.column("email_normalized", String, nullable=False)
        c.column("domain", String)
        c.column("recipient_source", String, default="'customer'")
        c.column("display_name", String)
        c.column("merge_fields", String, json_encoded=True)
        c.column("status", String, default="'pending'")
        c.column("attempt_count", Integer, default=0)
        c.column("last_attempt_at", Integer)
        c.column("next_retry_at", Integer)
        c.column("failure_category", String)
        c.column("failure_reason_detailed", String)
        c.column("bounce_type", String)
        c.column("mx_valid", Integer)
        c.column("dns_checked_at", Integer)
        c.column("message_id", String)
        c.column("sent_at", Integer)
        c.column("created_at", Integer)
        c.index("uq_campaign_recipients_email", "campaign_id", "email_normalized", unique=True)
        c.index("idx_campaign_recipients_status", "campaign_id", "status", "next_retry_at")
        c.index("idx_campaign_recipients_domain", "org_id", "domain")

    async def insert_snapshot(
        self,
        org_id: str,
        campaign_id: str,
        recipients: Iterable[ResolvedRecipient],
        now: int | None = None,
    ) -> int:
        """Materialize resolved recipients as pending rows; duplicates are ignored."""
        if now is None:
            now = int(time.time())
        rows = [
            self._encode_json_fields(
                {
                    "id": f"rcp_{uuid.uuid4().hex}",
                    "org_id": org_id,
                    "campaign_id": campaign_id,
                    "customer_id": r.customer_id,
                    "email": r.email,
                    "email_normalized": r.email,
                    "domain": r.domain,
                    "recipient_source": r.source.value,
                    "display_name": r.display_name,
                    "merge_fields": dict(r.merge_fields),
                    "status": "pending",
                    "attempt_count": 0,
                    "created_at": now,
                }
            )
            for r in recipients
        ]
        if not rows:
            return 0
        columns = list(rows[0].keys())
        col_list = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join(f":{c}" for c in columns)
        await self.adapter.execute_many(
            f"INSERT INTO campaign_recipients ({col_list}) VALUES ({placeholders}) "
            "ON CONFLICT (campaign_id, email_normalized) DO NOTHING",
            rows,
        )
        return await self.count(where={"campaign_id": campaign_id})

    async def get(self, recipient_id: str) -> dict[str, Any] | None:
        return await self.select_one(where={"id": recipient_id})

    async def get_by_email(self, campaign_id: str, email: str) -> dict[str, Any] | None:
        return await self.select_one(
            where={"campaign_id": campaign_id, "email_normalized": email.strip().lower()}
        )

    async def list_for_campaign(
        self, campaign_id: str, status: str | None = None
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"campaign_id": campaign_id}
        if status:
            where["status"] = status
        return await self.select(where=where, order_by="email_normalized")

    async def fetch_eligible(self, campaign_id: str, now: int, limit: int) -> list[dict[str, Any]]:
        """Rows due for an attempt: pending, or failed with an elapsed retry time."""
        return await self.fetch_all(
            "SELECT * FROM campaign_recipients WHERE campaign_id = :campaign_id AND ("
            "status = 'pending' OR (status = 'failed' AND next_retry_at IS NOT NULL "
            "AND next_retry_at <= :now)) ORDER BY email_normalized LIMIT :limit",
            {"campaign_id": campaign_id, "now": now, "limit": limit},
        )

    async def outstanding(self, campaign_id: str) -> dict[str, Any]:
        """Pending count and the earliest scheduled retry among open rows."""
        row = await self.fetch_one(
            "SELECT "
            "SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending, "
            "SUM(CASE WHEN status = 'failed' AND next_retry_at IS NOT NULL THEN 1 ELSE 0 END) AS retrying, "
            "MIN(CASE WHEN status = 'failed' THEN next_retry_at END) AS next_retry_at "
            "FROM campaign_recipients WHERE campaign_id = :campaign_id",
            {"campaign_id": campaign_id},
        )
        row = row or {}
        return {
            "pending": int(row.get("pending") or 0),
            "retrying": int(row.get("retrying") or 0),
            "next_retry_at": row.get("next_retry_at"),
        }

    async def count_pending(self) -> int:
        row = await self.fetch_one(
            "SELECT COUNT(*) AS cnt FROM campaign_recipients WHERE status = 'pending'"
        )
        return int(row["cnt"]) if row else 0

    def transition_statement(self, recipient_id: str, values: dict[str, Any]) -> Statement:
        """UPDATE guarded so that only an open (pending/failed) row changes."""
        encoded = self._encode_json_fields(values)
        set_sql = ", ".join(f"{k} = :v_{k}" for k in encoded)
        params = {f"v_{k}": v for k, v in encoded.items()}
        params["id"] = recipient_id
        return (
            f"UPDATE campaign_recipients SET {set_sql} "
            "WHERE id = :id AND status IN ('pending', 'failed')",
            params,
        )

    async def transition(self, recipient_id: str, values: dict[str, Any]) -> bool:
        query, params = self.transition_statement(recipient_id, values)
        return await self.execute(query, params) == 1

    async def reset_failed(self, campaign_id: str) -> int:
        """Return terminally failed rows to ``pending`` with a fresh attempt budget.

        Rows still waiting for a scheduled retry are left alone; the MX verdict
        is cleared so the domain is checked again.
        """
        return await self.execute(
            "UPDATE campaign_recipients SET status = 'pending', attempt_count = 0, "
            "next_retry_at = NULL, failure_category = NULL, failure_reason_detailed = NULL, "
            "mx_valid = NULL "
            "WHERE campaign_id = :campaign_id AND status = 'failed' AND next_retry_at IS NULL",
            {"campaign_id": campaign_id},
        )

    async def status_counts(self, campaign_id: str) -> dict[str, int]:
        rows = await self.fetch_all(
            "SELECT status, COUNT(*) AS cnt FROM campaign_recipients "
            "WHERE campaign_id = :campaign_id GROUP BY status",
            {"campaign_id": campaign_id},
        )
        counts = {"pending": 0, "sent": 0, "failed": 0, "bounced": 0}
        for row in rows:
            counts[row["status"]] = int(row["cnt"])
        return counts


__all__ = ["CampaignRecipientsTable", "OPEN_STATUSES"]
