# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Deliverability views derived from recipient, suppression and tracking state.

Nothing here is stored: every figure is recomputed from
``campaign_recipients``, ``email_suppressions`` and ``email_tracking`` on
each call, so the views cannot drift from the rows they summarize.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .errors import CampaignNotFoundError

if TYPE_CHECKING:
    from .dispatch_db import DispatchDb

STATUS_SUMS = (
    "COUNT(*) AS total, "
    "SUM(CASE WHEN status = 'sent' THEN 1 ELSE 0 END) AS sent, "
    "SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending, "
    "SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed, "
    "SUM(CASE WHEN status = 'bounced' THEN 1 ELSE 0 END) AS bounced, "
    "SUM(CASE WHEN mx_valid = 0 THEN 1 ELSE 0 END) AS invalid_mx"
)


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


def _counts(row: dict[str, Any] | None) -> dict[str, int]:
    row = row or {}
    counts = {
        key: int(row.get(key) or 0)
        for key in ("total", "sent", "pending", "failed", "bounced", "invalid_mx")
    }
    counts["delivery_rate"] = _rate(counts["sent"], counts["total"])
    counts["bounce_rate"] = _rate(counts["bounced"], counts["total"])
    return counts


class DeliverabilityAggregates:
    def __init__(self, db: DispatchDb):
        self.db = db

    async def campaign_stats(self, campaign_id: str, org_id: str | None = None) -> dict[str, Any]:
        """Counts by status and failure category, plus opens and clicks, for one campaign.

        Open and click rates count unique recipients against those sent.
        """
        campaign = await self.db.campaigns.get(campaign_id, org_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        row = await self.db.recipients.fetch_one(
            f"SELECT {STATUS_SUMS} FROM campaign_recipients WHERE campaign_id = :campaign_id",
            {"campaign_id": campaign_id},
        )
        categories = await self.db.recipients.fetch_all(
            "SELECT failure_category, COUNT(*) AS cnt FROM campaign_recipients "
            "WHERE campaign_id = :campaign_id AND failure_category IS NOT NULL "
            "AND status IN ('failed', 'bounced') "
            "GROUP BY failure_category ORDER BY failure_category",
            {"campaign_id": campaign_id},
        )
        retrying = await self.db.recipients.outstanding(campaign_id)
        job = await self.db.jobs.latest_for_campaign(campaign_id)
        counts = _counts(row)
        engagement = await self.db.tracking.counts_for_campaign(campaign_id)
        return {
            "campaign_id": campaign_id,
            "org_id": campaign["org_id"],
            "status": campaign["status"],
            **counts,
            **engagement,
            "open_rate": _rate(engagement["unique_opens"], counts["sent"]),
            "click_rate": _rate(engagement["unique_clicks"], counts["sent"]),
            "awaiting_retry": retrying["retrying"],
            "next_retry_at": retrying["next_retry_at"],
            "failure_categories": {r["failure_category"]: int(r["cnt"]) for r in categories},
            "job": (
                {
                    "id": job["id"],
                    "status": job["status"],
                    "run_at": job["run_at"],
                    "attempts": job["attempts"],
                    "last_error": job["last_error"],
                }
                if job
                else None
            ),
        }

    async def domain_health(self, org_id: str, min_recipients: int = 3) -> list[dict[str, Any]]:
        """Per recipient domain outcomes across the tenant's campaigns, worst bounce rate first.

        Domains with fewer than ``min_recipients`` rows are left out as noise.
        """
        rows = await self.db.recipients.fetch_all(
            f"SELECT domain, {STATUS_SUMS} FROM campaign_recipients "
            "WHERE org_id = :org_id AND domain IS NOT NULL "
            "GROUP BY domain HAVING COUNT(*) >= :min_recipients",
            {"org_id": org_id, "min_recipients": max(1, int(min_recipients))},
        )
        result = [{"domain": row["domain"], **_counts(row)} for row in rows]
        result.sort(key=lambda d: (-d["bounce_rate"], -d["total"], d["domain"]))
        return result

    async def tenant_health(self, org_id: str) -> dict[str, Any]:
        """Tenant-wide totals plus the suppression ledger broken down by reason."""
        row = await self.db.recipients.fetch_one(
            f"SELECT {STATUS_SUMS} FROM campaign_recipients WHERE org_id = :org_id",
            {"org_id": org_id},
        )
        campaigns = await self.db.campaigns.fetch_all(
            "SELECT status, COUNT(*) AS cnt FROM email_campaigns WHERE org_id = :org_id GROUP BY status",
            {"org_id": org_id},
        )
        suppressions = await self.db.suppressions.counts_by_reason(org_id)
        return {
            "org_id": org_id,
            **_counts(row),
            "campaigns": {r["status"]: int(r["cnt"]) for r in campaigns},
            "suppressions": suppressions,
            "suppressed_total": sum(suppressions.values()),
        }


__all__ = ["DeliverabilityAggregates"]
