# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for deliverability aggregates."""

import pytest

from campaign_dispatch.aggregates import DeliverabilityAggregates
from campaign_dispatch.errors import CampaignNotFoundError
from campaign_dispatch.models import RecipientSource, ResolvedRecipient


async def _campaign_with_rows(db, make_campaign, outcomes, org_id="org1"):
    """Snapshot ``{email: row values}`` into a new campaign."""
    cid = await make_campaign(org_id=org_id)
    await db.recipients.insert_snapshot(
        org_id,
        cid,
        [ResolvedRecipient(source=RecipientSource.MANUAL_EMAIL, email=email) for email in outcomes],
    )
    for row in await db.recipients.list_for_campaign(cid):
        values = outcomes[row["email"]]
        if values:
            await db.recipients.transition(row["id"], values)
    return cid


SENT = {"status": "sent"}
BOUNCED = {"status": "bounced", "failure_category": "hard_bounce", "bounce_type": "hard"}
NO_MX = {"status": "failed", "failure_category": "invalid_address", "mx_valid": 0}
RETRYING = {"status": "failed", "failure_category": "transport_error", "next_retry_at": 1_700_000_300}


@pytest.fixture
def aggregates(db):
    return DeliverabilityAggregates(db)


class TestCampaignStats:
    """Tests for per-campaign statistics."""

    @pytest.mark.asyncio
    async def test_counts_and_rates(self, db, aggregates, make_campaign):
        """Status counts, rates and failure categories are derived from rows."""
        cid = await _campaign_with_rows(
            db,
            make_campaign,
            {
                "a@good.example": SENT,
                "b@good.example": SENT,
                "c@bad.example": BOUNCED,
                "d@nomx.example": NO_MX,
                "e@slow.example": RETRYING,
                "f@good.example": None,
            },
        )

        stats = await aggregates.campaign_stats(cid)

        assert stats["total"] == 6
        assert stats["sent"] == 2
        assert stats["pending"] == 1
        assert stats["failed"] == 2
        assert stats["bounced"] == 1
        assert stats["invalid_mx"] == 1
        assert stats["delivery_rate"] == round(2 / 6, 4)
        assert stats["bounce_rate"] == round(1 / 6, 4)
        assert stats["awaiting_retry"] == 1
        assert stats["next_retry_at"] == 1_700_000_300
        assert stats["failure_categories"] == {
            "hard_bounce": 1,
            "invalid_address": 1,
            "transport_error": 1,
        }
        assert stats["job"] is None

    @pytest.mark.asyncio
    async def test_empty_campaign_has_zero_rates(self, aggregates, make_campaign):
        """No rows means zero rates rather than a division error."""
        cid = await make_campaign()
        stats = await aggregates.campaign_stats(cid)
        assert stats["total"] == 0
        assert stats["delivery_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_opens_and_clicks(self, db, aggregates, make_campaign):
        """Engagement counts come from email_tracking; rates use unique recipients over sent."""
        cid = await _campaign_with_rows(
            db,
            make_campaign,
            {"a@x.example": SENT, "b@x.example": SENT, "c@x.example": SENT, "d@x.example": BOUNCED},
        )
        rows = {row["email"]: row for row in await db.recipients.list_for_campaign(cid)}
        a, b = rows["a@x.example"], rows["b@x.example"]
        await db.tracking.record_open(a, 1_700_000_100)
        await db.tracking.record_open(a, 1_700_000_200)
        await db.tracking.record_open(b, 1_700_000_300)
        await db.tracking.record_click(a, "https://shop.example/", 1_700_000_400)
        await db.tracking.record_click(a, "https://shop.example/sale", 1_700_000_500)

        stats = await aggregates.campaign_stats(cid)

        assert stats["opens"] == 3
        assert stats["unique_opens"] == 2
        assert stats["clicks"] == 2
        assert stats["unique_clicks"] == 1
        assert stats["open_rate"] == round(2 / 3, 4)
        assert stats["click_rate"] == round(1 / 3, 4)

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_campaign(self, aggregates, make_campaign):
        """Unknown ids and ids of another tenant raise."""
        cid = await make_campaign(org_id="org2")
        with pytest.raises(CampaignNotFoundError):
            await aggregates.campaign_stats("missing")
        with pytest.raises(CampaignNotFoundError):
            await aggregates.campaign_stats(cid, org_id="org1")


class TestDomainHealth:
    """Tests for per-domain deliverability."""

    @pytest.mark.asyncio
    async def test_worst_domains_first_and_small_ones_skipped(self, db, aggregates, make_campaign):
        """Domains are sorted by bounce rate and filtered by minimum size."""
        await _campaign_with_rows(
            db,
            make_campaign,
            {
                "a@good.example": SENT,
                "b@good.example": SENT,
                "c@good.example": SENT,
                "d@good.example": BOUNCED,
                "a@bad.example": BOUNCED,
                "b@bad.example": BOUNCED,
                "c@bad.example": SENT,
                "a@tiny.example": BOUNCED,
            },
        )

        rows = await aggregates.domain_health("org1", min_recipients=3)

        assert [r["domain"] for r in rows] == ["bad.example", "good.example"]
        assert rows[0]["bounce_rate"] == round(2 / 3, 4)
        assert rows[1]["delivery_rate"] == 0.75

    @pytest.mark.asyncio
    async def test_scoped_to_tenant(self, db, aggregates, make_campaign):
        """Other tenants' recipients are not counted."""
        await _campaign_with_rows(db, make_campaign, {"a@x.example": SENT}, org_id="org2")
        assert await aggregates.domain_health("org1", min_recipients=1) == []


class TestTenantHealth:
    """Tests for tenant-wide totals."""

    @pytest.mark.asyncio
    async def test_totals_campaigns_and_suppressions(self, db, aggregates, make_campaign):
        """Totals span campaigns; suppressions are grouped by reason."""
        await _campaign_with_rows(db, make_campaign, {"a@x.example": SENT, "b@x.example": BOUNCED})
        await _campaign_with_rows(db, make_campaign, {"c@x.example": SENT})
        await db.suppressions.add("org1", "b@x.example", "hard_bounce")
        await db.suppressions.add("org1", "z@x.example", "unsubscribe")

        health = await aggregates.tenant_health("org1")

        assert health["total"] == 3
        assert health["sent"] == 2
        assert health["bounce_rate"] == round(1 / 3, 4)
        assert health["campaigns"] == {"draft": 2}
        assert health["suppressions"] == {"hard_bounce": 1, "unsubscribe": 1}
        assert health["suppressed_total"] == 2
