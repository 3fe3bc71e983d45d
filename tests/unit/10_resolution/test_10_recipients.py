# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for recipient resolution."""

import pytest

from campaign_dispatch.models import RecipientFilters, RecipientSource
from campaign_dispatch.recipients import RecipientResolver, normalize_recipient_filters
from campaign_dispatch.suppression import SuppressionLedger


@pytest.fixture
def resolver(db):
    return RecipientResolver(db)


class TestRecipientFilters:
    """Tests for filter normalization."""

    def test_camel_case_keys_are_accepted(self):
        """Composer keys map onto the model fields."""
        filters = normalize_recipient_filters(
            {"tagIds": ["t1"], "segmentIds": ["s1"], "customerIds": ["c1"], "rawEmails": ["A@X.COM"]}
        )
        assert filters.tags == ["t1"]
        assert filters.segments == ["s1"]
        assert filters.customer_ids == ["c1"]
        assert filters.raw_emails == ["a@x.com"]

    def test_values_are_trimmed_deduped_and_sorted(self):
        """Order and duplicates do not affect equality."""
        a = RecipientFilters(cities=[" Patras", "Athens", "Athens", ""])
        b = RecipientFilters(cities=["Athens", "Patras"])
        assert a == b
        assert a.cities == ["Athens", "Patras"]

    def test_unknown_keys_are_ignored(self):
        """Keys this resolver does not know about do not fail the send."""
        filters = RecipientFilters.model_validate({"cities": ["Athens"], "excludeTags": []})
        assert filters.cities == ["Athens"]
        assert filters == RecipientFilters(cities=["Athens"])

    def test_broad_only_when_nothing_given(self):
        """is_broad is true only for a completely empty filter."""
        assert RecipientFilters().is_broad
        assert not RecipientFilters(raw_emails=["a@b.co"]).is_broad
        assert not RecipientFilters(customer_ids=["c1"]).has_criteria


class TestResolve:
    """Tests for RecipientResolver.resolve()."""

    @pytest.mark.asyncio
    async def test_city_filter_with_suppression_and_manual_address(self, db, resolver, make_customer):
        """Suppressed customers drop out and manual addresses are appended."""
        await make_customer(email="alpha@example.com", city="Athens")
        await make_customer(email="beta@example.com", city="Athens")
        await make_customer(email="gamma@example.com", city="Athens")
        await make_customer(email="delta@example.com", city="Patras")
        await SuppressionLedger(db).suppress("org1", "beta@example.com", "hard_bounce")

        result = await resolver.resolve(
            "org1", {"cities": ["Athens"], "rawEmails": ["extra@example.com"]}
        )

        assert [r.email for r in result] == [
            "alpha@example.com",
            "extra@example.com",
            "gamma@example.com",
        ]
        sources = {r.email: r.source for r in result}
        assert sources["extra@example.com"] is RecipientSource.MANUAL_EMAIL
        assert sources["alpha@example.com"] is RecipientSource.CUSTOMER

    @pytest.mark.asyncio
    async def test_tag_and_segment_membership_dedupes(self, db, resolver, make_customer):
        """A customer reached through both a tag and a segment appears once."""
        both = await make_customer(email="both@example.com", city="Athens")
        tagged = await make_customer(email="tagged@example.com", city="Athens")
        await make_customer(email="none@example.com", city="Athens")
        await db.customer_tags.add(both, "vip")
        await db.customer_tags.add(tagged, "vip")
        seg = await db.segments.add({"org_id": "org1", "name": "static", "filters": {}})
        await db.segment_customers.add(seg, both)

        by_tag = await resolver.resolve("org1", {"tags": ["vip"]})
        by_segment = await resolver.resolve("org1", {"segments": [seg]})
        both_lists = await resolver.resolve("org1", {"customerIds": [both], "tags": ["vip"]})

        assert [r.email for r in by_tag] == ["both@example.com", "tagged@example.com"]
        assert [r.email for r in by_segment] == ["both@example.com"]
        assert [r.email for r in both_lists] == ["both@example.com", "tagged@example.com"]

    @pytest.mark.asyncio
    async def test_segment_predicate_selects_customers(self, db, resolver, make_customer):
        """A saved segment's conditions are applied in SQL."""
        await make_customer(email="big@example.com", revenue=90000)
        await make_customer(email="small@example.com", revenue=100)
        seg = await db.segments.add(
            {
                "org_id": "org1",
                "filters": {
                    "logic": "and",
                    "conditions": [{"field": "revenue", "operator": "greaterThan", "value": 1000}],
                },
            }
        )
        result = await resolver.resolve("org1", {"segments": [seg]})
        assert [r.email for r in result] == ["big@example.com"]

    @pytest.mark.asyncio
    async def test_lists_combine_with_and(self, resolver, make_customer):
        """City and category must both match."""
        await make_customer(email="a@example.com", city="Athens", category="retail")
        await make_customer(email="b@example.com", city="Athens", category="wholesale")
        await make_customer(email="c@example.com", city="Patras", category="retail")
        result = await resolver.resolve("org1", {"cities": ["Athens", "Patras"], "categories": ["retail"]})
        assert [r.email for r in result] == ["a@example.com", "c@example.com"]

    @pytest.mark.asyncio
    async def test_broad_default_selects_every_eligible_customer(self, resolver, make_customer):
        """An empty filter selects all eligible customers of the tenant only."""
        await make_customer(email="one@example.com")
        await make_customer(email="two@example.com")
        await make_customer(email="inactive@example.com", is_active=False)
        await make_customer(email="gone@example.com", unsubscribed=True)
        await make_customer(email=" ")
        await make_customer(org_id="org2", email="other@example.com")

        result = await resolver.resolve("org1", None)

        assert [r.email for r in result] == ["one@example.com", "two@example.com"]
        assert await resolver.count("org1", {}) == 2

    @pytest.mark.asyncio
    async def test_customer_entry_wins_over_manual(self, resolver, make_customer):
        """A manual address that matches a customer keeps the customer entry."""
        cid = await make_customer(email="Ann@Example.com", first_name="Ann", city="Athens")
        result = await resolver.resolve(
            "org1", {"cities": ["Athens"], "rawEmails": ["ann@example.com"]}
        )
        assert len(result) == 1
        assert result[0].customer_id == cid
        assert result[0].email == "ann@example.com"
        assert result[0].merge_fields["firstName"] == "Ann"

    @pytest.mark.asyncio
    async def test_malformed_manual_addresses_are_dropped(self, resolver):
        """Manual addresses failing the syntax check never reach the list."""
        result = await resolver.resolve(
            "org1", {"rawEmails": ["ok@example.com", "not-an-email", "a@b", "x@@y.com"]}
        )
        assert [r.email for r in result] == ["ok@example.com"]

    @pytest.mark.asyncio
    async def test_explicit_ids_skip_ineligible_customers(self, resolver, make_customer):
        """Explicit ids cannot reach unsubscribed or foreign customers."""
        good = await make_customer(email="good@example.com")
        bad = await make_customer(email="bad@example.com", unsubscribed=True)
        foreign = await make_customer(org_id="org2", email="foreign@example.com")
        result = await resolver.resolve("org1", {"customerIds": [good, bad, foreign]})
        assert [r.email for r in result] == ["good@example.com"]

    @pytest.mark.asyncio
    async def test_unsubscribed_customer_blocks_manual_address(self, resolver, make_customer):
        """A manual address owned by an unsubscribed customer is dropped without a ledger entry."""
        await make_customer(email="Gone@Example.com ", unsubscribed=True)
        await make_customer(org_id="org2", email="other@example.com", unsubscribed=True)

        assert await resolver.resolve("org1", {"rawEmails": ["gone@example.com"]}) == []
        result = await resolver.resolve(
            "org1", {"rawEmails": ["gone@example.com", "ok@example.com", "other@example.com"]}
        )
        assert [r.email for r in result] == ["ok@example.com", "other@example.com"]

    @pytest.mark.asyncio
    async def test_unknown_segment_matches_nobody(self, resolver, make_customer):
        """A segment id with no definition and no members selects nothing."""
        await make_customer(email="a@example.com")
        assert await resolver.resolve("org1", {"segments": ["missing"]}) == []

    @pytest.mark.asyncio
    async def test_display_name_prefers_company(self, resolver, make_customer):
        """Company name is used as display name when present."""
        await make_customer(email="co@example.com", company="Acme SA")
        await make_customer(email="pp@example.com", first_name="Nikos", last_name="Georgiou")
        result = {r.email: r for r in await resolver.resolve("org1", {})}
        assert result["co@example.com"].display_name == "Acme SA"
        assert result["pp@example.com"].display_name == "Nikos Georgiou"
