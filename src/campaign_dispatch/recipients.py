# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recipient resolution: filter criteria to a deduplicated send list.

Resolution is a read-only union:

1. Customers matching the attribute criteria. Values inside one list are
   alternatives (city A or city B; tag X or tag Y; segment S or segment T,
   where a segment contributes both its predicate matches and its static
   members). Different lists are combined with AND.
2. Customers named explicitly by id.
3. Manually entered addresses that pass the syntax check.

Entries are keyed by normalized email; customer-sourced entries win over
manual ones. Anything in the suppression ledger, or belonging to a customer
of the tenant flagged as unsubscribed, is removed and the result is sorted
by email.

When no criteria, ids or addresses are given at all, every eligible
customer of the tenant is selected. Callers that expose this (the composer
preview, ``count``) should make the broad default visible to the user.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .entities.customer import CustomersTable
from .logger import get_logger
from .models import RecipientFilters, RecipientSource, ResolvedRecipient
from .segments import SegmentFilter
from .sql import expand_in
from .suppression import SuppressionLedger
from .validation import is_valid_email_syntax, normalize_email

if TYPE_CHECKING:
    from .dispatch_db import DispatchDb

logger = get_logger("RecipientResolver")


def normalize_recipient_filters(raw: Any) -> RecipientFilters:
    """Accept a RecipientFilters, a dict (camelCase or snake_case) or None."""
    if isinstance(raw, RecipientFilters):
        return raw
    if raw is None:
        return RecipientFilters()
    return RecipientFilters.model_validate(raw)


def _display_name(row: dict[str, Any]) -> str | None:
    if row.get("company"):
        return row["company"]
    full = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
    return full or None


def _merge_fields(row: dict[str, Any], email: str) -> dict[str, str]:
    return {
        "firstName": row.get("first_name") or "",
        "lastName": row.get("last_name") or "",
        "company": row.get("company") or "",
        "email": email,
        "city": row.get("city") or "",
        "phone": row.get("phone") or "",
    }


class RecipientResolver:
    """Resolves :class:`RecipientFilters` for one tenant against the CRM tables."""

    def __init__(self, db: DispatchDb, ledger: SuppressionLedger | None = None):
        self.db = db
        self.ledger = ledger or SuppressionLedger(db)

    async def resolve(self, org_id: str, filters: Any) -> list[ResolvedRecipient]:
        filters = normalize_recipient_filters(filters)
        by_email: dict[str, ResolvedRecipient] = {}

        matched = await self._filter_customers(org_id, filters)
        explicit = await self.db.customers.eligible_by_ids(org_id, filters.customer_ids)
        for row in [*matched, *explicit]:
            email = normalize_email(row.get("email"))
            if not is_valid_email_syntax(email) or email in by_email:
                continue
            by_email[email] = ResolvedRecipient(
                customer_id=row["id"],
                source=RecipientSource.CUSTOMER,
                email=email,
                display_name=_display_name(row),
                merge_fields=_merge_fields(row, email),
            )

        for raw in filters.raw_emails:
            email = normalize_email(raw)
            if not is_valid_email_syntax(email):
                logger.debug("Dropping malformed manual address %r", raw)
                continue
            if email in by_email:
                continue
            by_email[email] = ResolvedRecipient(
                source=RecipientSource.MANUAL_EMAIL,
                email=email,
                merge_fields=_merge_fields({}, email),
            )

        emails = list(by_email)
        blocked = await self.ledger.suppressed_subset(org_id, emails)
        # Unsubscribes recorded on the customer record but not in the ledger
        blocked |= await self.db.customers.unsubscribed_subset(org_id, emails)
        return [by_email[email] for email in sorted(by_email) if email not in blocked]

    async def count(self, org_id: str, filters: Any) -> int:
        return len(await self.resolve(org_id, filters))

    async def _filter_customers(
        self, org_id: str, filters: RecipientFilters
    ) -> list[dict[str, Any]]:
        if not filters.has_criteria and not filters.is_broad:
            return []

        clauses = [CustomersTable.eligible_clause("c")]
        params: dict[str, Any] = {"org_id": org_id}

        if filters.cities:
            in_sql, in_params = expand_in("city", filters.cities)
            clauses.append(f"c.city IN {in_sql}")
            params.update(in_params)
        if filters.categories:
            in_sql, in_params = expand_in("cat", filters.categories)
            clauses.append(f"c.category IN {in_sql}")
            params.update(in_params)
        if filters.tags:
            in_sql, in_params = expand_in("tag", filters.tags)
            clauses.append(
                "EXISTS (SELECT 1 FROM customer_tags ct WHERE ct.customer_id = c.id "
                f"AND ct.tag_id IN {in_sql})"
            )
            params.update(in_params)
        if filters.segments:
            clause, seg_params = await self._segment_clause(org_id, filters.segments)
            clauses.append(clause)
            params.update(seg_params)

        return await self.db.customers.fetch_all(
            f"SELECT c.* FROM customers c WHERE {' AND '.join(clauses)}", params
        )

    async def _segment_clause(
        self, org_id: str, segment_ids: list[str]
    ) -> tuple[str, dict[str, Any]]:
        """Union of each segment's predicate and of the segments' static members."""
        alternatives: list[str] = []
        params: dict[str, Any] = {}
        for i, segment in enumerate(await self.db.segments.get_many(org_id, segment_ids)):
            rendered = SegmentFilter.parse(segment.get("filters")).to_sql(prefix=f"seg{i}", alias="c")
            if rendered is None:
                continue
            clause, seg_params = rendered
            alternatives.append(clause)
            params.update(seg_params)

        in_sql, in_params = expand_in("segid", segment_ids)
        params.update(in_params)
        alternatives.append(
            "c.id IN (SELECT sc.customer_id FROM segment_customers sc "
            "JOIN segments s ON s.id = sc.segment_id "
            f"WHERE s.org_id = :org_id AND sc.segment_id IN {in_sql})"
        )
        return "(" + " OR ".join(alternatives) + ")", params


__all__ = ["RecipientResolver", "normalize_recipient_filters"]
