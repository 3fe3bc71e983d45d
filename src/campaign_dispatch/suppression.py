# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Suppression ledger: addresses a tenant must never mail again.

Addresses enter the ledger from hard bounces and invalid addresses (written
by the delivery engine), from unsubscribes and from operators. They leave
it only through :meth:`SuppressionLedger.remove`. Every lookup is keyed by
``(org_id, normalized email)``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .logger import get_logger
from .models import SuppressionReason
from .validation import normalize_email

if TYPE_CHECKING:
    from .dispatch_db import DispatchDb
    from .prometheus import DispatchMetrics

logger = get_logger("SuppressionLedger")


class SuppressionLedger:
    def __init__(
        self,
        db: DispatchDb,
        metrics: DispatchMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.metrics = metrics
        self.clock = clock

    async def is_suppressed(self, org_id: str, email: str) -> bool:
        return await self.db.suppressions.contains(org_id, normalize_email(email))

    async def suppressed_subset(self, org_id: str, emails: list[str]) -> set[str]:
        """Normalized addresses from ``emails`` that are suppressed for the tenant."""
        normalized = sorted({normalize_email(e) for e in emails if e})
        if not normalized:
            return set()
        return await self.db.suppressions.subset(org_id, normalized)

    async def suppress(
        self,
        org_id: str,
        email: str,
        reason: SuppressionReason | str = SuppressionReason.MANUAL,
        campaign_id: str | None = None,
    ) -> bool:
        """Add an address. Returns False if it was already suppressed (first reason is kept)."""
        reason = SuppressionReason(reason)
        email = normalize_email(email)
        added = await self.db.suppressions.add(
            org_id, email, reason.value, campaign_id, int(self.clock())
        )
        if added:
            logger.info("Suppressed %s for org %s (%s)", email, org_id, reason.value)
            if self.metrics:
                self.metrics.inc_suppressed(reason.value)
        return added

    async def unsubscribe(self, org_id: str, email: str, campaign_id: str | None = None) -> bool:
        """Record an unsubscribe and flag matching customer records.

        Returns True if the address was newly added to the ledger.
        """
        email = normalize_email(email)
        added = await self.suppress(org_id, email, SuppressionReason.UNSUBSCRIBE, campaign_id)
        updated = await self.db.customers.mark_unsubscribed(org_id, email)
        if updated:
            logger.debug("Marked %d customer(s) unsubscribed for %s", updated, email)
        return added

    async def remove(self, org_id: str, email: str) -> bool:
        removed = await self.db.suppressions.remove(org_id, normalize_email(email))
        if removed:
            logger.info("Removed suppression of %s for org %s", normalize_email(email), org_id)
        return removed

    async def get(self, org_id: str, email: str) -> dict[str, Any] | None:
        return await self.db.suppressions.get(org_id, normalize_email(email))

    async def list_entries(
        self, org_id: str, reason: SuppressionReason | str | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        reason_value = SuppressionReason(reason).value if reason else None
        return await self.db.suppressions.list_for_org(org_id, reason_value, limit)


__all__ = ["SuppressionLedger"]
