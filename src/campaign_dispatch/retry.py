# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Failure classification and retry/backoff policy.

Every failed attempt is classified into a :class:`FailureCategory`.
``hard_bounce`` and ``invalid_address`` never retry. The other categories
retry up to the policy's ``max_attempts`` with exponential backoff:

    delay(n) = min(max_delay, initial_delay * multiplier ** (n - 1))

where ``n`` is the number of attempts made so far. Policies come from
built-in defaults overlaid by ``email_retry_config`` rows: global rows
first, then the tenant's own rows.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import aiosmtplib

from .logger import get_logger
from .models import FailureCategory, RetryPolicy
from .transport import (
    Bounced,
    Delivered,
    DeliveryOutcome,
    RejectedAddress,
    TransientError,
    outcome_from_smtp_error,
)

if TYPE_CHECKING:
    from .dispatch_db import DispatchDb

logger = get_logger("RetryPolicy")

DEFAULT_POLICIES: dict[FailureCategory, RetryPolicy] = {
    FailureCategory.SOFT_BOUNCE: RetryPolicy(
        max_attempts=3, initial_delay_seconds=3600, backoff_multiplier=2.0, max_delay_seconds=86400
    ),
    FailureCategory.RATE_LIMITED: RetryPolicy(
        max_attempts=5, initial_delay_seconds=900, backoff_multiplier=2.0, max_delay_seconds=3600
    ),
    FailureCategory.TRANSPORT_ERROR: RetryPolicy(
        max_attempts=3, initial_delay_seconds=300, backoff_multiplier=2.0, max_delay_seconds=3600
    ),
    FailureCategory.UNKNOWN: RetryPolicy(
        max_attempts=3, initial_delay_seconds=1800, backoff_multiplier=1.5, max_delay_seconds=14400
    ),
}

# Older configuration rows used these names
CATEGORY_ALIASES = {
    "connection_failed": FailureCategory.TRANSPORT_ERROR,
    "deferred": FailureCategory.UNKNOWN,
}


def classify_outcome(outcome: DeliveryOutcome) -> FailureCategory | None:
    """Category of a transport outcome; None for a successful delivery."""
    if isinstance(outcome, Delivered):
        return None
    if isinstance(outcome, Bounced):
        if outcome.bounce_type == "hard":
            return FailureCategory.HARD_BOUNCE
        return FailureCategory.SOFT_BOUNCE
    if isinstance(outcome, RejectedAddress):
        return FailureCategory.INVALID_ADDRESS
    if isinstance(outcome, TransientError):
        if outcome.rate_limited:
            return FailureCategory.RATE_LIMITED
        if outcome.code is not None and 500 <= outcome.code < 600:
            return FailureCategory.UNKNOWN
        return FailureCategory.TRANSPORT_ERROR
    return FailureCategory.UNKNOWN


def classify_exception(exc: Exception) -> FailureCategory:
    """Category of an exception raised during a delivery attempt."""
    if isinstance(exc, (aiosmtplib.SMTPException, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return classify_outcome(outcome_from_smtp_error(exc))
    return FailureCategory.UNKNOWN


class RetryStrategy:
    """Resolved policies for one tenant."""

    def __init__(self, policies: dict[FailureCategory, RetryPolicy] | None = None):
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(
                {cat: pol for cat, pol in policies.items() if cat.retryable}
            )

    def policy_for(self, category: FailureCategory) -> RetryPolicy | None:
        if not category.retryable:
            return None
        return self.policies.get(category, DEFAULT_POLICIES[FailureCategory.UNKNOWN])

    def next_retry_delay(self, category: FailureCategory, attempt_count: int) -> int | None:
        """Seconds until the next attempt, or None when the row is out of retries.

        ``attempt_count`` includes the attempt that just failed.
        """
        policy = self.policy_for(category)
        if policy is None or attempt_count >= policy.max_attempts:
            return None
        return policy.delay_for(attempt_count)


class RetryConfigStore:
    """Loads tenant retry strategies from ``email_retry_config``."""

    def __init__(self, db: DispatchDb):
        self.db = db

    async def strategy_for(self, org_id: str) -> RetryStrategy:
        overrides: dict[FailureCategory, RetryPolicy] = {}
        for row in await self.db.retry_config.rows_for(org_id):
            name = row["category"]
            try:
                category = CATEGORY_ALIASES.get(name) or FailureCategory(name)
            except ValueError:
                logger.warning("Ignoring retry config for unknown category %r", name)
                continue
            if not category.retryable:
                continue
            overrides[category] = RetryPolicy(
                max_attempts=int(row["max_attempts"]),
                initial_delay_seconds=int(row["initial_delay_seconds"]),
                backoff_multiplier=float(row["backoff_multiplier"] or 1.0),
                max_delay_seconds=int(row["max_delay_seconds"]),
            )
        return RetryStrategy(overrides)


__all__ = [
    "DEFAULT_POLICIES",
    "RetryConfigStore",
    "RetryStrategy",
    "classify_exception",
    "classify_outcome",
]
