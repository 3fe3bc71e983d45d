# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient delivery state machine.

Each call to :meth:`DeliveryStateMachine.attempt` drives one campaign
recipient row through at most one transport call:

- ``pending|failed -> sent``: terminal success.
- ``pending|failed -> failed`` with ``next_retry_at`` set: retryable failure.
- ``pending|failed -> failed`` with ``next_retry_at`` NULL: retries spent,
  or the recipient's domain has no mail exchanger (no attempt counted).
- ``pending|failed -> bounced``: hard bounce or rejected address; the
  address is suppressed for the tenant in the same transaction.

Every write is guarded on the row still being open, so a row already
``sent`` or ``bounced`` is never overwritten, and every attempt appends a
``delivery_events`` row.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .logger import get_logger
from .models import FailureCategory, RecipientStatus, SuppressionReason
from .rendering import render_message
from .retry import RetryStrategy, classify_exception, classify_outcome
from .transport import Bounced, Delivered, DeliveryOutcome, TransientError, Transport

if TYPE_CHECKING:
    from .config_loader import DispatchConfig
    from .dispatch_db import DispatchDb
    from .prometheus import DispatchMetrics
    from .validation import MxValidator

logger = get_logger("DeliveryStateMachine")

SUPPRESSING_CATEGORIES = {
    FailureCategory.HARD_BOUNCE: SuppressionReason.HARD_BOUNCE,
    FailureCategory.INVALID_ADDRESS: SuppressionReason.INVALID_ADDRESS,
}


@dataclass(frozen=True)
class AttemptResult:
    """What one attempt did to a recipient row.

    ``applied`` is False when the row had already left the open states and
    the write was discarded.
    """

    recipient_id: str
    status: RecipientStatus
    category: FailureCategory | None = None
    next_retry_at: int | None = None
    delivered: bool = False
    applied: bool = True


class DeliveryStateMachine:
    def __init__(
        self,
        db: DispatchDb,
        transport: Transport,
        config: DispatchConfig,
        mx_validator: MxValidator | None = None,
        metrics: DispatchMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.transport = transport
        self.config = config
        self.mx_validator = mx_validator if config.mx_check else None
        self.metrics = metrics
        self.clock = clock

    async def attempt(
        self, recipient: dict[str, Any], campaign: dict[str, Any], strategy: RetryStrategy
    ) -> AttemptResult:
        """Run one delivery attempt for ``recipient`` and persist its outcome.

        An exception raised while checking the domain, rendering or sending
        is classified and recorded on this row like any other failed attempt.
        Only a failure to persist the outcome reaches the caller.
        """
        now = int(self.clock())
        mx_fields: dict[str, Any] = {}
        no_mx_at: int | None = None
        outcome: DeliveryOutcome | None = None
        try:
            if self.mx_validator is not None and recipient.get("mx_valid") is None:
                mx = await self.mx_validator.check(recipient["domain"])
                if mx.valid is False:
                    no_mx_at = mx.checked_at or now
                elif mx.valid is True:
                    mx_fields = {"mx_valid": 1, "dns_checked_at": mx.checked_at or now}

            if no_mx_at is None:
                message = render_message(
                    campaign,
                    recipient,
                    self.config.unsubscribe_base_url,
                    self.config.unsubscribe_secret,
                    tracking_base_url=self.config.tracking_base_url,
                )
                outcome = await self.transport.send(recipient["email"], message)
        except Exception as exc:
            category = classify_exception(exc)
            detail = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Attempt raised for recipient %s (%s): %s", recipient["id"], category.value, detail
            )
        else:
            if no_mx_at is not None:
                return await self._mark_no_mx(recipient, now, no_mx_at)
            category = classify_outcome(outcome)
            detail = getattr(outcome, "detail", "") or ""

        attempt_count = int(recipient.get("attempt_count") or 0) + 1
        values: dict[str, Any] = {
            "attempt_count": attempt_count,
            "last_attempt_at": now,
            **mx_fields,
        }

        if isinstance(outcome, Delivered):
            return await self._mark_sent(recipient, values, outcome, now)
        if category in SUPPRESSING_CATEGORIES:
            return await self._mark_bounced(recipient, values, category, detail, now)
        return await self._mark_failed(
            recipient, values, category, detail, now, strategy, outcome
        )

    async def _mark_sent(
        self, recipient: dict[str, Any], values: dict[str, Any], outcome: Delivered, now: int
    ) -> AttemptResult:
        values.update(
            status=RecipientStatus.SENT.value,
            sent_at=now,
            message_id=outcome.message_id,
            next_retry_at=None,
            failure_category=None,
            failure_reason_detailed=None,
        )
        applied = await self._commit(
            recipient,
            values,
            "sent",
            now,
            attempt=values["attempt_count"],
            detail=outcome.message_id,
        )
        if applied and self.metrics:
            self.metrics.inc_sent(recipient["org_id"])
        self._log_activity(recipient, "sent")
        return AttemptResult(
            recipient["id"], RecipientStatus.SENT, delivered=True, applied=applied
        )

    async def _mark_bounced(
        self,
        recipient: dict[str, Any],
        values: dict[str, Any],
        category: FailureCategory,
        detail: str,
        now: int,
    ) -> AttemptResult:
        reason = SUPPRESSING_CATEGORIES[category]
        values.update(
            status=RecipientStatus.BOUNCED.value,
            failure_category=category.value,
            failure_reason_detailed=detail[:1000] or None,
            bounce_type="hard" if category == FailureCategory.HARD_BOUNCE else None,
            next_retry_at=None,
        )
        suppression = self.db.suppressions.add_statement(
            recipient["org_id"],
            recipient["email_normalized"],
            reason.value,
            recipient["campaign_id"],
            now,
        )
        rowcounts = await self.db.adapter.execute_atomic(
            [
                self.db.recipients.transition_statement(recipient["id"], values),
                suppression,
                self.db.delivery_events.add_statement(
                    recipient,
                    "bounced",
                    now,
                    attempt=values["attempt_count"],
                    category=category.value,
                    detail=detail,
                ),
            ]
        )
        applied = rowcounts[0] == 1
        if self.metrics:
            if applied:
                self.metrics.inc_bounced(recipient["org_id"])
            if rowcounts[1] == 1:
                self.metrics.inc_suppressed(reason.value)
        logger.info(
            "Recipient %s bounced (%s); %s suppressed for org %s",
            recipient["id"], category.value, recipient["email_normalized"], recipient["org_id"],
        )
        self._log_activity(recipient, "bounced", detail)
        return AttemptResult(recipient["id"], RecipientStatus.BOUNCED, category, applied=applied)

    async def _mark_failed(
        self,
        recipient: dict[str, Any],
        values: dict[str, Any],
        category: FailureCategory,
        detail: str,
        now: int,
        strategy: RetryStrategy,
        outcome: DeliveryOutcome | None,
    ) -> AttemptResult:
        delay = strategy.next_retry_delay(category, values["attempt_count"])
        next_retry_at = now + delay if delay is not None else None
        values.update(
            status=RecipientStatus.FAILED.value,
            failure_category=category.value,
            failure_reason_detailed=detail[:1000] or None,
            next_retry_at=next_retry_at,
        )
        if isinstance(outcome, Bounced):
            values["bounce_type"] = outcome.bounce_type
        applied = await self._commit(
            recipient,
            values,
            "deferred" if next_retry_at else "failed",
            now,
            attempt=values["attempt_count"],
            category=category.value,
            detail=detail,
        )
        if applied and self.metrics:
            self.metrics.inc_failed(recipient["org_id"], category.value)
            if isinstance(outcome, TransientError) and outcome.rate_limited:
                self.metrics.inc_rate_limited(recipient["org_id"])
        self._log_activity(recipient, "deferred" if next_retry_at else "failed", detail, next_retry_at)
        return AttemptResult(
            recipient["id"], RecipientStatus.FAILED, category, next_retry_at, applied=applied
        )

    async def _mark_no_mx(
        self, recipient: dict[str, Any], now: int, checked_at: int
    ) -> AttemptResult:
        """Terminal ``invalid_address`` without a send, a suppression or a counted attempt."""
        values = {
            "status": RecipientStatus.FAILED.value,
            "failure_category": FailureCategory.INVALID_ADDRESS.value,
            "failure_reason_detailed": f"No mail exchanger for domain {recipient['domain']}",
            "next_retry_at": None,
            "mx_valid": 0,
            "dns_checked_at": checked_at,
        }
        applied = await self._commit(
            recipient,
            values,
            "mx_invalid",
            now,
            category=FailureCategory.INVALID_ADDRESS.value,
            detail=values["failure_reason_detailed"],
        )
        if applied and self.metrics:
            self.metrics.inc_failed(recipient["org_id"], FailureCategory.INVALID_ADDRESS.value)
        self._log_activity(recipient, "failed", values["failure_reason_detailed"])
        return AttemptResult(
            recipient["id"], RecipientStatus.FAILED, FailureCategory.INVALID_ADDRESS, applied=applied
        )

    async def _commit(
        self,
        recipient: dict[str, Any],
        values: dict[str, Any],
        event_type: str,
        now: int,
        **event: Any,
    ) -> bool:
        """Apply the row transition and its history event in one transaction."""
        rowcounts = await self.db.adapter.execute_atomic(
            [
                self.db.recipients.transition_statement(recipient["id"], values),
                self.db.delivery_events.add_statement(recipient, event_type, now, **event),
            ]
        )
        if rowcounts[0] != 1:
            logger.debug("Recipient %s no longer open; %s discarded", recipient["id"], event_type)
            return False
        return True

    def _log_activity(
        self,
        recipient: dict[str, Any],
        status: str,
        reason: str | None = None,
        retry_at: int | None = None,
    ) -> None:
        if not self.config.log_delivery_activity:
            return
        match status:
            case "sent":
                logger.info(
                    "Delivery succeeded for recipient %s (campaign=%s)",
                    recipient["id"], recipient["campaign_id"],
                )
            case "deferred":
                retry_repr = (
                    datetime.fromtimestamp(float(retry_at), timezone.utc)
                    .isoformat()
                    .replace("+00:00", "Z")
                    if retry_at
                    else "-"
                )
                logger.info(
                    "Delivery deferred for recipient %s (campaign=%s) until %s: %s",
                    recipient["id"], recipient["campaign_id"], retry_repr, reason or "-",
                )
            case _:
                logger.warning(
                    "Delivery %s for recipient %s (campaign=%s): %s",
                    status, recipient["id"], recipient["campaign_id"], reason or "unknown error",
                )


__all__ = ["AttemptResult", "DeliveryStateMachine"]
