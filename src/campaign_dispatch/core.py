# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Time-budgeted campaign processor.

An external scheduler calls :meth:`CampaignDispatcher.run_due_jobs` on a
fixed interval. Each invocation claims up to ``max_jobs_per_run`` jobs one
after another and, for each, dispatches recipients in batches of
``concurrency`` concurrent sends until the job runs out of eligible
recipients, reaches ``max_items_per_run``, or the wall-clock budget is spent.
Budget, cancellation and pause are checked before every batch, never in the
middle of one: sends already dispatched complete and are recorded.

Every recipient outcome is persisted as soon as its send returns, so an
invocation cut short loses at most the sends in flight.

Example:
    One scheduler tick::

        dispatcher = CampaignDispatcher(config, transport=SmtpTransport(config.smtp))
        await dispatcher.init()
        summary = await dispatcher.run_due_jobs()
        await dispatcher.close()
"""

from __future__ import annotations

import asyncio
import os
import socket
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from .aggregates import DeliverabilityAggregates
from .config_loader import DispatchConfig
from .delivery import AttemptResult, DeliveryStateMachine
from .dispatch_db import DispatchDb
from .job_queue import JobQueue
from .logger import get_logger
from .models import CampaignStatus
from .prometheus import DispatchMetrics
from .rate_limit import RateLimiter
from .recipients import RecipientResolver
from .retry import RetryConfigStore, RetryStrategy
from .suppression import SuppressionLedger
from .tracking import EngagementTracker
from .transport import SmtpTransport, Transport
from .validation import MxValidator

logger = get_logger("CampaignDispatcher")

SEND_LOG_RETENTION_SECONDS = 86400


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class RunSummary:
    """Counts returned by one scheduler invocation."""

    processed: int = 0
    completed: int = 0
    partial: int = 0
    paused: int = 0
    cancelled: int = 0
    errors: int = 0
    sent: int = 0
    attempted: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class JobRunResult:
    """Outcome of one :meth:`CampaignDispatcher.process_one_job` call.

    ``outcome`` is one of ``completed``, ``partial``, ``paused``,
    ``cancelled``, ``lost`` (lease taken over) or ``error``.
    """

    job_id: str
    outcome: str
    attempted: int = 0
    sent: int = 0
    run_at: int | None = None


class CampaignDispatcher:
    """Wires the queue, resolver, ledger and delivery engine around one database.

    Args:
        config: Processor configuration.
        transport: Outbound transport; defaults to :class:`SmtpTransport`
            over ``config.smtp``.
        db: Database; defaults to one opened on ``config.db_path``.
        mx_validator: Domain validator; defaults to a DNS-backed one when
            ``config.mx_check`` is enabled.
        metrics: Prometheus collectors.
        clock: Epoch-seconds clock used for persisted timestamps.
        monotonic: Clock used for the invocation time budget.
        worker_id: Lease owner name; defaults to ``<hostname>:<pid>``.
    """

    def __init__(
        self,
        config: DispatchConfig,
        transport: Transport | None = None,
        *,
        db: DispatchDb | None = None,
        mx_validator: MxValidator | None = None,
        metrics: DispatchMetrics | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        worker_id: str | None = None,
    ):
        self.config = config
        self.db = db or DispatchDb(config.db_path)
        self.metrics = metrics or DispatchMetrics()
        self.clock = clock
        self.monotonic = monotonic
        self.worker_id = worker_id or default_worker_id()
        self._transport = transport

        self.ledger = SuppressionLedger(self.db, self.metrics, clock=clock)
        self.resolver = RecipientResolver(self.db, self.ledger)
        self.queue = JobQueue(self.db, self.resolver, config, clock=clock)
        self.retry_store = RetryConfigStore(self.db)
        self.rate_limiter = RateLimiter(self.db, clock=clock)
        self.aggregates = DeliverabilityAggregates(self.db)
        self.tracker = EngagementTracker(self.db, config, self.metrics, clock=clock)
        if mx_validator is None and config.mx_check:
            mx_validator = MxValidator(self.db, ttl=config.mx_cache_ttl_seconds, clock=clock)
        self.mx_validator = mx_validator
        self._delivery: DeliveryStateMachine | None = None

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = SmtpTransport(self.config.smtp, max_connections=self.config.concurrency)
        return self._transport

    @property
    def delivery(self) -> DeliveryStateMachine:
        if self._delivery is None:
            self._delivery = DeliveryStateMachine(
                self.db,
                self.transport,
                self.config,
                mx_validator=self.mx_validator,
                metrics=self.metrics,
                clock=self.clock,
            )
        return self._delivery

    async def init(self) -> None:
        """Create or migrate the schema."""
        await self.db.init_db()

    async def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()
        await self.db.close()

    # -------------------------------------------------------------------------
    # Scheduler entry point
    # -------------------------------------------------------------------------

    async def run_due_jobs(
        self, max_jobs: int | None = None, time_budget_ms: int | None = None
    ) -> RunSummary:
        """Process due jobs sequentially within one wall-clock budget.

        The first job is always claimed; later ones only while budget remains.
        """
        max_jobs = self.config.max_jobs_per_run if max_jobs is None else max(1, int(max_jobs))
        budget_ms = self.config.time_budget_ms if time_budget_ms is None else max(0, int(time_budget_ms))
        deadline = self.monotonic() + budget_ms / 1000.0
        summary = RunSummary()

        for index in range(max_jobs):
            if index > 0 and self.monotonic() >= deadline:
                break
            try:
                job = await self.queue.claim_next_due(self.worker_id)
            except Exception:
                logger.exception("Failed to claim a due job")
                summary.errors += 1
                break
            if job is None:
                break
            remaining_ms = max(0, int((deadline - self.monotonic()) * 1000))
            result = await self.process_one_job(job, remaining_ms)
            summary.processed += 1
            summary.attempted += result.attempted
            summary.sent += result.sent
            match result.outcome:
                case "completed":
                    summary.completed += 1
                case "paused":
                    summary.paused += 1
                case "cancelled":
                    summary.cancelled += 1
                case "error":
                    summary.errors += 1
                case _:
                    summary.partial += 1

        await self._housekeeping()
        if summary.processed:
            logger.info(
                "Run finished: %d job(s), %d completed, %d partial, %d sent of %d attempted",
                summary.processed, summary.completed, summary.partial, summary.sent, summary.attempted,
            )
        return summary

    # -------------------------------------------------------------------------
    # One job
    # -------------------------------------------------------------------------

    async def process_one_job(self, job: dict[str, Any], time_budget_ms: int) -> JobRunResult:
        """Advance one claimed job until it is done or the budget is spent.

        At least one batch is dispatched regardless of the budget, so repeated
        zero-budget calls still converge.
        """
        deadline = self.monotonic() + max(0, time_budget_ms) / 1000.0
        result = JobRunResult(job_id=job["id"], outcome="partial")
        try:
            return await self._process(job, deadline, result)
        except Exception as exc:
            logger.exception("Unexpected error processing job %s", job["id"])
            await self.queue.record_error(job["id"], f"{type(exc).__name__}: {exc}")
            self.metrics.inc_job("error")
            result.outcome = "error"
            return result

    async def _process(
        self, job: dict[str, Any], deadline: float, result: JobRunResult
    ) -> JobRunResult:
        campaign_id = job["campaign_id"]
        campaign = await self.db.campaigns.get(campaign_id)
        if campaign is None:
            await self.queue.fail(job["id"], f"Campaign {campaign_id} no longer exists")
            self.metrics.inc_job("failed")
            result.outcome = "error"
            return result

        stop = await self._stop_requested(job, campaign["status"], result)
        if stop is not None:
            return stop
        if campaign["status"] != CampaignStatus.SENDING.value:
            await self.db.campaigns.set_status(
                campaign_id,
                CampaignStatus.SENDING.value,
                only_from=(CampaignStatus.DRAFT.value, CampaignStatus.SCHEDULED.value),
            )

        strategy = await self.retry_store.strategy_for(job["org_id"])
        max_items = self.config.max_items_per_run
        deferred_until: int | None = None
        first_batch = True

        while result.attempted < max_items:
            if not first_batch:
                if self.monotonic() >= deadline:
                    logger.debug("Time budget spent on job %s", job["id"])
                    break
                status = await self.db.campaigns.status_of(campaign_id)
                stop = await self._stop_requested(job, status, result)
                if stop is not None:
                    return stop
                if not await self.queue.renew(job["id"], self.worker_id):
                    logger.warning("Lost lease on job %s; stopping", job["id"])
                    result.outcome = "lost"
                    await self._refresh_counters(campaign_id)
                    return result
            first_batch = False

            batch_size = min(self.config.concurrency, max_items - result.attempted)
            rows = await self.db.recipients.fetch_eligible(campaign_id, int(self.clock()), batch_size)
            if not rows:
                break

            allowed: list[dict[str, Any]] = []
            for row in rows:
                deferred_until = await self.rate_limiter.check_and_plan(
                    job["org_id"], self.config.rate_limits
                )
                if deferred_until is not None:
                    break
                allowed.append(row)

            outcomes = await asyncio.gather(
                *(self._dispatch(job["org_id"], row, campaign, strategy) for row in allowed),
                return_exceptions=True,
            )
            result.attempted += len(allowed)
            result.sent += sum(1 for o in outcomes if isinstance(o, AttemptResult) and o.delivered)
            # An attempt that could not persist its outcome fails the job run
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            if errors:
                raise errors[0]
            if deferred_until is not None:
                self.metrics.inc_rate_limited(job["org_id"])
                break

        await self._refresh_counters(campaign_id)
        return await self._settle(job, campaign_id, result, deferred_until)

    async def _dispatch(
        self,
        org_id: str,
        row: dict[str, Any],
        campaign: dict[str, Any],
        strategy: RetryStrategy,
    ) -> AttemptResult | None:
        """One recipient; the send slot is settled whatever the attempt does."""
        outcome: AttemptResult | None = None
        try:
            outcome = await self.delivery.attempt(row, campaign, strategy)
        finally:
            if outcome is not None and outcome.delivered:
                await self.rate_limiter.log_send(org_id)
            else:
                await self.rate_limiter.release_slot(org_id)
        return outcome

    async def _stop_requested(
        self, job: dict[str, Any], status: str | None, result: JobRunResult
    ) -> JobRunResult | None:
        """Settle the job when its campaign was cancelled or paused."""
        if status == CampaignStatus.CANCELLED.value:
            await self.db.jobs.cancel(job["id"], int(self.clock()))
            await self._refresh_counters(job["campaign_id"])
            logger.info("Campaign %s cancelled; job %s stopped", job["campaign_id"], job["id"])
            self.metrics.inc_job("cancelled")
            result.outcome = "cancelled"
            return result
        if status == CampaignStatus.PAUSED.value:
            run_at = int(self.clock()) + self.config.paused_recheck_seconds
            await self.queue.release(job["id"], run_at)
            await self._refresh_counters(job["campaign_id"])
            logger.info("Campaign %s paused; job %s released", job["campaign_id"], job["id"])
            self.metrics.inc_job("paused")
            result.outcome = "paused"
            result.run_at = run_at
            return result
        return None

    async def _settle(
        self,
        job: dict[str, Any],
        campaign_id: str,
        result: JobRunResult,
        deferred_until: int | None,
    ) -> JobRunResult:
        now = int(self.clock())
        outstanding = await self.db.recipients.outstanding(campaign_id)

        if outstanding["pending"] == 0 and outstanding["retrying"] == 0:
            await self.queue.complete(job["id"])
            await self.db.campaigns.set_status(
                campaign_id,
                CampaignStatus.SENT.value,
                only_from=(CampaignStatus.SENDING.value, CampaignStatus.SCHEDULED.value),
                extra={"sent_at": now},
            )
            logger.info("Job %s completed; campaign %s sent", job["id"], campaign_id)
            self.metrics.inc_job("completed")
            result.outcome = "completed"
            return result

        if deferred_until is not None:
            run_at = deferred_until
        elif outstanding["pending"] > 0:
            run_at = now
        else:
            # Only scheduled retries remain
            run_at = max(now, int(outstanding["next_retry_at"] or now))
        await self.queue.release(job["id"], run_at)
        logger.info(
            "Job %s released until %d (%d pending, %d awaiting retry)",
            job["id"], run_at, outstanding["pending"], outstanding["retrying"],
        )
        self.metrics.inc_job("partial")
        result.outcome = "partial"
        result.run_at = run_at
        return result

    async def _refresh_counters(self, campaign_id: str) -> None:
        counts = await self.db.recipients.status_counts(campaign_id)
        await self.db.campaigns.update_counters(
            campaign_id,
            total=sum(counts.values()),
            sent=counts["sent"],
            bounced=counts["bounced"],
            failed=counts["failed"],
        )

    async def _housekeeping(self) -> None:
        try:
            self.metrics.set_pending(await self.db.recipients.count_pending())
            await self.db.send_log.purge_before(int(self.clock()) - SEND_LOG_RETENTION_SECONDS)
        except Exception:
            logger.exception("Housekeeping after run failed")

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    async def enqueue_campaign(
        self, org_id: str, campaign_id: str, run_at: int | None = None
    ) -> dict[str, Any]:
        return await self.queue.enqueue_campaign(org_id, campaign_id, run_at)

    async def retry_failed(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        return await self.queue.retry_failed(org_id, campaign_id)

    async def pause_campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        return await self.queue.pause_campaign(org_id, campaign_id)

    async def resume_campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        return await self.queue.resume_campaign(org_id, campaign_id)

    async def cancel_campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        result = await self.queue.cancel_campaign(org_id, campaign_id)
        await self._refresh_counters(campaign_id)
        return result


__all__ = ["CampaignDispatcher", "JobRunResult", "RunSummary", "default_worker_id"]
