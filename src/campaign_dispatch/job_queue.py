# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable campaign job queue with expiring leases.

A campaign owns at most one open (queued or processing) job at a time;
sending, retrying and resuming the campaign all reuse it. Ownership of a
processing job is the ``(locked_at, locked_by)`` pair written by a single
conditional UPDATE. A lease older than ``lease_timeout_seconds`` is treated
as abandoned and can be claimed by any worker.

Job states::

    queued --claim--> processing --done--> completed
    processing --more work left--> queued (run_at advanced)
    processing --repeated unexpected errors--> failed
    queued|processing --cancel--> cancelled
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .errors import CampaignNotFoundError, CampaignStateError, JobNotFoundError, NoRecipientsError
from .logger import get_logger
from .models import CampaignStatus

if TYPE_CHECKING:
    from .config_loader import DispatchConfig
    from .dispatch_db import DispatchDb
    from .recipients import RecipientResolver

logger = get_logger("JobQueue")

# Candidates examined per claim before giving up to the next tick
CLAIM_CANDIDATES = 5
DEFAULT_JOB_MAX_ATTEMPTS = 3


class JobQueue:
    """Enqueue, claim and settle campaign send jobs.

    Attributes:
        db: Dispatch database.
        resolver: Recipient resolver used to snapshot recipients at enqueue time.
        config: Lease timeout and paused-campaign recheck delay.
        clock: Epoch-seconds clock.
    """

    def __init__(
        self,
        db: DispatchDb,
        resolver: RecipientResolver,
        config: DispatchConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.resolver = resolver
        self.config = config
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    async def _campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        campaign = await self.db.campaigns.get(campaign_id, org_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found for org {org_id}")
        return campaign

    async def enqueue_campaign(
        self, org_id: str, campaign_id: str, run_at: int | None = None
    ) -> dict[str, Any]:
        """Snapshot the campaign's recipients and queue its job.

        Calling this again while the campaign already has an open job returns
        that job (rescheduled when ``run_at`` is given and it is still queued).

        Raises:
            CampaignNotFoundError: No such campaign for the tenant.
            CampaignStateError: The campaign is already sent or cancelled.
            NoRecipientsError: Resolution produced no deliverable address.
        """
        now = self._now()
        campaign = await self._campaign(org_id, campaign_id)
        status = campaign["status"]
        if status == CampaignStatus.SENT.value:
            raise CampaignStateError(
                f"Campaign {campaign_id} was already sent; retry its failed recipients instead"
            )
        if status == CampaignStatus.CANCELLED.value:
            raise CampaignStateError(f"Campaign {campaign_id} is cancelled")

        run_at = now if run_at is None else int(run_at)
        job = await self.db.jobs.find_open(campaign_id)
        if job is not None:
            if job["status"] == "queued" and run_at != job["run_at"]:
                await self.db.jobs.reschedule(job["id"], run_at, now)
                job = await self.db.jobs.get(job["id"])
            logger.info("Campaign %s already has open job %s", campaign_id, job["id"])
            return job

        total = await self.db.recipients.count(where={"campaign_id": campaign_id})
        if total == 0:
            recipients = await self.resolver.resolve(org_id, campaign.get("recipient_filters") or {})
            if not recipients:
                raise NoRecipientsError(f"Campaign {campaign_id} resolved to no recipients")
            total = await self.db.recipients.insert_snapshot(org_id, campaign_id, recipients, now)

        job = await self.db.jobs.create(
            org_id, campaign_id, run_at, now, max_attempts=DEFAULT_JOB_MAX_ATTEMPTS
        )
        new_status = CampaignStatus.SCHEDULED if run_at > now else CampaignStatus.SENDING
        extra: dict[str, Any] = {"total_recipients": total}
        if new_status == CampaignStatus.SCHEDULED:
            extra["scheduled_at"] = run_at
        await self.db.campaigns.set_status(campaign_id, new_status.value, extra=extra)
        logger.info(
            "Queued job %s for campaign %s (%d recipients, run_at=%d)",
            job["id"], campaign_id, total, run_at,
        )
        return job

    async def claim_next_due(self, worker_id: str, now: int | None = None) -> dict[str, Any] | None:
        """Claim one due job (or an abandoned lease) for ``worker_id``.

        Losing the race for a candidate is silent; the next candidate is tried.
        Returns the claimed row or None.
        """
        now = self._now() if now is None else now
        stale_before = now - self.config.lease_timeout_seconds
        candidates = await self.db.jobs.due_candidates(now, stale_before, CLAIM_CANDIDATES)
        for candidate in candidates:
            if await self.db.jobs.try_claim(candidate, worker_id, now, stale_before):
                if candidate["status"] == "processing":
                    logger.warning(
                        "Reclaimed job %s from expired lease of %s",
                        candidate["id"], candidate.get("locked_by") or "-",
                    )
                return await self.db.jobs.get(candidate["id"])
            logger.debug("Lost claim race for job %s", candidate["id"])
        return None

    async def renew(self, job_id: str, worker_id: str) -> bool:
        return await self.db.jobs.renew_lease(job_id, worker_id, self._now())

    async def release(self, job_id: str, run_at: int | None = None) -> bool:
        now = self._now()
        return await self.db.jobs.release(job_id, now if run_at is None else run_at, now) == 1

    async def complete(self, job_id: str) -> bool:
        return await self.db.jobs.complete(job_id, self._now()) == 1

    async def fail(self, job_id: str, error: str) -> bool:
        logger.error("Job %s failed: %s", job_id, error)
        return await self.db.jobs.fail(job_id, error, self._now()) == 1

    async def record_error(self, job_id: str, error: str) -> dict[str, Any] | None:
        """Count an unexpected processing error against the job.

        The job keeps its lease and is reclaimed once the lease expires; it
        becomes ``failed`` only after ``max_attempts`` such errors.
        """
        job = await self.db.jobs.record_error(job_id, error, self._now())
        if job and job["status"] == "failed":
            logger.error("Job %s failed after %d errors: %s", job_id, job["attempts"], error)
        return job

    async def cancel(self, job_id: str) -> bool:
        job = await self.db.jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return await self.db.jobs.cancel(job_id, self._now()) == 1

    async def cancel_campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        """Cancel the campaign; a job mid-run stops at its next batch boundary."""
        campaign = await self._campaign(org_id, campaign_id)
        if campaign["status"] == CampaignStatus.SENT.value:
            raise CampaignStateError(f"Campaign {campaign_id} was already sent")
        await self.db.campaigns.set_status(campaign_id, CampaignStatus.CANCELLED.value)
        cancelled = await self.db.jobs.cancel_queued_for_campaign(campaign_id, self._now())
        logger.info("Cancelled campaign %s (%d queued job(s))", campaign_id, cancelled)
        return {"campaign_id": campaign_id, "status": CampaignStatus.CANCELLED.value, "jobs_cancelled": cancelled}

    async def pause_campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        await self._campaign(org_id, campaign_id)
        changed = await self.db.campaigns.set_status(
            campaign_id,
            CampaignStatus.PAUSED.value,
            only_from=(CampaignStatus.SCHEDULED.value, CampaignStatus.SENDING.value),
        )
        if not changed:
            status = await self.db.campaigns.status_of(campaign_id)
            raise CampaignStateError(f"Campaign {campaign_id} cannot be paused from {status}")
        logger.info("Paused campaign %s", campaign_id)
        return {"campaign_id": campaign_id, "status": CampaignStatus.PAUSED.value}

    async def resume_campaign(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        """Resume a paused campaign and make its job due immediately."""
        await self._campaign(org_id, campaign_id)
        changed = await self.db.campaigns.set_status(
            campaign_id, CampaignStatus.SENDING.value, only_from=(CampaignStatus.PAUSED.value,)
        )
        if not changed:
            status = await self.db.campaigns.status_of(campaign_id)
            raise CampaignStateError(f"Campaign {campaign_id} is not paused ({status})")
        now = self._now()
        job = await self.db.jobs.find_open(campaign_id)
        if job is None:
            job = await self.db.jobs.create(
                org_id, campaign_id, now, now, max_attempts=DEFAULT_JOB_MAX_ATTEMPTS
            )
        elif job["status"] == "queued":
            await self.db.jobs.reschedule(job["id"], now, now)
        logger.info("Resumed campaign %s (job %s)", campaign_id, job["id"])
        return {"campaign_id": campaign_id, "status": CampaignStatus.SENDING.value, "job_id": job["id"]}

    async def retry_failed(self, org_id: str, campaign_id: str) -> dict[str, Any]:
        """Return terminally failed recipients to ``pending`` and reopen the campaign's job.

        Bounced recipients stay bounced. The campaign keeps a single job: the
        open one if any, otherwise its latest job is requeued.
        """
        campaign = await self._campaign(org_id, campaign_id)
        if campaign["status"] == CampaignStatus.CANCELLED.value:
            raise CampaignStateError(f"Campaign {campaign_id} is cancelled")
        reset = await self.db.recipients.reset_failed(campaign_id)
        if reset == 0:
            return {"campaign_id": campaign_id, "reset": 0, "job_id": None}

        now = self._now()
        job = await self.db.jobs.find_open(campaign_id)
        if job is None:
            job = await self.db.jobs.latest_for_campaign(campaign_id)
            if job is None or not await self.db.jobs.requeue(job["id"], now, now):
                job = await self.db.jobs.create(
                    org_id, campaign_id, now, now, max_attempts=DEFAULT_JOB_MAX_ATTEMPTS
                )
        if campaign["status"] != CampaignStatus.PAUSED.value:
            await self.db.campaigns.set_status(campaign_id, CampaignStatus.SENDING.value)
        logger.info("Retrying %d failed recipient(s) of campaign %s on job %s", reset, campaign_id, job["id"])
        return {"campaign_id": campaign_id, "reset": reset, "job_id": job["id"]}


__all__ = ["JobQueue"]
