# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the campaign job queue: enqueue, claim, leases and operator actions."""

import pytest

from campaign_dispatch.errors import (
    CampaignNotFoundError,
    CampaignStateError,
    JobNotFoundError,
    NoRecipientsError,
)
from campaign_dispatch.job_queue import JobQueue
from campaign_dispatch.recipients import RecipientResolver
from tests.helpers import T0


@pytest.fixture
def queue(db, config, clock):
    return JobQueue(db, RecipientResolver(db), config, clock=clock)


@pytest.fixture
def seeded(make_customer, make_campaign):
    """Three Athens customers and a campaign targeting them."""

    async def _seed(**campaign_fields):
        for name in ("alpha", "beta", "gamma"):
            await make_customer(email=f"{name}@example.com", city="Athens")
        return await make_campaign(filters={"cities": ["Athens"]}, **campaign_fields)

    return _seed


class TestEnqueue:
    """Tests for enqueue_campaign()."""

    @pytest.mark.asyncio
    async def test_snapshots_recipients_and_sets_sending(self, db, queue, seeded):
        """An immediate enqueue snapshots recipients and marks the campaign sending."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)

        assert job["id"].startswith("job_")
        assert job["status"] == "queued"
        assert job["created_at"] == T0
        assert job["run_at"] == T0
        rows = await db.recipients.list_for_campaign(cid)
        assert [r["email"] for r in rows] == ["alpha@example.com", "beta@example.com", "gamma@example.com"]
        assert all(r["id"].startswith("rcp_") and r["status"] == "pending" for r in rows)
        assert {r["created_at"] for r in rows} == {T0}
        campaign = await db.campaigns.get(cid)
        assert campaign["status"] == "sending"
        assert campaign["total_recipients"] == 3

    @pytest.mark.asyncio
    async def test_future_run_at_schedules(self, db, queue, seeded):
        """A future run_at leaves the campaign scheduled."""
        cid = await seeded()
        await queue.enqueue_campaign("org1", cid, run_at=T0 + 3600)
        campaign = await db.campaigns.get(cid)
        assert campaign["status"] == "scheduled"
        assert campaign["scheduled_at"] == T0 + 3600

    @pytest.mark.asyncio
    async def test_second_enqueue_reuses_open_job(self, db, queue, seeded, make_customer):
        """Re-enqueueing returns the same job and does not re-snapshot."""
        cid = await seeded()
        first = await queue.enqueue_campaign("org1", cid, run_at=T0 + 60)
        await make_customer(email="late@example.com", city="Athens")

        second = await queue.enqueue_campaign("org1", cid, run_at=T0 + 120)

        assert second["id"] == first["id"]
        assert second["run_at"] == T0 + 120
        assert await db.recipients.count(where={"campaign_id": cid}) == 3
        assert len(await db.jobs.list_for_org("org1")) == 1

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, queue):
        """A campaign of another tenant is not found."""
        with pytest.raises(CampaignNotFoundError):
            await queue.enqueue_campaign("org1", "missing")

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, queue, seeded):
        """A campaign cannot be enqueued under the wrong org."""
        cid = await seeded()
        with pytest.raises(CampaignNotFoundError):
            await queue.enqueue_campaign("org2", cid)

    @pytest.mark.asyncio
    async def test_empty_resolution_raises(self, db, queue, make_campaign):
        """No deliverable recipient means no job."""
        cid = await make_campaign(filters={"cities": ["Nowhere"]})
        with pytest.raises(NoRecipientsError):
            await queue.enqueue_campaign("org1", cid)
        assert await db.jobs.find_open(cid) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["sent", "cancelled"])
    async def test_closed_campaign_rejected(self, queue, make_campaign, status):
        """Sent and cancelled campaigns cannot be enqueued."""
        cid = await make_campaign(status=status)
        with pytest.raises(CampaignStateError):
            await queue.enqueue_campaign("org1", cid)


class TestClaim:
    """Tests for claiming and leases."""

    @pytest.mark.asyncio
    async def test_claims_due_job(self, queue, seeded):
        """A due queued job is claimed by the worker."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)
        claimed = await queue.claim_next_due("w1")
        assert claimed["id"] == job["id"]
        assert claimed["status"] == "processing"
        assert claimed["locked_by"] == "w1"
        assert claimed["locked_at"] == T0

    @pytest.mark.asyncio
    async def test_future_job_is_not_due(self, queue, seeded, clock):
        """A job whose run_at is in the future waits."""
        cid = await seeded()
        await queue.enqueue_campaign("org1", cid, run_at=T0 + 60)
        assert await queue.claim_next_due("w1") is None
        clock.advance(60)
        assert await queue.claim_next_due("w1") is not None

    @pytest.mark.asyncio
    async def test_held_lease_is_not_reclaimed(self, queue, seeded):
        """A second worker cannot take a job under a fresh lease."""
        cid = await seeded()
        await queue.enqueue_campaign("org1", cid)
        assert await queue.claim_next_due("w1") is not None
        assert await queue.claim_next_due("w2") is None

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, queue, seeded, clock, config):
        """Once a lease is older than lease_timeout_seconds another worker takes over."""
        cid = await seeded()
        await queue.enqueue_campaign("org1", cid)
        await queue.claim_next_due("w1")

        clock.advance(config.lease_timeout_seconds)
        assert await queue.claim_next_due("w2") is None

        clock.advance(1)
        reclaimed = await queue.claim_next_due("w2")

        assert reclaimed["locked_by"] == "w2"
        assert await queue.renew(reclaimed["id"], "w1") is False
        assert await queue.renew(reclaimed["id"], "w2") is True

    @pytest.mark.asyncio
    async def test_lost_race_claims_nothing(self, db, queue, seeded):
        """A candidate already claimed by someone else is skipped."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)
        stale_copy = dict(job)
        assert await db.jobs.try_claim(stale_copy, "w1", T0, T0 - 900) is True
        assert await db.jobs.try_claim(stale_copy, "w2", T0, T0 - 900) is False

    @pytest.mark.asyncio
    async def test_release_complete_and_fail(self, db, queue, seeded):
        """release() requeues, complete() and fail() close the job."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)
        await queue.claim_next_due("w1")

        assert await queue.release(job["id"], T0 + 30) is True
        released = await db.jobs.get(job["id"])
        assert released["status"] == "queued"
        assert released["run_at"] == T0 + 30
        assert released["locked_by"] is None

        assert await queue.complete(job["id"]) is False
        await db.jobs.try_claim(released, "w1", T0 + 30, T0)
        assert await queue.complete(job["id"]) is True
        assert (await db.jobs.get(job["id"]))["status"] == "completed"
        assert await queue.fail(job["id"], "too late") is False

    @pytest.mark.asyncio
    async def test_record_error_fails_after_max_attempts(self, db, queue, seeded):
        """Unexpected errors keep the lease until the attempt budget is spent."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)
        await queue.claim_next_due("w1")

        first = await queue.record_error(job["id"], "boom 1")
        assert first["status"] == "processing"
        assert first["locked_by"] == "w1"
        await queue.record_error(job["id"], "boom 2")
        third = await queue.record_error(job["id"], "boom 3")

        assert third["status"] == "failed"
        assert third["attempts"] == 3
        assert third["last_error"] == "boom 3"


class TestOperatorActions:
    """Tests for cancel, pause, resume and retry."""

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, queue):
        """Cancelling a missing job raises."""
        with pytest.raises(JobNotFoundError):
            await queue.cancel("job_missing")

    @pytest.mark.asyncio
    async def test_cancel_campaign_cancels_queued_job(self, db, queue, seeded):
        """The campaign and its idle job are cancelled."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)
        result = await queue.cancel_campaign("org1", cid)
        assert result["jobs_cancelled"] == 1
        assert (await db.jobs.get(job["id"]))["status"] == "cancelled"
        assert (await db.campaigns.get(cid))["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, db, queue, seeded, clock):
        """Pause only from scheduled/sending; resume makes the job due now."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid, run_at=T0 + 3600)
        await queue.pause_campaign("org1", cid)
        assert (await db.campaigns.get(cid))["status"] == "paused"
        with pytest.raises(CampaignStateError):
            await queue.pause_campaign("org1", cid)

        clock.advance(10)
        result = await queue.resume_campaign("org1", cid)

        assert result["job_id"] == job["id"]
        assert (await db.jobs.get(job["id"]))["run_at"] == T0 + 10
        assert (await db.campaigns.get(cid))["status"] == "sending"

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, queue, seeded):
        """A campaign that is not paused cannot be resumed."""
        cid = await seeded()
        await queue.enqueue_campaign("org1", cid)
        with pytest.raises(CampaignStateError):
            await queue.resume_campaign("org1", cid)

    @pytest.mark.asyncio
    async def test_retry_failed_reuses_completed_job(self, db, queue, seeded):
        """Terminal failures go back to pending on the campaign's existing job."""
        cid = await seeded()
        job = await queue.enqueue_campaign("org1", cid)
        claimed = await queue.claim_next_due("w1")
        rows = await db.recipients.list_for_campaign(cid)
        await db.recipients.transition(rows[0]["id"], {"status": "sent"})
        await db.recipients.transition(rows[1]["id"], {"status": "failed", "attempt_count": 3})
        await db.recipients.transition(
            rows[2]["id"], {"status": "failed", "attempt_count": 1, "next_retry_at": T0 + 600}
        )
        await queue.complete(claimed["id"])
        await db.campaigns.set_status(cid, "sent")

        result = await queue.retry_failed("org1", cid)

        assert result == {"campaign_id": cid, "reset": 1, "job_id": job["id"]}
        reopened = await db.jobs.get(job["id"])
        assert reopened["status"] == "queued"
        assert (await db.recipients.get(rows[1]["id"]))["status"] == "pending"
        assert (await db.recipients.get(rows[1]["id"]))["attempt_count"] == 0
        assert (await db.recipients.get(rows[2]["id"]))["next_retry_at"] == T0 + 600
        assert (await db.campaigns.get(cid))["status"] == "sending"
        assert len(await db.jobs.list_for_org("org1")) == 1

    @pytest.mark.asyncio
    async def test_retry_with_nothing_failed(self, queue, seeded):
        """No terminal failures means nothing to do."""
        cid = await seeded()
        await queue.enqueue_campaign("org1", cid)
        assert (await queue.retry_failed("org1", cid))["reset"] == 0
