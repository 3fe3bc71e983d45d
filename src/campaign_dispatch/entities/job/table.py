# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email jobs table manager: the durable work queue.

Every state change is a single conditional UPDATE so that concurrent
processors racing on the same row resolve through the row count alone.
"""

from __future__ import annotations

import uuid
from typing import Any

from ...sql import Integer, String, Table

MAX_ERROR_LENGTH = 1000


class EmailJobsTable(Table):
    name = "email_jobs"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("campaign_id", String, nullable=False)
        c.column("status", String, default="'queued'")
        c.column("run_at", Integer)
        c.column("attempts", Integer, default=0)
        c.column("max_attempts", Integer, default=3)
        c.column("locked_at", Integer)
        c.column("locked_by", String)
        c.column("last_error", String)
        c.column("created_at", Integer)
        c.column("updated_at", Integer)
        c.index("idx_email_jobs_due", "status", "run_at")
        c.index("idx_email_jobs_campaign", "campaign_id", "status")

    async def create(
        self, org_id: str, campaign_id: str, run_at: int, now: int, max_attempts: int = 3
    ) -> dict[str, Any]:
        record = {
            "id": f"job_{uuid.uuid4().hex}",
            "org_id": org_id,
            "campaign_id": campaign_id,
            "status": "queued",
            "run_at": run_at,
            "attempts": 0,
            "max_attempts": max_attempts,
            "created_at": now,
            "updated_at": now,
        }
        await self.insert(record)
        return record

    async def get(self, job_id: str) -> dict[str, Any] | None:
        return await self.select_one(where={"id": job_id})

    async def find_open(self, campaign_id: str) -> dict[str, Any] | None:
        """The campaign's queued or processing job, if any."""
        return await self.fetch_one(
            "SELECT * FROM email_jobs WHERE campaign_id = :campaign_id "
            "AND status IN ('queued', 'processing') ORDER BY created_at LIMIT 1",
            {"campaign_id": campaign_id},
        )

    async def latest_for_campaign(self, campaign_id: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            "SELECT * FROM email_jobs WHERE campaign_id = :campaign_id "
            "ORDER BY created_at DESC LIMIT 1",
            {"campaign_id": campaign_id},
        )

    async def due_candidates(self, now: int, stale_before: int, limit: int) -> list[dict[str, Any]]:
        """Queued jobs due now, oldest first, followed by abandoned leases."""
        queued = await self.fetch_all(
            "SELECT * FROM email_jobs WHERE status = 'queued' AND run_at <= :now "
            "ORDER BY run_at, created_at LIMIT :limit",
            {"now": now, "limit": limit},
        )
        if len(queued) >= limit:
            return queued
        stale = await self.fetch_all(
            "SELECT * FROM email_jobs WHERE status = 'processing' "
            "AND (locked_at IS NULL OR locked_at < :stale_before) "
            "ORDER BY locked_at, created_at LIMIT :limit",
            {"stale_before": stale_before, "limit": limit - len(queued)},
        )
        return queued + stale

    async def try_claim(
        self, job: dict[str, Any], worker_id: str, now: int, stale_before: int
    ) -> bool:
        """Compare-and-set the job to ``processing`` under ``worker_id``.

        The predicate re-checks the state the candidate was read in, so only
        one of several racing workers sees a row count of 1.
        """
        params = {"id": job["id"], "now": now, "worker": worker_id}
        if job["status"] == "queued":
            predicate = "status = 'queued' AND run_at <= :now"
        else:
            predicate = (
                "status = 'processing' AND (locked_at IS NULL OR locked_at < :stale_before)"
            )
            params["stale_before"] = stale_before
        rowcount = await self.execute(
            "UPDATE email_jobs SET status = 'processing', locked_at = :now, "
            f"locked_by = :worker, updated_at = :now WHERE id = :id AND {predicate}",
            params,
        )
        return rowcount == 1

    async def renew_lease(self, job_id: str, worker_id: str, now: int) -> bool:
        """Refresh ``locked_at`` while still holding the lease."""
        rowcount = await self.execute(
            "UPDATE email_jobs SET locked_at = :now, updated_at = :now "
            "WHERE id = :id AND status = 'processing' AND locked_by = :worker",
            {"id": job_id, "now": now, "worker": worker_id},
        )
        return rowcount == 1

    async def release(self, job_id: str, run_at: int, now: int) -> int:
        """Put a processing job back in the queue for a later tick."""
        return await self.execute(
            "UPDATE email_jobs SET status = 'queued', run_at = :run_at, locked_at = NULL, "
            "locked_by = NULL, updated_at = :now WHERE id = :id AND status = 'processing'",
            {"id": job_id, "run_at": run_at, "now": now},
        )

    async def complete(self, job_id: str, now: int) -> int:
        return await self.execute(
            "UPDATE email_jobs SET status = 'completed', locked_at = NULL, locked_by = NULL, "
            "updated_at = :now WHERE id = :id AND status = 'processing'",
            {"id": job_id, "now": now},
        )

    async def record_error(self, job_id: str, error: str, now: int) -> dict[str, Any] | None:
        """Count one failed processing run; fail the job once attempts are spent.

        Below ``max_attempts`` the lease is left in place so the job is picked
        up again once it expires. Returns the updated row.
        """
        await self.execute(
            "UPDATE email_jobs SET attempts = attempts + 1, last_error = :error, "
            "updated_at = :now WHERE id = :id",
            {"id": job_id, "error": error[:MAX_ERROR_LENGTH], "now": now},
        )
        await self.execute(
            "UPDATE email_jobs SET status = 'failed', locked_at = NULL, locked_by = NULL "
            "WHERE id = :id AND status = 'processing' AND attempts >= max_attempts",
            {"id": job_id},
        )
        return await self.get(job_id)

    async def fail(self, job_id: str, error: str, now: int) -> int:
        return await self.execute(
            "UPDATE email_jobs SET status = 'failed', attempts = attempts + 1, "
            "last_error = :error, locked_at = NULL, locked_by = NULL, updated_at = :now "
            "WHERE id = :id AND status IN ('queued', 'processing')",
            {"id": job_id, "error": error[:MAX_ERROR_LENGTH], "now": now},
        )

    async def cancel(self, job_id: str, now: int) -> int:
        return await self.execute(
            "UPDATE email_jobs SET status = 'cancelled', locked_at = NULL, locked_by = NULL, "
            "updated_at = :now WHERE id = :id AND status IN ('queued', 'processing')",
            {"id": job_id, "now": now},
        )

    async def cancel_queued_for_campaign(self, campaign_id: str, now: int) -> int:
        """Cancel the campaign's idle jobs; a processing job stops at its next batch check."""
        return await self.execute(
            "UPDATE email_jobs SET status = 'cancelled', updated_at = :now "
            "WHERE campaign_id = :campaign_id AND status = 'queued'",
            {"campaign_id": campaign_id, "now": now},
        )

    async def requeue(self, job_id: str, run_at: int, now: int) -> int:
        """Reopen a finished job (retry of failed recipients reuses the same job)."""
        return await self.execute(
            "UPDATE email_jobs SET status = 'queued', run_at = :run_at, attempts = 0, "
            "last_error = NULL, locked_at = NULL, locked_by = NULL, updated_at = :now "
            "WHERE id = :id AND status IN ('completed', 'failed', 'cancelled')",
            {"id": job_id, "run_at": run_at, "now": now},
        )

    async def reschedule(self, job_id: str, run_at: int, now: int) -> int:
        """Move a queued job's ``run_at``."""
        return await self.execute(
            "UPDATE email_jobs SET run_at = :run_at, updated_at = :now "
            "WHERE id = :id AND status = 'queued'",
            {"id": job_id, "run_at": run_at, "now": now},
        )

    async def list_for_org(self, org_id: str, status: str | None = None) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"org_id": org_id}
        if status:
            where["status"] = status
        return await self.select(where=where, order_by="created_at DESC")


__all__ = ["EmailJobsTable", "MAX_ERROR_LENGTH"]
