# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the campaign dispatcher.

This module exposes the dispatcher to the CRM and to the external scheduler:

- ``POST /jobs/run`` is the scheduler trigger (one time-budgeted invocation)
- campaign send / retry / pause / resume / cancel and statistics
- recipient resolution previews
- tenant deliverability views and suppression ledger management
- signed unsubscribe, open pixel and click redirect links
- health checks and Prometheus metrics

Every endpoint except ``/health`` and the signed ``/unsubscribe``,
``/track/open`` and ``/track/click`` links requires the ``X-API-Token``
header when a token is configured.

Example:
    Creating and running the API application::

        from campaign_dispatch.core import CampaignDispatcher
        from campaign_dispatch.api import create_app

        dispatcher = CampaignDispatcher(config)
        app = create_app(dispatcher, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import base64
import secrets
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .core import CampaignDispatcher
from .errors import (
    CampaignNotFoundError,
    CampaignStateError,
    DispatchError,
    InvalidTrackingLinkError,
    JobNotFoundError,
    NoRecipientsError,
)
from .logger import get_logger
from .models import SuppressionCreate, SuppressionReason
from .rendering import verify_unsubscribe_signature

logger = get_logger("DispatchAPI")

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

# Transparent 1x1 GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

ERROR_STATUS = {
    CampaignNotFoundError: status.HTTP_404_NOT_FOUND,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    CampaignStateError: status.HTTP_409_CONFLICT,
    NoRecipientsError: status.HTTP_400_BAD_REQUEST,
    InvalidTrackingLinkError: status.HTTP_400_BAD_REQUEST,
}


async def require_token(
    request: Request,
    api_token: str | None = Depends(api_key_scheme),
) -> None:
    """Validate the API token carried in the ``X-API-Token`` header."""
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or not secrets.compare_digest(api_token, expected):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""

    ok: bool
    error: str | None = None


class RunJobsPayload(BaseModel):
    """Scheduler trigger; omitted values fall back to configuration."""

    model_config = ConfigDict(extra="forbid")

    max_jobs: int | None = Field(default=None, ge=1, le=50)
    time_budget_ms: int | None = Field(default=None, ge=0)


class RunJobsResponse(CommandStatus):
    processed: int = 0
    completed: int = 0
    partial: int = 0
    paused: int = 0
    cancelled: int = 0
    errors: int = 0
    sent: int = 0
    attempted: int = 0


class SendCampaignPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    org_id: str
    run_at: int | None = Field(default=None, description="Epoch seconds; omitted means now")


class OrgPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    org_id: str


class ResolvePayload(BaseModel):
    """Recipient preview request. ``filters`` accepts snake_case or camelCase keys."""

    model_config = ConfigDict(extra="forbid")

    org_id: str
    filters: dict[str, Any] = Field(default_factory=dict)
    limit: int | None = Field(default=None, ge=1)


class UnsubscribePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    campaign_id: str | None = None


def create_app(
    dispatcher: CampaignDispatcher,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    dispatcher:
        The :class:`CampaignDispatcher` serving every request.
    api_token:
        Optional secret; when set, the ``X-API-Token`` header must match it.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Campaign Dispatch", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.dispatcher = dispatcher

    campaigns = APIRouter(prefix="/campaigns", tags=["campaigns"], dependencies=[auth_dependency])
    orgs = APIRouter(prefix="/orgs", tags=["orgs"], dependencies=[auth_dependency])
    recipients = APIRouter(prefix="/recipients", tags=["recipients"], dependencies=[auth_dependency])

    @api.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        code = next(
            (sc for cls, sc in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_400_BAD_REQUEST,
        )
        logger.info("%s %s -> %d %s", request.method, request.url.path, code, exc.code)
        return JSONResponse(
            status_code=code, content={"ok": False, "error": str(exc), "code": exc.code}
        )

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Liveness check; no authentication."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Export Prometheus metrics in text exposition format."""
        return Response(
            content=dispatcher.metrics.generate_latest(),
            media_type="text/plain; version=0.0.4",
        )

    @api.post("/jobs/run", response_model=RunJobsResponse, dependencies=[auth_dependency])
    async def run_jobs(payload: RunJobsPayload | None = None):
        """Scheduler trigger: process due jobs within one time budget."""
        payload = payload or RunJobsPayload()
        summary = await dispatcher.run_due_jobs(payload.max_jobs, payload.time_budget_ms)
        return RunJobsResponse(ok=True, **summary.as_dict())

    # -------------------------------------------------------------------------
    # Campaigns
    # -------------------------------------------------------------------------

    @campaigns.post("/{campaign_id}/send")
    async def send_campaign(campaign_id: str, payload: SendCampaignPayload):
        """Snapshot recipients and queue the campaign's job."""
        job = await dispatcher.enqueue_campaign(payload.org_id, campaign_id, payload.run_at)
        return {"ok": True, "job": job}

    @campaigns.post("/{campaign_id}/retry")
    async def retry_campaign(campaign_id: str, payload: OrgPayload):
        """Return terminally failed recipients to pending on the campaign's job."""
        return {"ok": True, **await dispatcher.retry_failed(payload.org_id, campaign_id)}

    @campaigns.post("/{campaign_id}/pause")
    async def pause_campaign(campaign_id: str, payload: OrgPayload):
        return {"ok": True, **await dispatcher.pause_campaign(payload.org_id, campaign_id)}

    @campaigns.post("/{campaign_id}/resume")
    async def resume_campaign(campaign_id: str, payload: OrgPayload):
        return {"ok": True, **await dispatcher.resume_campaign(payload.org_id, campaign_id)}

    @campaigns.post("/{campaign_id}/cancel")
    async def cancel_campaign(campaign_id: str, payload: OrgPayload):
        return {"ok": True, **await dispatcher.cancel_campaign(payload.org_id, campaign_id)}

    @campaigns.get("/{campaign_id}/stats")
    async def campaign_stats(campaign_id: str, org_id: str):
        return await dispatcher.aggregates.campaign_stats(campaign_id, org_id)

    # -------------------------------------------------------------------------
    # Recipient previews
    # -------------------------------------------------------------------------

    @recipients.post("/resolve")
    async def resolve_recipients(payload: ResolvePayload):
        """Recipients the filters would select right now (no snapshot is written)."""
        try:
            resolved = await dispatcher.resolver.resolve(payload.org_id, payload.filters)
        except ValueError as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc
        items = resolved[: payload.limit] if payload.limit else resolved
        return {
            "ok": True,
            "count": len(resolved),
            "recipients": [r.model_dump(mode="json") for r in items],
        }

    @recipients.post("/count")
    async def count_recipients(payload: ResolvePayload):
        try:
            count = await dispatcher.resolver.count(payload.org_id, payload.filters)
        except ValueError as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc
        return {"ok": True, "count": count}

    # -------------------------------------------------------------------------
    # Tenant views and suppression ledger
    # -------------------------------------------------------------------------

    @orgs.get("/{org_id}/health")
    async def tenant_health(org_id: str):
        return await dispatcher.aggregates.tenant_health(org_id)

    @orgs.get("/{org_id}/domains")
    async def domain_health(org_id: str, min_recipients: int = 3):
        return {"org_id": org_id, "domains": await dispatcher.aggregates.domain_health(org_id, min_recipients)}

    @orgs.get("/{org_id}/suppressions")
    async def list_suppressions(
        org_id: str, reason: SuppressionReason | None = None, limit: int | None = None
    ):
        entries = await dispatcher.ledger.list_entries(org_id, reason, limit)
        return {"org_id": org_id, "suppressions": entries}

    @orgs.post("/{org_id}/suppressions")
    async def add_suppression(org_id: str, payload: SuppressionCreate):
        added = await dispatcher.ledger.suppress(
            org_id, payload.email, payload.reason, payload.campaign_id
        )
        return {"ok": True, "email": payload.email, "added": added}

    @orgs.delete("/{org_id}/suppressions")
    async def remove_suppression(org_id: str, email: str):
        removed = await dispatcher.ledger.remove(org_id, email)
        if not removed:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"{email} is not suppressed")
        return {"ok": True, "email": email.strip().lower(), "removed": True}

    @orgs.post("/{org_id}/unsubscribe")
    async def unsubscribe(org_id: str, payload: UnsubscribePayload):
        added = await dispatcher.ledger.unsubscribe(org_id, payload.email, payload.campaign_id)
        return {"ok": True, "added": added}

    @api.get("/unsubscribe")
    async def unsubscribe_link(cid: str, rid: str, sig: str):
        """Target of the signed link placed in every campaign message."""
        if not verify_unsubscribe_signature(dispatcher.config.unsubscribe_secret, cid, rid, sig):
            raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid unsubscribe link")
        recipient = await dispatcher.db.recipients.get(rid)
        if recipient is None or recipient["campaign_id"] != cid:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Unknown recipient")
        await dispatcher.ledger.unsubscribe(recipient["org_id"], recipient["email_normalized"], cid)
        return {"ok": True, "unsubscribed": True}

    @api.get("/track/open")
    async def track_open(request: Request, cid: str = "", rid: str = "", sig: str = ""):
        """Open pixel. Always answers with the GIF; only signed hits are recorded."""
        try:
            await dispatcher.tracker.record_open(
                cid, rid, sig, _client_ip(request), request.headers.get("user-agent")
            )
        except Exception:
            logger.exception("Failed to record open for recipient %s", rid)
        return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)

    @api.get("/track/click")
    async def track_click(request: Request, cid: str, rid: str, u: str, sig: str):
        """Signed click redirect. A failure to record never blocks the redirect."""
        try:
            await dispatcher.tracker.record_click(
                cid, rid, u, sig, _client_ip(request), request.headers.get("user-agent")
            )
        except InvalidTrackingLinkError:
            raise
        except Exception:
            logger.exception("Failed to record click for recipient %s", rid)
        return RedirectResponse(u, status_code=status.HTTP_302_FOUND)

    api.include_router(campaigns)
    api.include_router(recipients)
    api.include_router(orgs)
    return api


__all__ = ["API_TOKEN_HEADER_NAME", "create_app", "require_token"]
