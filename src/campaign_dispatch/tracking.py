# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Open and click tracking for delivered campaign messages.

Messages carry links signed by :mod:`campaign_dispatch.rendering`. A hit
is recorded only when its signature verifies and the recipient row belongs
to the campaign named in the link. Opens are recorded on every pixel load;
a click is recorded once per recipient and destination URL.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .errors import InvalidTrackingLinkError
from .logger import get_logger
from .rendering import is_trackable_url, verify_click_signature, verify_open_signature

if TYPE_CHECKING:
    from .config_loader import DispatchConfig
    from .dispatch_db import DispatchDb
    from .prometheus import DispatchMetrics

logger = get_logger("EngagementTracker")

MAX_URL_LENGTH = 4096


class EngagementTracker:
    def __init__(
        self,
        db: DispatchDb,
        config: DispatchConfig,
        metrics: DispatchMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.config = config
        self.metrics = metrics
        self.clock = clock

    async def _recipient(self, campaign_id: str, recipient_id: str) -> dict[str, Any] | None:
        recipient = await self.db.recipients.get(recipient_id)
        if recipient is None or recipient["campaign_id"] != campaign_id:
            logger.debug("Tracking hit for unknown recipient %s of campaign %s", recipient_id, campaign_id)
            return None
        return recipient

    async def record_open(
        self,
        campaign_id: str,
        recipient_id: str,
        signature: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Record a pixel load. Returns False when the hit was not recorded."""
        secret = self.config.unsubscribe_secret
        if not verify_open_signature(secret, campaign_id, recipient_id, signature):
            logger.debug("Rejected open pixel with bad signature for %s", recipient_id)
            return False
        recipient = await self._recipient(campaign_id, recipient_id)
        if recipient is None:
            return False
        await self.db.tracking.record_open(recipient, int(self.clock()), ip_address, user_agent)
        if self.metrics:
            self.metrics.inc_engagement(recipient["org_id"], "open")
        return True

    async def record_click(
        self,
        campaign_id: str,
        recipient_id: str,
        url: str,
        signature: str | None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Record a click on ``url``. Returns True when it was the recipient's first on that URL.

        Raises:
            InvalidTrackingLinkError: The URL is not an absolute http(s) URL,
                is too long, or the signature does not match it.
        """
        if len(url) > MAX_URL_LENGTH or not is_trackable_url(url):
            raise InvalidTrackingLinkError("Invalid destination URL")
        secret = self.config.unsubscribe_secret
        if not verify_click_signature(secret, campaign_id, recipient_id, url, signature):
            raise InvalidTrackingLinkError("Invalid signature")
        recipient = await self._recipient(campaign_id, recipient_id)
        if recipient is None:
            return False
        stored = await self.db.tracking.record_click(
            recipient, url, int(self.clock()), ip_address, user_agent
        )
        if stored and self.metrics:
            self.metrics.inc_engagement(recipient["org_id"], "click")
        return stored


__all__ = ["EngagementTracker"]
