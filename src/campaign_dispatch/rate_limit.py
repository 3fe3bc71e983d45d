# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sliding-window per-tenant rate limiter using the persisted send log.

Limits are configured at minute, hour and day granularity (0 disables a
window). Send history lives in ``send_log`` so every processor instance
sees the same counts; sends dispatched by this process but not yet
finished are tracked as "in-flight" reservations.

Example:
    Reserving a slot before each send::

        deferred_until = await limiter.check_and_plan(org_id, config.rate_limits)
        if deferred_until:
            ...  # release the job until deferred_until
        else:
            try:
                outcome = await send()
            finally:
                if delivered:
                    await limiter.log_send(org_id)
                else:
                    await limiter.release_slot(org_id)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

from .logger import get_logger

if TYPE_CHECKING:
    from .dispatch_db import DispatchDb

logger = get_logger("RateLimiter")

WINDOWS = (
    ("limit_per_minute", 60),
    ("limit_per_hour", 3600),
    ("limit_per_day", 86400),
)


class RateLimiter:
    """Per-tenant limiter backed by the ``send_log`` table.

    Attributes:
        db: Database providing ``send_log``.
        clock: Epoch-seconds clock.
    """

    def __init__(self, db: DispatchDb, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock
        self._in_flight: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def check_and_plan(self, org_id: str, limits: Mapping[str, int]) -> int | None:
        """Reserve a send slot, or return the epoch at which one frees up.

        When None is returned a slot has been reserved and the caller must
        follow up with :meth:`log_send` or :meth:`release_slot`.
        """
        active = [(int(limits.get(key) or 0), window) for key, window in WINDOWS]
        active = [(limit, window) for limit, window in active if limit > 0]
        if not active:
            return None

        now = int(self.clock())
        async with self._lock:
            in_flight = self._in_flight.get(org_id, 0)
            for limit, window in active:
                sent = await self.db.send_log.count_since(org_id, now - window)
                if sent + in_flight >= limit:
                    logger.info(
                        "Rate limit (%ss) hit for org %s: %d+%d >= %d",
                        window, org_id, sent, in_flight, limit,
                    )
                    return (now // window + 1) * window
            self._in_flight[org_id] = in_flight + 1
        return None

    async def log_send(self, org_id: str) -> None:
        """Record an accepted send and free its reservation."""
        await self.release_slot(org_id)
        await self.db.send_log.log(org_id, int(self.clock()))

    async def release_slot(self, org_id: str) -> None:
        async with self._lock:
            if self._in_flight.get(org_id, 0) > 0:
                self._in_flight[org_id] -= 1


__all__ = ["RateLimiter"]
