# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Test doubles: a controllable clock, a scripted transport and MX validator."""

from __future__ import annotations

import itertools
from typing import Any

from campaign_dispatch.transport import Delivered, RenderedMessage
from campaign_dispatch.validation import MxResult

T0 = 1_700_000_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records every send; per-address outcomes can be scripted.

    ``outcomes`` maps an address to an outcome, an exception to raise, or a
    list consumed one item per send. Unscripted addresses are delivered.
    """

    def __init__(self, outcomes: dict[str, Any] | None = None, on_send=None):
        self.outcomes = dict(outcomes or {})
        self.on_send = on_send
        self.sent: list[tuple[str, RenderedMessage]] = []
        self.closed = False
        self._ids = itertools.count(1)

    @property
    def addresses(self) -> list[str]:
        return [address for address, _ in self.sent]

    async def send(self, address: str, message: RenderedMessage):
        self.sent.append((address, message))
        if self.on_send is not None:
            self.on_send(address)
        outcome = self.outcomes.get(address)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or Delivered(message_id=f"<{next(self._ids)}@test.local>")

    async def close(self) -> None:
        self.closed = True


class FakeMxValidator:
    """MX validator answering from a fixed ``{domain: bool | None}`` map."""

    def __init__(self, verdicts: dict[str, bool | None] | None = None):
        self.verdicts = dict(verdicts or {})
        self.checked: list[str] = []

    async def check(self, domain: str) -> MxResult:
        self.checked.append(domain)
        valid = self.verdicts.get(domain, True)
        return MxResult(domain=domain, valid=valid, checked_at=T0 if valid is not None else None)
