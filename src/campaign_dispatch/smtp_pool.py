# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded asyncio SMTP connection pool for one relay.

Sends within a job run concurrently, one asyncio task per recipient, so
connections are pooled by checkout rather than by task: a send borrows an
idle connection (or opens one while under ``max_size``), and gives it back
afterwards. Connections are dropped when older than ``ttl`` or when a NOOP
health check fails. A connection whose send raised is closed, not reused.

Example:
    pool = SMTPPool("smtp.example.com", 587, "user", "secret", use_tls=True, max_size=4)
    async with pool.connection() as smtp:
        await smtp.send_message(message)
    await pool.close()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

from .logger import get_logger

logger = get_logger("SMTPPool")


class SMTPPool:
    """Asyncio-compatible SMTP connection pool with bounded size.

    Attributes:
        ttl: Maximum age in seconds for an idle connection before it is replaced.
        max_size: Maximum number of simultaneously open connections.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool = True,
        ttl: int = 300,
        max_size: int = 4,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.ttl = ttl
        self.max_size = max(1, max_size)
        self.timeout = timeout
        self._idle: list[tuple[aiosmtplib.SMTP, float]] = []
        self._slots = asyncio.Semaphore(self.max_size)
        self._lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a connection: implicit TLS on 465, STARTTLS elsewhere when ``use_tls``."""
        if self.use_tls and self.port == 465:
            smtp = aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.timeout
            )
        else:
            smtp = aiosmtplib.SMTP(
                hostname=self.host,
                port=self.port,
                use_tls=False,
                start_tls=self.use_tls,
                timeout=self.timeout,
            )

        async def _do_connect() -> None:
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _discard(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            smtp.close()

    async def _checkout(self) -> aiosmtplib.SMTP:
        while True:
            async with self._lock:
                entry = self._idle.pop() if self._idle else None
            if entry is None:
                return await self._connect()
            smtp, last_used = entry
            if time.time() - last_used < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._discard(smtp)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection for the duration of the block."""
        async with self._slots:
            smtp = await self._checkout()
            try:
                yield smtp
            except BaseException:
                await self._discard(smtp)
                raise
            async with self._lock:
                self._idle.append((smtp, time.time()))

    async def close(self) -> None:
        """Close every idle connection."""
        async with self._lock:
            idle, self._idle = self._idle, []
        for smtp, _ in idle:
            await self._discard(smtp)
        if idle:
            logger.debug("Closed %d pooled SMTP connection(s)", len(idle))


__all__ = ["SMTPPool"]
