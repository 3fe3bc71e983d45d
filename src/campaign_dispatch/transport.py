# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound transport contract and the SMTP implementation.

A transport turns one rendered message for one address into exactly one
outcome value:

- :class:`Delivered`: the relay accepted the message.
- :class:`Bounced`: the recipient was refused, ``hard`` (permanent) or ``soft``.
- :class:`RejectedAddress`: the relay rejected the address itself as malformed.
- :class:`TransientError`: anything that may succeed later (timeouts,
  disconnects, 4xx responses, throttling).

Transports should return outcomes rather than raise; an exception escaping
``send`` is still contained to the one recipient by the delivery engine.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Literal, Protocol, Union, runtime_checkable

import aiosmtplib

from .config_loader import SmtpConfig
from .logger import get_logger
from .smtp_pool import SMTPPool

logger = get_logger("SmtpTransport")

RATE_LIMIT_PATTERNS = ("throttl", "rate limit", "too many", "try again later")
# Address syntax rejected by the relay
ADDRESS_REJECT_CODES = {501, 553}


@dataclass(frozen=True)
class Delivered:
    message_id: str | None = None


@dataclass(frozen=True)
class Bounced:
    bounce_type: Literal["hard", "soft"]
    detail: str = ""
    code: int | None = None


@dataclass(frozen=True)
class RejectedAddress:
    detail: str = ""
    code: int | None = None


@dataclass(frozen=True)
class TransientError:
    detail: str = ""
    code: int | None = None
    rate_limited: bool = False


DeliveryOutcome = Union[Delivered, Bounced, RejectedAddress, TransientError]


@dataclass
class RenderedMessage:
    """Personalized message ready for one recipient."""

    subject: str
    html: str
    from_address: str | None = None
    from_name: str | None = None
    reply_to: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class Transport(Protocol):
    async def send(self, address: str, message: RenderedMessage) -> DeliveryOutcome: ...


def _looks_rate_limited(code: int | None, text: str) -> bool:
    lowered = text.lower()
    return code == 421 or any(p in lowered for p in RATE_LIMIT_PATTERNS)


def outcome_from_smtp_error(exc: Exception) -> DeliveryOutcome:
    """Map an aiosmtplib / network exception to an outcome."""
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        exc = exc.recipients[0]
    if isinstance(exc, aiosmtplib.SMTPRecipientRefused):
        code, text = exc.code, exc.message
        if 500 <= code < 600:
            if code in ADDRESS_REJECT_CODES or "5.1.3" in text:
                return RejectedAddress(detail=f"{code} {text}", code=code)
            return Bounced("hard", detail=f"{code} {text}", code=code)
        if _looks_rate_limited(code, text):
            return TransientError(detail=f"{code} {text}", code=code, rate_limited=True)
        return Bounced("soft", detail=f"{code} {text}", code=code)
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        code, text = exc.code, exc.message
        return TransientError(
            detail=f"{code} {text}", code=code, rate_limited=_looks_rate_limited(code, text)
        )
    # Connect/disconnect/timeout errors and plain OSError
    return TransientError(detail=str(exc) or type(exc).__name__)


class SmtpTransport:
    """Delivers through one SMTP relay using a bounded connection pool."""

    def __init__(self, config: SmtpConfig, pool: SMTPPool | None = None, max_connections: int = 4):
        if not config.host:
            raise ValueError("SMTP host is not configured")
        self.config = config
        self.pool = pool or SMTPPool(
            config.host,
            config.port,
            config.user,
            config.password,
            use_tls=config.use_tls,
            ttl=config.pool_ttl,
            max_size=max_connections,
            timeout=min(config.timeout, 15.0),
        )

    def build_message(self, address: str, message: RenderedMessage) -> EmailMessage:
        sender = message.from_address or self.config.from_address
        if not sender:
            raise ValueError("No sender address: set the campaign from_email or smtp.from_address")
        msg = EmailMessage()
        msg["From"] = formataddr((message.from_name, sender)) if message.from_name else sender
        msg["To"] = address
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid(domain=sender.rsplit("@", 1)[-1])
        if message.reply_to:
            msg["Reply-To"] = message.reply_to
        for name, value in message.headers.items():
            msg[name] = value
        msg.set_content(message.html, subtype="html")
        return msg

    async def send(self, address: str, message: RenderedMessage) -> DeliveryOutcome:
        msg = self.build_message(address, message)
        try:
            async with self.pool.connection() as smtp:
                await asyncio.wait_for(smtp.send_message(msg), timeout=self.config.timeout)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            outcome = outcome_from_smtp_error(exc)
            logger.debug("SMTP send to %s failed: %s", address, outcome)
            return outcome
        return Delivered(message_id=msg["Message-ID"])

    async def close(self) -> None:
        await self.pool.close()


__all__ = [
    "Bounced",
    "Delivered",
    "DeliveryOutcome",
    "RejectedAddress",
    "RenderedMessage",
    "SmtpTransport",
    "TransientError",
    "Transport",
    "outcome_from_smtp_error",
]
