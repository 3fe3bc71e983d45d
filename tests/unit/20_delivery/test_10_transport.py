# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for SMTP error mapping and the SMTP transport."""

from contextlib import asynccontextmanager

import aiosmtplib
import pytest

from campaign_dispatch.config_loader import SmtpConfig
from campaign_dispatch.transport import (
    Bounced,
    Delivered,
    RejectedAddress,
    RenderedMessage,
    SmtpTransport,
    TransientError,
    outcome_from_smtp_error,
)


class FakeSmtp:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    async def send_message(self, message):
        if self.error is not None:
            raise self.error
        self.messages.append(message)


class FakePool:
    def __init__(self, smtp):
        self.smtp = smtp
        self.closed = False

    @asynccontextmanager
    async def connection(self):
        yield self.smtp

    async def close(self):
        self.closed = True


def _message(**overrides):
    fields = {"subject": "Hello Ann", "html": "<p>Hi Ann</p>", "from_address": "news@shop.example"}
    fields.update(overrides)
    return RenderedMessage(**fields)


class TestOutcomeFromSmtpError:
    """Tests for exception to outcome mapping."""

    def test_550_is_hard_bounce(self):
        """Permanent refusal of the mailbox is a hard bounce."""
        exc = aiosmtplib.SMTPRecipientRefused(550, "5.1.1 User unknown", "x@example.com")
        outcome = outcome_from_smtp_error(exc)
        assert isinstance(outcome, Bounced)
        assert outcome.bounce_type == "hard"
        assert outcome.code == 550

    @pytest.mark.parametrize("code,text", [(553, "mailbox name not allowed"), (550, "5.1.3 bad address")])
    def test_address_syntax_rejections(self, code, text):
        """553 and 5.1.3 mean the address itself is invalid."""
        exc = aiosmtplib.SMTPRecipientRefused(code, text, "x@example.com")
        assert isinstance(outcome_from_smtp_error(exc), RejectedAddress)

    def test_4xx_refusal_is_soft_bounce(self):
        """Temporary mailbox refusal is a soft bounce."""
        exc = aiosmtplib.SMTPRecipientRefused(452, "Mailbox full", "x@example.com")
        outcome = outcome_from_smtp_error(exc)
        assert outcome == Bounced("soft", detail="452 Mailbox full", code=452)

    def test_throttled_refusal_is_rate_limited(self):
        """Throttling wording marks the error as rate limited."""
        exc = aiosmtplib.SMTPRecipientRefused(450, "Too many messages, try again later", "x@example.com")
        outcome = outcome_from_smtp_error(exc)
        assert isinstance(outcome, TransientError)
        assert outcome.rate_limited

    def test_recipients_refused_uses_first_refusal(self):
        """The aggregate exception is unwrapped."""
        inner = aiosmtplib.SMTPRecipientRefused(550, "no such user", "x@example.com")
        outcome = outcome_from_smtp_error(aiosmtplib.SMTPRecipientsRefused([inner]))
        assert isinstance(outcome, Bounced)

    def test_421_response_is_rate_limited(self):
        """A 421 service response is transient and rate limited."""
        exc = aiosmtplib.SMTPResponseException(421, "Service not available")
        outcome = outcome_from_smtp_error(exc)
        assert isinstance(outcome, TransientError)
        assert outcome.rate_limited
        assert outcome.code == 421

    def test_disconnect_is_transient(self):
        """Connection-level failures carry no code."""
        outcome = outcome_from_smtp_error(aiosmtplib.SMTPServerDisconnected("gone"))
        assert outcome == TransientError(detail="gone")


class TestSmtpTransport:
    """Tests for message building and sending."""

    def test_requires_host(self):
        """A transport without a relay host cannot be built."""
        with pytest.raises(ValueError):
            SmtpTransport(SmtpConfig())

    def test_build_message_headers(self):
        """From, To, Subject, Reply-To and extra headers are set."""
        transport = SmtpTransport(SmtpConfig(host="smtp.test"), pool=FakePool(FakeSmtp()))
        msg = transport.build_message(
            "ann@example.com",
            _message(
                from_name="Shop",
                reply_to="help@shop.example",
                headers={"List-Unsubscribe": "<https://u.example/x>"},
            ),
        )
        assert msg["To"] == "ann@example.com"
        assert msg["From"] == "Shop <news@shop.example>"
        assert msg["Reply-To"] == "help@shop.example"
        assert msg["List-Unsubscribe"] == "<https://u.example/x>"
        assert msg["Message-ID"].endswith("@shop.example>")
        assert msg.get_content_subtype() == "html"

    def test_falls_back_to_configured_sender(self):
        """The relay's from_address is used when the campaign has none."""
        transport = SmtpTransport(
            SmtpConfig(host="smtp.test", from_address="default@shop.example"), pool=FakePool(FakeSmtp())
        )
        msg = transport.build_message("ann@example.com", _message(from_address=None))
        assert msg["From"] == "default@shop.example"

    def test_missing_sender_raises(self):
        """Without any sender address the message cannot be built."""
        transport = SmtpTransport(SmtpConfig(host="smtp.test"), pool=FakePool(FakeSmtp()))
        with pytest.raises(ValueError):
            transport.build_message("ann@example.com", _message(from_address=None))

    @pytest.mark.asyncio
    async def test_send_delivered(self):
        """An accepted message yields Delivered with its Message-ID."""
        smtp = FakeSmtp()
        transport = SmtpTransport(SmtpConfig(host="smtp.test"), pool=FakePool(smtp))
        outcome = await transport.send("ann@example.com", _message())
        assert isinstance(outcome, Delivered)
        assert outcome.message_id == smtp.messages[0]["Message-ID"]

    @pytest.mark.asyncio
    async def test_send_maps_errors_to_outcomes(self):
        """SMTP exceptions are returned as outcomes, not raised."""
        smtp = FakeSmtp(error=aiosmtplib.SMTPRecipientRefused(550, "User unknown", "ann@example.com"))
        transport = SmtpTransport(SmtpConfig(host="smtp.test"), pool=FakePool(smtp))
        outcome = await transport.send("ann@example.com", _message())
        assert isinstance(outcome, Bounced)
        assert outcome.bounce_type == "hard"

    @pytest.mark.asyncio
    async def test_close_closes_pool(self):
        """close() releases the pool."""
        pool = FakePool(FakeSmtp())
        transport = SmtpTransport(SmtpConfig(host="smtp.test"), pool=pool)
        await transport.close()
        assert pool.closed
