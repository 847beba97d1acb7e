# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound email relay through a configurable SMTP account.

The email capability is independent of the messaging sessions. Each request
either names its own SMTP account or falls back to the default account from
the settings. Messages are built with :class:`email.message.EmailMessage`
and sent over a pooled aiosmtplib connection.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Any

import aiosmtplib

from .errors import AccountConfigurationError, RateLimitExceeded, TransportFailure
from .logger import get_logger
from .prometheus import BridgeMetrics
from .rate_limit import RateLimiter
from .smtp_pool import SMTPPool

TEST_SUBJECT = "Test Email from WhatsApp-Email Messenger"


@dataclass
class EmailAccount:
    """SMTP account used to relay a message."""

    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    use_tls: bool = True

    @property
    def is_configured(self) -> bool:
        return bool(self.user and self.password)

    def validate(self) -> None:
        """Raise :class:`AccountConfigurationError` unless the account can send."""
        if not self.user or not self.password:
            raise AccountConfigurationError(
                "SMTP credentials are missing. Please provide user and pass in accountConfig"
            )
        if not self.host or not self.port:
            raise AccountConfigurationError(
                "SMTP host and port are missing. Please provide host and port in accountConfig"
            )


@dataclass
class EmailRequest:
    to: str
    subject: str
    text: str | None = None
    html: str | None = None
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EmailResult:
    message_id: str
    response: str

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, "messageId": self.message_id, "response": self.response}


class EmailService:
    """Builds and relays outbound email, throttled per recipient.

    Attributes:
        default_account: Account used when a request does not supply one.
        pool: Shared SMTP connection pool.
        limiter: Optional per-recipient limiter checked before sending.
    """

    def __init__(
        self,
        default_account: EmailAccount | None = None,
        *,
        pool: SMTPPool | None = None,
        limiter: RateLimiter | None = None,
        metrics: BridgeMetrics | None = None,
    ):
        self.default_account = default_account or EmailAccount()
        self.pool = pool or SMTPPool()
        self.limiter = limiter
        self.metrics = metrics
        self.logger = get_logger("EmailService")

    @property
    def is_configured(self) -> bool:
        return self.default_account.is_configured

    @property
    def provider(self) -> str | None:
        return self.default_account.host

    def build_message(self, account: EmailAccount, request: EmailRequest) -> EmailMessage:
        """Create the MIME message; the html part falls back to the text."""
        msg = EmailMessage()
        msg["From"] = account.user
        msg["To"] = request.to
        if request.cc:
            msg["Cc"] = ", ".join(request.cc)
        msg["Subject"] = request.subject
        msg["Date"] = formatdate(localtime=False)
        domain = (account.user or "").rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=domain)
        text = request.text or ""
        msg.set_content(text)
        html = request.html or request.text
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    async def send(self, request: EmailRequest, account: EmailAccount | None = None) -> EmailResult:
        """Relay one message.

        Raises:
            RateLimitExceeded: The recipient received too many messages.
            AccountConfigurationError: The account cannot be used to send.
            TransportFailure: The SMTP server rejected the message.
        """
        account = account or self.default_account
        if self.limiter is not None:
            try:
                self.limiter.check(request.to)
            except RateLimitExceeded:
                if self.metrics is not None:
                    self.metrics.inc_rate_limited(self.limiter.name)
                self.logger.warning("Email rate limit exceeded for %s", request.to)
                raise
        return await self._deliver(request, account)

    async def _deliver(self, request: EmailRequest, account: EmailAccount) -> EmailResult:
        account.validate()
        message = self.build_message(account, request)
        recipients = [request.to, *request.cc, *request.bcc]
        try:
            async with self.pool.connection(
                account.host, account.port, account.user, account.password, use_tls=account.use_tls
            ) as smtp:
                _errors, response = await smtp.send_message(message, recipients=recipients)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            if self.metrics is not None:
                self.metrics.inc_email_error()
            self.logger.error("Failed to send email to %s: %s", request.to, exc)
            raise TransportFailure(f"Failed to send email: {exc}") from exc

        if self.metrics is not None:
            self.metrics.inc_email_sent()
        self.logger.info("Email %s sent to %s", message["Message-ID"], request.to)
        return EmailResult(message_id=str(message["Message-ID"]), response=str(response))

    async def send_test(self, account: EmailAccount | None = None) -> EmailResult:
        """Send a diagnostic message to the account's own address."""
        account = account or self.default_account
        account.validate()
        now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        request = EmailRequest(
            to=account.user,
            subject=TEST_SUBJECT,
            text=f"This is a test email sent at {now}",
        )
        return await self._deliver(request, account)
