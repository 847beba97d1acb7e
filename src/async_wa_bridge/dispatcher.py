# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound message dispatch through a session's live connection."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import NotConnected, RateLimitExceeded, SessionNotFound, TransportFailure
from .logger import get_logger
from .prometheus import BridgeMetrics
from .rate_limit import RateLimiter
from .registry import SessionRegistry
from .transport import to_jid


@dataclass(frozen=True)
class SendResult:
    message_id: str
    to: str
    jid: str

    def to_dict(self) -> dict[str, str]:
        return {"messageId": self.message_id, "to": self.to, "jid": self.jid}


class OutboundDispatcher:
    """Checks a send against the registry and the message limiter, then forwards it.

    Checks run in a fixed order: the session must exist, then be connected,
    and only then is a rate-limit slot taken, so requests rejected for a
    missing or unready session never count against the limit.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        limiter: RateLimiter,
        metrics: BridgeMetrics | None = None,
    ):
        self.registry = registry
        self.limiter = limiter
        self.metrics = metrics
        self.logger = get_logger("OutboundDispatcher")

    async def send_message(self, session_id: str, recipient: str, body: str) -> SendResult:
        """Send ``body`` to ``recipient`` through ``session_id``.

        Raises:
            SessionNotFound: The session was never initialized.
            NotConnected: The session exists but is not authenticated.
            RateLimitExceeded: The session exceeded its message budget.
            TransportFailure: The transport rejected the send.
        """
        record = self.registry.get(session_id)
        if record is None:
            raise SessionNotFound(session_id)
        connection = record.connection
        if not record.is_connected or connection is None:
            raise NotConnected(session_id)

        try:
            self.limiter.check(session_id)
        except RateLimitExceeded:
            if self.metrics is not None:
                self.metrics.inc_rate_limited(self.limiter.name)
            self.logger.warning("Session %s: message rate limit exceeded", session_id)
            raise

        jid = to_jid(recipient)
        try:
            message_id = await connection.send_text(jid, body)
        except Exception as exc:
            if self.metrics is not None:
                self.metrics.inc_send_error(session_id)
            self.logger.error("Session %s: send to %s failed: %s", session_id, jid, exc)
            raise TransportFailure(str(exc) or f"Failed to send message to {recipient}") from exc

        if self.metrics is not None:
            self.metrics.inc_sent(session_id)
        self.logger.info("Session %s: message %s sent to %s", session_id, message_id, jid)
        return SendResult(message_id=str(message_id), to=recipient, jid=jid)
