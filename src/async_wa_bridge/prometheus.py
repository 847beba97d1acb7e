# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the messaging bridge.

This module defines the Prometheus counters and gauges used to track session
lifecycle and outbound traffic. All metrics use the ``wab_`` prefix.

Metrics exposed:
    - ``wab_messages_sent_total``: Counter of messages sent per session.
    - ``wab_message_errors_total``: Counter of failed sends per session.
    - ``wab_rate_limited_total``: Counter of rejected requests per limiter.
    - ``wab_reconnects_total``: Counter of scheduled recoveries per reason.
    - ``wab_disconnects_total``: Counter of close events per disconnect class.
    - ``wab_emails_sent_total``: Counter of emails relayed.
    - ``wab_email_errors_total``: Counter of email relay failures.
    - ``wab_sessions``: Gauge of registered sessions per status.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from collections.abc import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .session import SessionStatus


class BridgeMetrics:
    """Prometheus metrics collector for the bridge.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private registry
                is created when omitted, so several bridges (or tests) can
                coexist in one process.
        """
        self.registry = registry or CollectorRegistry()
        self.messages_sent = Counter(
            "wab_messages_sent_total",
            "Total messages sent",
            ["session_id"],
            registry=self.registry,
        )
        self.message_errors = Counter(
            "wab_message_errors_total",
            "Total message send failures",
            ["session_id"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "wab_rate_limited_total",
            "Total rate limited requests",
            ["limiter"],
            registry=self.registry,
        )
        self.reconnects = Counter(
            "wab_reconnects_total",
            "Total scheduled session recoveries",
            ["reason"],
            registry=self.registry,
        )
        self.disconnects = Counter(
            "wab_disconnects_total",
            "Total connection close events",
            ["disconnect_class"],
            registry=self.registry,
        )
        self.emails_sent = Counter(
            "wab_emails_sent_total",
            "Total emails relayed",
            registry=self.registry,
        )
        self.email_errors = Counter(
            "wab_email_errors_total",
            "Total email relay failures",
            registry=self.registry,
        )
        self.sessions = Gauge(
            "wab_sessions",
            "Registered sessions by status",
            ["status"],
            registry=self.registry,
        )

    def inc_sent(self, session_id: str) -> None:
        self.messages_sent.labels(session_id=session_id or "default").inc()

    def inc_send_error(self, session_id: str) -> None:
        self.message_errors.labels(session_id=session_id or "default").inc()

    def inc_rate_limited(self, limiter: str) -> None:
        self.rate_limited.labels(limiter=limiter or "default").inc()

    def inc_reconnect(self, reason: str) -> None:
        self.reconnects.labels(reason=reason or "unknown").inc()

    def inc_disconnect(self, disconnect_class: str) -> None:
        self.disconnects.labels(disconnect_class=disconnect_class or "unknown").inc()

    def inc_email_sent(self) -> None:
        self.emails_sent.inc()

    def inc_email_error(self) -> None:
        self.email_errors.inc()

    def set_sessions(self, statuses: Iterable[SessionStatus]) -> None:
        """Refresh the per-status session gauge from the current statuses."""
        counts = {status: 0 for status in SessionStatus}
        for status in statuses:
            counts[status] += 1
        for status, count in counts.items():
            self.sessions.labels(status=status.value).set(count)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
