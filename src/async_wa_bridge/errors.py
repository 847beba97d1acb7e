# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy shared by the bridge components and the HTTP layer.

Every error raised synchronously in a request path derives from
:class:`BridgeError` and carries the HTTP status and machine-readable code
used by the API exception handler. Failures detected asynchronously by the
connection supervisor (restricted accounts, unknown disconnect codes,
exhausted recovery) are never raised; they are recorded on the session and
surfaced through status polling.
"""

from __future__ import annotations

import math


class BridgeError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BridgeError):
    """Malformed input. Never retried."""

    status_code = 400
    code = "validation_error"


class RateLimitExceeded(BridgeError):
    """Raised when a limiter rejects a request; carries the wait in seconds."""

    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: float, message: str | None = None):
        self.retry_after = max(0.0, float(retry_after))
        super().__init__(
            message or f"Rate limit exceeded. Try again in {self.retry_after_seconds}s"
        )

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds to wait, rounded up."""
        return int(math.ceil(self.retry_after))


class SessionNotFound(BridgeError):
    status_code = 404
    code = "session_not_found"

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or f"Session {session_id} not found. Please initialize first.")


class NotConnected(BridgeError):
    status_code = 500
    code = "not_connected"

    def __init__(self, session_id: str, message: str | None = None):
        self.session_id = session_id
        super().__init__(message or "WhatsApp not connected. Please scan QR code first.")


class TransportFailure(BridgeError):
    """External connection or send error; the message is surfaced as-is."""

    status_code = 500
    code = "transport_failure"


class AccountConfigurationError(BridgeError):
    """Raised when an SMTP account is missing the information required to send."""

    status_code = 500
    code = "missing_account_configuration"

    def __init__(self, message: str = "Missing SMTP account configuration"):
        super().__init__(message)
