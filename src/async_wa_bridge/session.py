# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Session records, pairing artifacts and the read-side session view.

A :class:`SessionRecord` is owned by the connection supervisor and mutated
only from its serialized per-session handlers. Every other component reads
sessions through :class:`SessionView`, an immutable snapshot copied from the
record in one step so that pollers never observe a half-applied transition.

Attributes:
    PAIRING_TTL_SECONDS: Lifetime of a pairing artifact after generation.
    QR_EXPIRED: Read-side status reported for an aged pairing artifact.
    NOT_INITIALIZED: Read-side status reported for an unknown session.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

PAIRING_TTL_SECONDS = 180.0
QR_EXPIRED = "qr_expired"
NOT_INITIALIZED = "not_initialized"


class SessionStatus(str, Enum):
    """Lifecycle states of a session.

    Attributes:
        CONNECTING: A connection attempt is being established.
        QR_PENDING: A pairing artifact is waiting to be scanned.
        AUTHENTICATING: The artifact was consumed; the handshake completes on reconnect.
        CONNECTED: The session is authenticated and usable.
        RECONNECTING: A recovery attempt is scheduled.
        DISCONNECTED: The remote end logged the session out.
        FAILED: The attempt failed and will not recover on its own.
    """

    CONNECTING = "connecting"
    QR_PENDING = "qr_pending"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


def to_iso(ts: float | None) -> str | None:
    """Format an epoch timestamp as an ISO-8601 UTC string with ``Z`` suffix."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PairingArtifact:
    """Single-use, time-bounded pairing token shown to the end user.

    ``consumed`` only ever moves from False to True; a consumed artifact is
    kept on the record until the next close/open event so the supervisor can
    tell that the handshake is in progress, but it is never displayed again.
    """

    token: str
    generated_at: float
    consumed: bool = False

    def age(self, now: float) -> float:
        return now - self.generated_at

    def is_expired(self, now: float, ttl: float = PAIRING_TTL_SECONDS) -> bool:
        return now >= self.generated_at + ttl

    def is_valid(self, now: float, ttl: float = PAIRING_TTL_SECONDS) -> bool:
        """True while the artifact can still be scanned."""
        return not self.consumed and not self.is_expired(now, ttl)

    def consume(self) -> None:
        self.consumed = True


@dataclass
class SessionRecord:
    """Mutable per-session state owned by the connection supervisor."""

    session_id: str
    status: SessionStatus = SessionStatus.CONNECTING
    connection: Any = None
    generation: int = 0
    pairing: PairingArtifact | None = None
    account_id: str | None = None
    recovery_timer: Any = None
    recovery_attempts: int = 0
    last_error: str | None = None
    last_disconnect_code: int | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_connected(self) -> bool:
        return self.status is SessionStatus.CONNECTED

    def snapshot(self) -> SessionView:
        """Copy the record into an immutable view."""
        pairing = self.pairing
        return SessionView(
            session_id=self.session_id,
            status=self.status,
            is_connected=self.is_connected,
            account_id=self.account_id,
            qr_code=pairing.token if pairing and not pairing.consumed else None,
            qr_generated_at=pairing.generated_at if pairing else None,
            qr_consumed=bool(pairing and pairing.consumed),
            recovery_pending=self.recovery_timer is not None,
            recovery_attempts=self.recovery_attempts,
            generation=self.generation,
            last_error=self.last_error,
            last_disconnect_code=self.last_disconnect_code,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class SessionView:
    """Immutable snapshot of a session as seen by API callers."""

    session_id: str
    status: SessionStatus
    is_connected: bool
    account_id: str | None = None
    qr_code: str | None = None
    qr_generated_at: float | None = None
    qr_consumed: bool = False
    recovery_pending: bool = False
    recovery_attempts: int = 0
    generation: int = 0
    last_error: str | None = None
    last_disconnect_code: int | None = None
    created_at: float | None = None
    updated_at: float | None = None

    @property
    def has_qr_code(self) -> bool:
        return self.qr_code is not None

    def qr_expired(self, now: float, ttl: float = PAIRING_TTL_SECONDS) -> bool:
        """True when a displayable artifact exists but has aged past ``ttl``."""
        if self.qr_code is None or self.qr_generated_at is None:
            return False
        return now >= self.qr_generated_at + ttl

    def to_summary(self) -> dict[str, Any]:
        """Compact camelCase representation used by the session listing."""
        return {
            "sessionId": self.session_id,
            "status": self.status.value,
            "isConnected": self.is_connected,
            "phoneNumber": self.account_id,
            "hasQRCode": self.has_qr_code,
        }
