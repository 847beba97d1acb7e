# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pure transition rules of the connection supervisor.

The functions here take an immutable :class:`SessionView`, the classified
disconnect cause and the current time, and return a decision object. They
perform no I/O and touch no shared state; the supervisor applies the
decisions (status changes, timers, storage writes). Keeping them pure lets
the whole transition table be exercised without a transport.

Close handling, in precedence order:

1. ``LOGOUT``: remove the session and purge its credentials, no retry.
2. ``RESTRICTED``: mark failed, no retry.
3. Recoverable classes:
   a. artifact just consumed: reconnect after ``paired_delay`` to finish
      the handshake;
   b. valid unconsumed artifact: keep waiting in ``qr_pending``; an expired
      one is replaced after ``expired_pairing_delay``;
   c. no artifact: reconnect after ``network_delay``.
4. ``UNKNOWN``: mark failed, no retry, keep the artifact.

Consecutive recovery attempts of 3b and 3c are capped by ``max_attempts``;
each attempt after the first doubles the delay up to ``max_delay``. The
end-of-pairing restart (3a) always uses the fixed ``paired_delay``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .session import PAIRING_TTL_SECONDS, SessionStatus, SessionView
from .transport import DISCONNECT_LABELS, DisconnectClass


@dataclass(frozen=True)
class RecoveryPolicy:
    """Delays and limits governing automatic recovery.

    Attributes:
        paired_delay: Delay before reconnecting after a consumed pairing.
        expired_pairing_delay: Delay before replacing an expired pairing.
        network_delay: Delay before reconnecting after a routine blip.
        max_attempts: Consecutive recovery attempts allowed before giving up;
            zero or negative disables the cap.
        max_delay: Upper bound of the backed-off delay.
        pairing_ttl: Lifetime of a pairing artifact.
    """

    paired_delay: float = 2.0
    expired_pairing_delay: float = 2.0
    network_delay: float = 3.0
    max_attempts: int = 5
    max_delay: float = 60.0
    pairing_ttl: float = PAIRING_TTL_SECONDS

    def backoff(self, base: float, attempts: int) -> float:
        """Delay for the next attempt given the attempts already made."""
        if attempts <= 0:
            return base
        return min(self.max_delay, base * (2 ** attempts))

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts > 0 and attempts >= self.max_attempts


@dataclass(frozen=True)
class CloseDecision:
    """Outcome of a connection-closed event."""

    status: SessionStatus
    recovery_delay: float | None = None
    clear_pairing: bool = False
    remove: bool = False
    purge_credentials: bool = False
    error: str | None = None
    reason: str = ""


class ConnectAction(str, Enum):
    """What a re-entrant ``connect`` call must do with an existing record."""

    CREATE = "create"
    REUSE = "reuse"
    REPLACE = "replace"


def _schedule(
    view: SessionView,
    status: SessionStatus,
    base_delay: float,
    policy: RecoveryPolicy,
    reason: str,
    *,
    clear_pairing: bool,
) -> CloseDecision:
    if policy.exhausted(view.recovery_attempts):
        return CloseDecision(
            status=SessionStatus.FAILED,
            clear_pairing=clear_pairing,
            error=f"Recovery abandoned after {view.recovery_attempts} attempts ({reason})",
            reason="recovery_exhausted",
        )
    return CloseDecision(
        status=status,
        recovery_delay=policy.backoff(base_delay, view.recovery_attempts),
        clear_pairing=clear_pairing,
        reason=reason,
    )


def decide_on_close(
    view: SessionView,
    disconnect_class: DisconnectClass,
    now: float,
    policy: RecoveryPolicy | None = None,
    status_code: int | None = None,
) -> CloseDecision:
    """Decide how a session reacts to a connection-closed event."""
    policy = policy or RecoveryPolicy()
    label = DISCONNECT_LABELS[disconnect_class]

    if disconnect_class is DisconnectClass.LOGOUT:
        return CloseDecision(
            status=SessionStatus.DISCONNECTED,
            clear_pairing=True,
            remove=True,
            purge_credentials=True,
            reason="logged_out",
        )

    if disconnect_class is DisconnectClass.RESTRICTED:
        return CloseDecision(
            status=SessionStatus.FAILED,
            error=f"Connection closed with status {status_code} ({label})",
            reason="restricted",
        )

    if disconnect_class.recoverable:
        if view.qr_consumed:
            return CloseDecision(
                status=SessionStatus.RECONNECTING,
                recovery_delay=policy.paired_delay,
                clear_pairing=True,
                reason="pairing_completed",
            )
        if view.qr_code is not None:
            if view.qr_expired(now, policy.pairing_ttl):
                return _schedule(
                    view, SessionStatus.RECONNECTING, policy.expired_pairing_delay, policy,
                    "pairing_expired", clear_pairing=False,
                )
            return CloseDecision(status=SessionStatus.QR_PENDING, reason="awaiting_pairing")
        return _schedule(
            view, SessionStatus.RECONNECTING, policy.network_delay, policy,
            "network", clear_pairing=False,
        )

    return CloseDecision(
        status=SessionStatus.FAILED,
        error=f"Connection failed with status {status_code}",
        reason="unknown",
    )


def decide_on_connect(
    view: SessionView | None,
    now: float,
    pairing_ttl: float = PAIRING_TTL_SECONDS,
) -> ConnectAction:
    """Decide whether ``connect`` reuses an existing session or replaces it.

    A connected session and one holding a scannable pairing artifact are
    returned unchanged so that no second concurrent attempt is issued; any
    other existing session is torn down and re-created.
    """
    if view is None:
        return ConnectAction.CREATE
    if view.is_connected:
        return ConnectAction.REUSE
    if view.qr_code is not None and not view.qr_expired(now, pairing_ttl):
        return ConnectAction.REUSE
    return ConnectAction.REPLACE
