# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Connection supervisor: session lifecycle and reconnection state machine.

The supervisor owns every session's connection handle. It opens connections
through the configured transport factory, interprets the events the handle
emits, persists credentials, decides (through :mod:`async_wa_bridge.policy`)
whether a closed connection recovers on its own or needs a new pairing, and
schedules recovery through an injectable :class:`RecoveryScheduler`.

All writes to a session record happen while holding that session's registry
lock. Transport events never mutate the record from inside the transport's
callback: ``emit`` only enqueues ``(generation, event)`` on the session's
queue, and a pump task applies queued events one at a time, in arrival
order, under the lock. Events carrying an older generation than the record
belong to a handle that was already replaced and are dropped.

Example:
    Wiring a supervisor by hand::

        supervisor = ConnectionSupervisor(
            SessionRegistry(),
            CredentialStore("/data/wa_bridge.db"),
            load_transport_factory("mypackage.adapter:open_transport"),
        )
        view = await supervisor.connect("shop-1")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .credentials import CredentialStore
from .errors import TransportFailure
from .logger import get_logger
from .policy import ConnectAction, RecoveryPolicy, decide_on_close, decide_on_connect
from .prometheus import BridgeMetrics
from .qr import render_qr
from .registry import SessionRegistry
from .scheduler import AsyncioRecoveryScheduler, RecoveryScheduler
from .session import PairingArtifact, SessionRecord, SessionStatus, SessionView
from .transport import (
    DISCONNECT_CODES,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectClass,
    PairingCodeReceived,
    TransportEvent,
    TransportFactory,
    classify_disconnect,
)

Probe = Callable[[], Awaitable[Any]]


class _SessionChannel:
    """Event queue and pump task of one session."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[tuple[int, TransportEvent]] = asyncio.Queue()
        self.task: asyncio.Task | None = None
        self.closed = False


class ConnectionSupervisor:
    """Creates, observes and recovers per-session transport connections.

    Args:
        registry: Shared session registry; the supervisor is its only writer.
        credentials: Durable per-session credential store.
        transport_factory: Opens one transport connection for a session.
        scheduler: Recovery scheduler; defaults to an asyncio timer scheduler.
        policy: Recovery delays, attempt cap and pairing TTL.
        metrics: Optional Prometheus metrics collector.
        probe: Optional coroutine function awaited before each connection
            attempt; it raises :class:`TransportFailure` when the messaging
            network is unreachable.
        clock: Wall-clock source used for pairing timestamps.
        disconnect_codes: Table mapping close codes to disconnect classes.
        print_qr: Log each new pairing token as a terminal QR code.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        credentials: CredentialStore,
        transport_factory: TransportFactory,
        *,
        scheduler: RecoveryScheduler | None = None,
        policy: RecoveryPolicy | None = None,
        metrics: BridgeMetrics | None = None,
        probe: Probe | None = None,
        clock: Callable[[], float] = time.time,
        disconnect_codes: dict[int, DisconnectClass] | None = None,
        print_qr: bool = False,
    ):
        self.registry = registry
        self.credentials = credentials
        self.transport_factory = transport_factory
        self.scheduler = scheduler or AsyncioRecoveryScheduler()
        self.policy = policy or RecoveryPolicy()
        self.metrics = metrics
        self.probe = probe
        self.clock = clock
        self.disconnect_codes = disconnect_codes or DISCONNECT_CODES
        self.print_qr = print_qr
        self.logger = get_logger("ConnectionSupervisor")
        self._channels: dict[str, _SessionChannel] = {}

    # ------------------------------------------------------------ public API
    async def connect(self, session_id: str) -> SessionView:
        """Start (or reuse) the connection of ``session_id``.

        Returns as soon as the transport handle exists; pairing and
        authentication continue in the background and are observed by
        polling. A connected session, or one holding a scannable pairing
        artifact, is returned unchanged.

        Raises:
            TransportFailure: If the connection could not be opened. The
                record stays in the registry as ``failed``.
        """
        try:
            async with self.registry.lock(session_id):
                return await self._connect_locked(session_id, reset_attempts=True)
        finally:
            self._refresh_gauge()

    async def disconnect(self, session_id: str) -> bool:
        """Tear down ``session_id`` and forget it.

        Connected sessions are logged out; others are just closed. Teardown
        errors are logged and ignored. Stored credentials are kept.

        Returns:
            False when the session was not registered.
        """
        async with self.registry.lock(session_id):
            record = self.registry.get(session_id)
            if record is None:
                return False
            self._cancel_recovery(record)
            await self._release_connection(record, logout=record.is_connected)
            record.generation += 1
            self._set_status(record, SessionStatus.DISCONNECTED, "disconnect requested")
            self.registry.remove(session_id)
            self._close_channel(session_id)
        self._refresh_gauge()
        return True

    async def restore(self, session_ids: list[str]) -> int:
        """Reconnect the given sessions, typically those with stored credentials.

        Failures are logged per session and do not stop the others.

        Returns:
            The number of sessions whose connection was opened.
        """
        opened = 0
        for session_id in session_ids:
            try:
                await self.connect(session_id)
                opened += 1
            except TransportFailure as exc:
                self.logger.error("Session %s: restore failed: %s", session_id, exc)
        return opened

    async def close_all(self) -> None:
        """Disconnect every registered session."""
        for session_id in self.registry.ids():
            await self.disconnect(session_id)

    async def wait_idle(self, session_id: str | None = None) -> None:
        """Wait until the queued events of one or all sessions are applied."""
        if session_id is not None:
            channels = [self._channels[session_id]] if session_id in self._channels else []
        else:
            channels = list(self._channels.values())
        for channel in channels:
            await channel.queue.join()

    def get(self, session_id: str) -> SessionView | None:
        return self.registry.snapshot(session_id)

    def views(self) -> list[SessionView]:
        return self.registry.snapshots()

    def now(self) -> float:
        return self.clock()

    # -------------------------------------------------------- establishment
    async def _connect_locked(self, session_id: str, *, reset_attempts: bool) -> SessionView:
        now = self.clock()
        record = self.registry.get(session_id)
        action = decide_on_connect(
            record.snapshot() if record is not None else None, now, self.policy.pairing_ttl
        )
        if action is ConnectAction.REUSE:
            self.logger.info("Session %s: reusing %s session", session_id, record.status.value)
            return record.snapshot()

        if record is None:
            record = SessionRecord(session_id=session_id, created_at=now, updated_at=now)
            self.registry.put(session_id, record)
        else:
            self._cancel_recovery(record)
            await self._release_connection(record, logout=False)
            record.pairing = None
            record.account_id = None
            record.last_error = None
        if reset_attempts:
            record.recovery_attempts = 0

        self._set_status(record, SessionStatus.CONNECTING, action.value)
        await self._open(record)
        return record.snapshot()

    async def _open(self, record: SessionRecord) -> None:
        session_id = record.session_id
        record.generation += 1
        generation = record.generation

        def emit(event: TransportEvent) -> None:
            self._enqueue(session_id, generation, event)

        try:
            if self.probe is not None:
                await self.probe()
            creds = await self.credentials.load(session_id)
            self.logger.info(
                "Session %s: opening transport (%s credentials)",
                session_id,
                "stored" if creds else "no",
            )
            connection = await self.transport_factory(session_id, creds, emit)
        except TransportFailure as exc:
            self._fail_open(record, exc.message)
            raise
        except Exception as exc:
            message = f"Failed to open transport for session {session_id}: {exc}"
            self._fail_open(record, message)
            raise TransportFailure(message) from exc
        record.connection = connection
        self._touch(record)

    def _fail_open(self, record: SessionRecord, message: str) -> None:
        # Events emitted by the failed attempt must not apply to the record.
        record.generation += 1
        record.connection = None
        record.last_error = message
        self._set_status(record, SessionStatus.FAILED, "open failed")
        self.logger.error("Session %s: %s", record.session_id, message)

    async def _release_connection(self, record: SessionRecord, *, logout: bool) -> None:
        connection = record.connection
        record.connection = None
        if connection is None:
            return
        try:
            if logout:
                await connection.logout()
            else:
                connection.end()
        except Exception as exc:
            self.logger.warning("Session %s: error closing connection: %s", record.session_id, exc)

    # ----------------------------------------------------------------- events
    def _enqueue(self, session_id: str, generation: int, event: TransportEvent) -> None:
        if self.registry.get(session_id) is None:
            self.logger.debug("Session %s: dropping %s for unregistered session", session_id, type(event).__name__)
            return
        channel = self._channels.get(session_id)
        if channel is None or channel.closed:
            channel = _SessionChannel()
            self._channels[session_id] = channel
        channel.queue.put_nowait((generation, event))
        if channel.task is None:
            channel.task = asyncio.get_running_loop().create_task(
                self._pump(session_id, channel), name=f"session-events-{session_id}"
            )

    async def _pump(self, session_id: str, channel: _SessionChannel) -> None:
        while not channel.closed:
            generation, event = await channel.queue.get()
            try:
                async with self.registry.lock(session_id):
                    await self._apply(session_id, generation, event)
            except Exception:
                self.logger.exception("Session %s: error handling %s", session_id, type(event).__name__)
            finally:
                channel.queue.task_done()
        # Drop whatever arrived after the channel was closed.
        while not channel.queue.empty():
            channel.queue.get_nowait()
            channel.queue.task_done()

    def _close_channel(self, session_id: str) -> None:
        channel = self._channels.pop(session_id, None)
        if channel is None:
            return
        channel.closed = True
        task = channel.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            while not channel.queue.empty():
                channel.queue.get_nowait()
                channel.queue.task_done()

    async def _apply(self, session_id: str, generation: int, event: TransportEvent) -> None:
        record = self.registry.get(session_id)
        if record is None or record.generation != generation:
            self.logger.debug(
                "Session %s: dropping stale %s (generation %s)", session_id, type(event).__name__, generation
            )
            return
        match event:
            case PairingCodeReceived():
                self._on_pairing_code(record, event)
            case ConnectionOpened():
                self._on_open(record, event)
            case ConnectionClosed():
                await self._on_close(record, event)
            case CredentialsUpdated():
                await self._on_credentials(record, event)
            case _:
                self.logger.warning("Session %s: ignoring unknown event %r", session_id, event)
                return
        self._refresh_gauge()

    def _on_pairing_code(self, record: SessionRecord, event: PairingCodeReceived) -> None:
        now = self.clock()
        current = record.pairing
        if current is not None and current.is_valid(now, self.policy.pairing_ttl):
            self.logger.debug("Session %s: keeping current pairing code", record.session_id)
            return
        record.pairing = PairingArtifact(token=event.token, generated_at=now)
        # A fresh token means the transport reached the network.
        record.recovery_attempts = 0
        self._set_status(record, SessionStatus.QR_PENDING, "pairing code received")
        if self.print_qr:
            self.logger.info("Session %s: scan this QR code\n%s", record.session_id, render_qr(event.token))

    def _on_open(self, record: SessionRecord, event: ConnectionOpened) -> None:
        self._cancel_recovery(record)
        record.pairing = None
        record.account_id = event.account_id
        record.recovery_attempts = 0
        record.last_error = None
        self._set_status(record, SessionStatus.CONNECTED, f"account {event.account_id or 'unknown'}")

    async def _on_credentials(self, record: SessionRecord, event: CredentialsUpdated) -> None:
        try:
            await self.credentials.save(record.session_id, event.credentials)
        except Exception:
            self.logger.exception("Session %s: failed to persist credentials", record.session_id)
        if record.pairing is not None and not record.pairing.consumed:
            record.pairing.consume()
            self._set_status(record, SessionStatus.AUTHENTICATING, "pairing code scanned")
        else:
            self._touch(record)

    async def _on_close(self, record: SessionRecord, event: ConnectionClosed) -> None:
        session_id = record.session_id
        disconnect_class = classify_disconnect(event.status_code, self.disconnect_codes)
        record.last_disconnect_code = event.status_code
        if self.metrics is not None:
            self.metrics.inc_disconnect(disconnect_class.value)
        self.logger.info(
            "Session %s: connection closed with status %s (%s)%s",
            session_id,
            event.status_code,
            disconnect_class.value,
            f": {event.reason}" if event.reason else "",
        )

        decision = decide_on_close(
            record.snapshot(), disconnect_class, self.clock(), self.policy, event.status_code
        )

        if decision.remove:
            self._cancel_recovery(record)
            record.connection = None
            record.pairing = None
            record.generation += 1
            self._set_status(record, decision.status, decision.reason)
            self.registry.remove(session_id)
            self._close_channel(session_id)
            if decision.purge_credentials:
                try:
                    await self.credentials.delete(session_id)
                except Exception:
                    self.logger.exception("Session %s: failed to delete credentials", session_id)
            return

        if decision.clear_pairing:
            record.pairing = None
        if decision.error:
            record.last_error = decision.error
        if decision.recovery_delay is None:
            self._cancel_recovery(record)
        self._set_status(record, decision.status, decision.reason)
        if decision.recovery_delay is not None:
            self._schedule_recovery(record, decision.recovery_delay, decision.reason)

    # --------------------------------------------------------------- recovery
    def _schedule_recovery(self, record: SessionRecord, delay: float, reason: str) -> None:
        if record.recovery_timer is not None:
            return
        session_id = record.session_id
        record.recovery_timer = self.scheduler.schedule(
            delay, lambda: self._recover(session_id), name=f"recover-{session_id}"
        )
        if self.metrics is not None:
            self.metrics.inc_reconnect(reason)
        self.logger.info("Session %s: reconnecting in %.1fs (%s)", session_id, delay, reason)

    def _cancel_recovery(self, record: SessionRecord) -> None:
        timer = record.recovery_timer
        record.recovery_timer = None
        if timer is not None:
            timer.cancel()

    async def _recover(self, session_id: str) -> None:
        async with self.registry.lock(session_id):
            record = self.registry.get(session_id)
            if record is None or record.recovery_timer is None:
                return
            record.recovery_timer = None
            record.recovery_attempts += 1
            self.logger.info("Session %s: recovery attempt %d", session_id, record.recovery_attempts)
            try:
                await self._connect_locked(session_id, reset_attempts=False)
            except TransportFailure as exc:
                self.logger.warning("Session %s: recovery attempt failed: %s", session_id, exc)
                self._retry_recovery(record, exc.message)
        self._refresh_gauge()

    def _retry_recovery(self, record: SessionRecord, message: str) -> None:
        attempts = record.recovery_attempts
        if self.policy.exhausted(attempts):
            record.last_error = f"Recovery abandoned after {attempts} attempts ({message})"
            self.logger.error("Session %s: %s", record.session_id, record.last_error)
            return
        self._set_status(record, SessionStatus.RECONNECTING, "open failed")
        self._schedule_recovery(
            record, self.policy.backoff(self.policy.network_delay, attempts), "open_failed"
        )

    # ---------------------------------------------------------------- helpers
    def _set_status(self, record: SessionRecord, status: SessionStatus, reason: str) -> None:
        previous = record.status
        record.status = status
        self._touch(record)
        self.logger.info(
            "Session %s: %s -> %s (%s)", record.session_id, previous.value, status.value, reason
        )

    def _touch(self, record: SessionRecord) -> None:
        record.updated_at = self.clock()

    def _refresh_gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.set_sessions(record.status for record in self.registry.list())
