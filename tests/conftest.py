"""Shared test doubles: fake transport and SMTP pool, virtual-time scheduler and clock."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import pytest
import pytest_asyncio

from async_wa_bridge.credentials import CredentialStore
from async_wa_bridge.policy import RecoveryPolicy
from async_wa_bridge.prometheus import BridgeMetrics
from async_wa_bridge.registry import SessionRegistry
from async_wa_bridge.supervisor import ConnectionSupervisor
from async_wa_bridge.transport import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    MessagingTransport,
    PairingCodeReceived,
)

T0 = 1_700_000_000.0


class ManualClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualHandle:
    def __init__(self, due: float, delay: float, callback, name: str):
        self.due = due
        self.delay = delay
        self.callback = callback
        self.name = name
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Recovery scheduler driven by a ManualClock; timers fire only in ``advance``."""

    def __init__(self, clock: ManualClock):
        self.clock = clock
        self.handles: list[ManualHandle] = []

    def schedule(self, delay, callback, *, name=""):
        handle = ManualHandle(self.clock() + delay, delay, callback, name)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[ManualHandle]:
        return [h for h in self.handles if not h.cancelled]

    async def advance(self, seconds: float) -> None:
        target = self.clock.now + seconds
        while True:
            due = sorted((h for h in self.pending if h.due <= target), key=lambda h: h.due)
            if not due:
                break
            handle = due[0]
            self.handles.remove(handle)
            self.clock.now = max(self.clock.now, handle.due)
            await handle.callback()
        self.clock.now = target


class FakeTransport(MessagingTransport):
    def __init__(self, session_id: str, credentials: dict[str, Any] | None, emit):
        self.session_id = session_id
        self.credentials = credentials
        self.emit = emit
        self.sent: list[tuple[str, str]] = []
        self.send_error: Exception | None = None
        self.logout_error: Exception | None = None
        self.logged_out = False
        self.ended = False

    async def send_text(self, jid: str, text: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, text))
        return f"MSG-{len(self.sent)}"

    async def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.logged_out = True

    def end(self) -> None:
        self.ended = True

    # event helpers
    def qr(self, token: str = "QR-TOKEN") -> None:
        self.emit(PairingCodeReceived(token))

    def opened(self, account_id: str | None = "391234567890") -> None:
        self.emit(ConnectionOpened(account_id))

    def closed(self, status_code: int | None, reason: str | None = None) -> None:
        self.emit(ConnectionClosed(status_code, reason))

    def creds(self, data: dict[str, Any] | None = None) -> None:
        self.emit(CredentialsUpdated(data or {"me": {"id": "391234567890:1@s.whatsapp.net"}}))


class FakeTransportFactory:
    def __init__(self):
        self.created: list[FakeTransport] = []
        self.error: Exception | None = None
        self.on_create = None

    async def __call__(self, session_id, credentials, emit):
        if self.error is not None:
            raise self.error
        transport = FakeTransport(session_id, credentials, emit)
        self.created.append(transport)
        if self.on_create is not None:
            self.on_create(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class RecordingSMTP:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    async def send_message(self, message, recipients=None):
        if self.error is not None:
            raise self.error
        self.sent.append((message, recipients))
        return {}, "250 2.0.0 OK queued"


class FakePool:
    """Stands in for SMTPPool, lending the same connection to every account."""

    def __init__(self, smtp=None):
        self.smtp = smtp or RecordingSMTP()
        self.borrowed = []

    @asynccontextmanager
    async def connection(self, host, port, user, password, *, use_tls):
        self.borrowed.append((host, port, user, password, use_tls))
        yield self.smtp

    async def cleanup(self):
        pass

    async def close(self):
        pass


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def metrics():
    return BridgeMetrics()


@pytest_asyncio.fixture
async def store(tmp_path):
    store = CredentialStore(str(tmp_path / "credentials.db"))
    await store.init_db()
    return store


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def supervisor(registry, store, factory, scheduler, clock, metrics):
    return ConnectionSupervisor(
        registry,
        store,
        factory,
        scheduler=scheduler,
        policy=RecoveryPolicy(),
        metrics=metrics,
        clock=clock,
    )
