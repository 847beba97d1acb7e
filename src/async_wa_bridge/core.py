# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Composition root of the bridge: wires the components and runs their lifecycle.

:class:`BridgeCore` builds the session registry, the credential store, the
connection supervisor, the outbound dispatcher and the email service from a
:class:`~async_wa_bridge.config.BridgeSettings`, and owns their startup and
shutdown. The HTTP layer talks only to the core.

Example:
    Running the core without the HTTP layer::

        core = BridgeCore(load_settings())
        await core.start()
        view = await core.supervisor.connect("shop-1")
        ...
        await core.stop()
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import time
from collections.abc import Callable
from typing import Any

from .config import BridgeSettings
from .credentials import CredentialStore
from .dispatcher import OutboundDispatcher
from .email_service import EmailAccount, EmailService
from .errors import TransportFailure
from .logger import get_logger
from .prometheus import BridgeMetrics
from .rate_limit import RateLimiter
from .registry import SessionRegistry
from .scheduler import AsyncioRecoveryScheduler, RecoveryScheduler
from .session import to_iso
from .smtp_pool import SMTPPool
from .supervisor import ConnectionSupervisor
from .transport import TransportFactory, load_transport_factory, probe_reachability

PROBE_TIMEOUT = 5.0
POOL_CLEANUP_INTERVAL = 150.0


async def _missing_transport(session_id: str, credentials: Any, emit: Any):
    raise TransportFailure(
        "No messaging transport configured. Set [transport] factory or WAB_TRANSPORT_FACTORY."
    )


def build_transport_factory(settings: BridgeSettings) -> TransportFactory:
    """Resolve the configured factory, passing ``connect_timeout`` when it accepts one."""
    if not settings.transport_factory:
        return _missing_transport
    factory = load_transport_factory(settings.transport_factory)
    try:
        params = inspect.signature(factory).parameters
    except (TypeError, ValueError):
        return factory
    if "connect_timeout" in params:
        return functools.partial(factory, connect_timeout=settings.connect_timeout)
    return factory


class BridgeCore:
    """Owns every long-lived component of the bridge.

    Attributes:
        settings: Resolved settings.
        registry: Shared session registry.
        credentials: Credential store.
        metrics: Prometheus metrics collector.
        supervisor: Connection supervisor (single writer of the registry).
        dispatcher: Outbound message dispatcher.
        email: Outbound email service.
    """

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        scheduler: RecoveryScheduler | None = None,
        metrics: BridgeMetrics | None = None,
        clock: Callable[[], float] = time.time,
        limiter_clock: Callable[[], float] = time.monotonic,
        probe: Callable[[], Any] | None = None,
    ):
        self.settings = settings or BridgeSettings()
        self.logger = get_logger("BridgeCore")
        self.metrics = metrics or BridgeMetrics()
        self.registry = SessionRegistry()
        self.credentials = CredentialStore(self.settings.db_path)
        self.scheduler = scheduler or AsyncioRecoveryScheduler()

        if probe is None and self.settings.probe_url:
            probe = functools.partial(probe_reachability, self.settings.probe_url, PROBE_TIMEOUT)

        self.supervisor = ConnectionSupervisor(
            self.registry,
            self.credentials,
            transport_factory or build_transport_factory(self.settings),
            scheduler=self.scheduler,
            policy=self.settings.recovery,
            metrics=self.metrics,
            probe=probe,
            clock=clock,
            print_qr=self.settings.print_qr,
        )
        self.message_limiter = RateLimiter(
            self.settings.message_max, self.settings.message_window, name="messages", clock=limiter_clock
        )
        self.dispatcher = OutboundDispatcher(self.registry, self.message_limiter, self.metrics)

        self.email_limiter = RateLimiter(
            self.settings.email_max, self.settings.email_window, name="email", clock=limiter_clock
        )
        self.smtp_pool = SMTPPool(ttl=self.settings.smtp_pool_ttl)
        self.email = EmailService(
            EmailAccount(
                host=self.settings.smtp_host,
                port=self.settings.smtp_port,
                user=self.settings.smtp_user,
                password=self.settings.smtp_password,
                use_tls=self.settings.smtp_use_tls,
            ),
            pool=self.smtp_pool,
            limiter=self.email_limiter,
            metrics=self.metrics,
        )
        self.started_at = time.time()
        self._task_cleanup: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    async def start(self) -> None:
        """Initialize storage, start maintenance tasks and optionally restore sessions."""
        self.logger.debug("Starting BridgeCore...")
        await self.credentials.init_db()
        self._stop.clear()
        self.started_at = time.time()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")
        if self.settings.restore_sessions:
            session_ids = await self.credentials.list_sessions()
            if session_ids:
                self.logger.info("Restoring %d stored session(s)", len(session_ids))
                await self.supervisor.restore(session_ids)
        self.logger.info("BridgeCore started")

    async def stop(self) -> None:
        """Tear down every session, bounded by the shutdown timeout.

        Connected sessions are logged out and the others are closed. When the
        timeout elapses, the remaining teardown is abandoned.
        """
        self._stop.set()
        timeout = self.settings.shutdown_timeout
        try:
            await asyncio.wait_for(self.supervisor.close_all(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Session teardown did not finish within %.1fs; forcing shutdown", timeout)
        close = getattr(self.scheduler, "close", None)
        if close is not None:
            await close()
        if self._task_cleanup is not None:
            self._task_cleanup.cancel()
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        await self.smtp_pool.close()
        self.logger.info("BridgeCore stopped")

    async def _cleanup_loop(self) -> None:
        """Periodically drop expired or broken pooled SMTP connections."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=POOL_CLEANUP_INTERVAL)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.smtp_pool.cleanup()
            except Exception:
                self.logger.exception("SMTP pool cleanup failed")

    def health(self) -> dict[str, Any]:
        """Service health summary in the shape served by ``GET /health``."""
        views = self.supervisor.views()
        return {
            "status": "ok",
            "timestamp": to_iso(time.time()),
            "uptime": round(self.uptime, 3),
            "services": {
                "messaging": {
                    "activeSessions": len(views),
                    "sessions": [
                        {"sessionId": view.session_id, "connected": view.is_connected} for view in views
                    ],
                },
                "email": {
                    "configured": self.email.is_configured,
                    "provider": self.email.provider,
                },
            },
        }
