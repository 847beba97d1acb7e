# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio SMTP connection pool keyed by account parameters.

Connections are reused across HTTP requests that relay mail through the same
account. A pooled connection is handed to one sender at a time: senders
sharing an account queue on that account's lock, while different accounts
proceed concurrently.

The pool handles the connection lifecycle:
- TTL-based expiration
- health checks via SMTP NOOP before reuse
- reconnection when a connection is stale or broken
- cleanup of expired connections

Example:
    Sending through a pooled connection::

        pool = SMTPPool(ttl=300)
        async with pool.connection("smtp.example.com", 587, "me@example.com", "secret", use_tls=True) as smtp:
            await smtp.send_message(message)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

from .logger import get_logger

PoolKey = tuple[str, int, "str | None", "str | None", bool]


class SMTPPool:
    """Pool of authenticated SMTP connections, one per account.

    Attributes:
        ttl: Maximum idle age in seconds before a pooled connection is replaced.
        pool: Mapping of account key to ``(smtp, last_used)``.
    """

    def __init__(self, ttl: int = 300, *, timeout: float = 10.0):
        """Initialize the pool.

        Args:
            ttl: Idle time-to-live in seconds for pooled connections.
            timeout: Socket timeout passed to aiosmtplib; connection setup
                including login is bounded by ``timeout + 5`` seconds.
        """
        self.ttl = ttl
        self.timeout = timeout
        self.pool: dict[PoolKey, tuple[aiosmtplib.SMTP, float]] = {}
        self._locks: dict[PoolKey, asyncio.Lock] = {}
        self.logger = get_logger("SMTPPool")

    async def _connect(self, host: str, port: int, user: str | None, password: str | None, use_tls: bool) -> aiosmtplib.SMTP:
        """Open and authenticate a new SMTP connection.

        Port 465 with TLS uses implicit TLS; any other port with TLS uses
        STARTTLS; without TLS the connection stays plain.
        """
        if use_tls and port == 465:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=True, timeout=self.timeout)
        elif use_tls:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=True, use_tls=False, timeout=self.timeout)
        else:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=False, timeout=self.timeout)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return True when the connection answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    def _lock_for(self, key: PoolKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _acquire(self, key: PoolKey) -> aiosmtplib.SMTP:
        entry = self.pool.pop(key, None)
        if entry is not None:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)
        host, port, user, password, use_tls = key
        return await self._connect(host, port, user, password, use_tls)

    @asynccontextmanager
    async def connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow the account's connection, creating it when needed.

        The connection returns to the pool when the block exits normally; it
        is closed and dropped when the block raises.

        Raises:
            asyncio.TimeoutError: If connection establishment times out.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        key: PoolKey = (host, port, user, password, use_tls)
        async with self._lock_for(key):
            smtp = await self._acquire(key)
            try:
                yield smtp
            except BaseException:
                await self._quit(smtp)
                raise
            self.pool[key] = (smtp, time.time())

    async def cleanup(self) -> None:
        """Close pooled connections that expired or fail the health check.

        Connections currently borrowed are not in the pool and are left alone.
        """
        now = time.time()
        for key, (smtp, last_used) in list(self.pool.items()):
            lock = self._lock_for(key)
            if lock.locked():
                continue
            async with lock:
                if self.pool.get(key, (None,))[0] is not smtp:
                    continue
                if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                    self.pool.pop(key, None)
                    await self._quit(smtp)

    async def close(self) -> None:
        """Close every pooled connection."""
        entries = list(self.pool.values())
        self.pool.clear()
        for smtp, _last_used in entries:
            await self._quit(smtp)
