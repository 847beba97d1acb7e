# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared map from session identifier to session record.

The registry has a single logical writer, the connection supervisor, which
serializes its work per session through :meth:`SessionRegistry.lock`. Any
number of readers (status and QR pollers, the outbound dispatcher) may read
concurrently; they should use :meth:`snapshot` or :meth:`snapshots` to obtain
an immutable :class:`~async_wa_bridge.session.SessionView`.

No ordering between different sessions is guaranteed or required.
"""

from __future__ import annotations

import asyncio

from .session import SessionRecord, SessionView


class SessionRegistry:
    """In-memory session registry with per-session writer locks."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    def put(self, session_id: str, record: SessionRecord) -> None:
        if record.session_id != session_id:
            raise ValueError(f"record belongs to {record.session_id!r}, not {session_id!r}")
        self._records[session_id] = record

    def remove(self, session_id: str) -> SessionRecord | None:
        return self._records.pop(session_id, None)

    def list(self) -> list[SessionRecord]:
        return list(self._records.values())

    def ids(self) -> list[str]:
        return list(self._records)

    def snapshot(self, session_id: str) -> SessionView | None:
        """Return an atomic view of a session, or None when absent."""
        record = self._records.get(session_id)
        return record.snapshot() if record is not None else None

    def snapshots(self) -> list[SessionView]:
        return [record.snapshot() for record in list(self._records.values())]

    def lock(self, session_id: str) -> asyncio.Lock:
        """Return the lock serializing writers of ``session_id``.

        Locks outlive their records so that a writer waiting on a session
        being removed still queues behind the remover. ``asyncio.Lock`` wakes
        waiters in FIFO order, which preserves arrival order.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)
