# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delayed recovery scheduling for the connection supervisor.

The supervisor never calls timer primitives directly; it asks a
:class:`RecoveryScheduler` to run a coroutine function after a delay and
keeps the returned handle on the session record. Idempotency (at most one
outstanding recovery per session) is enforced by the supervisor, which only
schedules when the record holds no handle.

Tests substitute a scheduler driven by virtual time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from .logger import get_logger

RecoveryCallback = Callable[[], Awaitable[None]]

logger = get_logger("RecoveryScheduler")


class RecoveryHandle(Protocol):
    def cancel(self) -> None: ...


class RecoveryScheduler(Protocol):
    def schedule(self, delay: float, callback: RecoveryCallback, *, name: str = "") -> RecoveryHandle: ...


class _AsyncioRecoveryHandle:
    """Timer handle that also cancels the recovery task once it started."""

    def __init__(self) -> None:
        self.timer: asyncio.TimerHandle | None = None
        self.task: asyncio.Task | None = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.timer is not None:
            self.timer.cancel()
        # A running recovery cancels its own timer handle before reconnecting;
        # never cancel the task from inside itself.
        if self.task is not None and not self.task.done() and self.task is not asyncio.current_task():
            self.task.cancel()


class AsyncioRecoveryScheduler:
    """Scheduler backed by ``loop.call_later`` and background tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, delay: float, callback: RecoveryCallback, *, name: str = "") -> _AsyncioRecoveryHandle:
        loop = asyncio.get_running_loop()
        handle = _AsyncioRecoveryHandle()

        def _fire() -> None:
            if handle.cancelled:
                return
            task = loop.create_task(callback(), name=name or "session-recovery")
            handle.task = task
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

        handle.timer = loop.call_later(max(0.0, delay), _fire)
        return handle

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Recovery task %s failed: %s", task.get_name(), exc, exc_info=exc)

    async def close(self) -> None:
        """Cancel recovery tasks that are still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
