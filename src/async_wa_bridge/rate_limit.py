# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Sliding-window rate limiter with in-memory request logs.

This module implements per-key rate limiting over a trailing time window.
Each key (a session id for outbound messages, a recipient address for
outbound email) keeps the timestamps of its accepted requests; timestamps
older than the window are pruned lazily on every check.

The sliding window approach ensures fair distribution of requests over time
rather than allowing burst behavior at fixed window boundaries. State is not
persisted: limits restart with the process.

Example:
    Throttling outbound messages::

        limiter = RateLimiter(max_requests=30, window_seconds=60, name="messages")
        limiter.check(session_id)   # raises RateLimitExceeded when saturated
        await connection.send_text(jid, body)
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

from .errors import RateLimitExceeded

DEFAULT_MESSAGE_LIMIT = (30, 60.0)
DEFAULT_EMAIL_LIMIT = (50, 3600.0)


class RateLimiter:
    """Per-key sliding-window request counter.

    ``check`` contains no suspension point, so under the single asyncio loop
    every check runs atomically: checks for the same key are serialized and
    checks for different keys never interfere.

    Attributes:
        max_requests: Maximum accepted requests per key inside the window.
        window_seconds: Length of the trailing window in seconds.
        name: Label used in metrics and logs ("messages", "email").
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            max_requests: Requests allowed per key inside the window. Must be
                positive.
            window_seconds: Window length in seconds. Must be positive.
            name: Label for metrics and logs.
            clock: Monotonic time source; tests inject a controllable one.
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self.name = name
        self._clock = clock
        self._requests: dict[str, deque[float]] = {}

    def _prune(self, key: str, now: float) -> deque[float]:
        entries = self._requests.get(key)
        if entries is None:
            entries = deque()
            self._requests[key] = entries
        cutoff = now - self.window_seconds
        while entries and entries[0] <= cutoff:
            entries.popleft()
        return entries

    def check(self, key: str) -> None:
        """Record a request for ``key`` or reject it.

        Args:
            key: Limiter key (session id or recipient address).

        Raises:
            RateLimitExceeded: When ``max_requests`` requests were already
                accepted inside the window. ``retry_after`` is the time until
                the oldest of them leaves the window, never more than the
                window itself.
        """
        now = self._clock()
        entries = self._prune(key, now)
        if len(entries) >= self.max_requests:
            oldest = entries[0]
            wait = self.window_seconds - (now - oldest)
            raise RateLimitExceeded(min(self.window_seconds, max(0.0, wait)))
        entries.append(now)

    def remaining(self, key: str) -> int:
        """Return how many requests ``key`` may still issue in the current window."""
        entries = self._prune(key, self._clock())
        return max(0, self.max_requests - len(entries))

    def reset(self, key: str | None = None) -> None:
        """Forget recorded requests for one key, or for every key."""
        if key is None:
            self._requests.clear()
        else:
            self._requests.pop(key, None)
