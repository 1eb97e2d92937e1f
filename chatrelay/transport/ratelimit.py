"""Sliding-window admission control for socket creation.

Timestamps of admitted requests are kept in a deque. On every check, entries
older than the window are purged first; the request is admitted only while
fewer than ``max_requests`` remain.

A refused caller waits a fixed delay and asks again rather than computing the
exact time until the oldest entry leaves the window.
"""

from __future__ import annotations

import collections
import time
from typing import Callable

from chatrelay.errors import RateLimitError

TimeFn = Callable[[], float]


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_requests: int,
        window_s: float,
        retry_delay_s: float = 5.0,
        now_fn: TimeFn | None = None,
    ) -> None:
        self.max_requests = int(max_requests)
        self.window_s = float(window_s)
        self.retry_delay_s = float(retry_delay_s)
        self._now = now_fn or time.monotonic
        self._events: collections.deque[float] = collections.deque()

    def _purge(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._events and self._events[0] < cutoff:
            self._events.popleft()

    def admit(self) -> bool:
        now = self._now()
        self._purge(now)
        if len(self._events) >= self.max_requests:
            return False
        self._events.append(now)
        return True

    def consume(self) -> None:
        if not self.admit():
            raise RateLimitError(
                limit=self.max_requests,
                window_s=self.window_s,
                retry_in=self.retry_delay_s,
            )

    def in_window(self) -> int:
        self._purge(self._now())
        return len(self._events)
