from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable


class RateLimitedError(Exception):
    """Raised when a sender exceeds its notification allowance for the current window."""


class SlidingWindowRateLimiter:
    def __init__(
        self,
        *,
        max_events: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_events = max(1, max_events)
        self.window_seconds = max(0.001, window_seconds)
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._pruned_at = clock()
        self._lock = threading.Lock()

    def check(self, key: str) -> None:
        """Record one event for ``key`` or raise when the window is full."""
        with self._lock:
            now = self._clock()
            horizon = now - self.window_seconds
            self._prune_idle(now, horizon)
            events = self._events.setdefault(key, deque())
            while events and events[0] <= horizon:
                events.popleft()
            if len(events) >= self.max_events:
                retry_in = events[0] + self.window_seconds - now
                raise RateLimitedError(f"rate limit exceeded for sender {key}; retry in {retry_in:.1f}s")
            events.append(now)

    def remaining(self, key: str) -> int:
        with self._lock:
            horizon = self._clock() - self.window_seconds
            events = self._events.get(key, deque())
            return max(0, self.max_events - sum(1 for stamp in events if stamp > horizon))

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def _prune_idle(self, now: float, horizon: float) -> None:
        # At most one full scan per window; a key whose newest event left the window is empty after eviction.
        if now - self._pruned_at < self.window_seconds:
            return
        self._pruned_at = now
        idle = [key for key, events in self._events.items() if not events or events[-1] <= horizon]
        for key in idle:
            del self._events[key]
