from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from matchroute.core.config import Settings

logger = logging.getLogger(__name__)


class ServiceUnavailableError(Exception):
    """Raised when a channel circuit is open and the call is rejected without reaching the provider."""


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    failure_window_seconds: float = 60.0
    cooldown_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            failure_window_seconds=settings.circuit_failure_window_seconds,
            cooldown_seconds=settings.circuit_cooldown_seconds,
        )


class ChannelCircuitBreaker:
    """Consecutive-failure breaker for one delivery channel.

    Callers bracket each provider call with ``acquire()`` and one of
    ``record_success()`` / ``record_failure()``. While half-open exactly one trial
    call is admitted; everything else fails fast.
    """

    def __init__(
        self,
        channel: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.config = config
        self._clock = clock
        self._state = CircuitBreakerState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def acquire(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitBreakerState.OPEN:
                remaining = self.config.cooldown_seconds - (self._clock() - self._opened_at)
                raise ServiceUnavailableError(f"circuit open for channel {self.channel}; retry in {remaining:.1f}s")
            if self._state == CircuitBreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise ServiceUnavailableError(f"circuit half-open for channel {self.channel}; trial in flight")
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                logger.info("circuit closed channel=%s", self.channel)
            self._state = CircuitBreakerState.CLOSED
            self._failures.clear()
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._open(now)
                return

            horizon = now - self.config.failure_window_seconds
            while self._failures and self._failures[0] < horizon:
                self._failures.popleft()
            self._failures.append(now)
            if len(self._failures) >= self.config.failure_threshold:
                self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self._failures.clear()
        logger.warning(
            "circuit opened channel=%s cooldown_seconds=%.1f",
            self.channel,
            self.config.cooldown_seconds,
        )

    def _maybe_half_open(self) -> None:
        if self._state != CircuitBreakerState.OPEN:
            return
        if self._clock() - self._opened_at >= self.config.cooldown_seconds:
            self._state = CircuitBreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("circuit half-open channel=%s", self.channel)


class CircuitBreakerRegistry:
    """Process-wide breakers, one per channel."""

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self._breakers: dict[str, ChannelCircuitBreaker] = {}
        self._lock = threading.Lock()

    def for_channel(self, channel: str) -> ChannelCircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(channel)
            if breaker is None:
                breaker = ChannelCircuitBreaker(channel, self.config, clock=self._clock)
                self._breakers[channel] = breaker
            return breaker
