from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from opentelemetry import trace

from matchroute.core.config import Settings
from matchroute.services.channels import ChannelProvider, DeliveryResult
from matchroute.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    ServiceUnavailableError,
)
from matchroute.services.rate_limit import RateLimitedError, SlidingWindowRateLimiter

__all__ = [
    "DispatchSummary",
    "NotificationOrchestrator",
    "RateLimitedError",
    "ServiceUnavailableError",
    "TransientDeliveryError",
]

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

NOTIFICATION_ACTOR = "system:notifications"


class TransientDeliveryError(Exception):
    """Raised by providers for failures that are worth retrying."""


@dataclass(slots=True)
class DispatchSummary:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    released: int = 0

    def add(self, outcome: str) -> None:
        self.claimed += 1
        if outcome == "sent":
            self.sent += 1
        elif outcome == "failed":
            self.failed += 1
        else:
            self.released += 1

    def as_dict(self) -> dict[str, int]:
        return {"claimed": self.claimed, "sent": self.sent, "failed": self.failed, "released": self.released}


class NotificationOrchestrator:
    def __init__(
        self,
        repository: Any,
        provider: ChannelProvider,
        *,
        rate_limiter: SlidingWindowRateLimiter,
        breakers: CircuitBreakerRegistry,
        batch_size: int = 50,
        lease_seconds: int = 60,
        send_timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 10.0,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: Any,
        provider: ChannelProvider,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> NotificationOrchestrator:
        return cls(
            repository,
            provider,
            rate_limiter=SlidingWindowRateLimiter(
                max_events=settings.notify_rate_limit_max,
                window_seconds=settings.notify_rate_limit_window_seconds,
            ),
            breakers=CircuitBreakerRegistry(CircuitBreakerConfig.from_settings(settings)),
            batch_size=settings.notify_batch_size,
            lease_seconds=settings.notify_lease_seconds,
            send_timeout_seconds=settings.notify_send_timeout_seconds,
            max_attempts=settings.notify_max_attempts,
            retry_base_seconds=settings.notify_retry_base_seconds,
            retry_max_seconds=settings.notify_retry_max_seconds,
            clock=clock,
            sleep=sleep,
        )

    async def dispatch_pending(self, *, routing_id: str | None = None, limit: int | None = None) -> DispatchSummary:
        summary = DispatchSummary()
        with tracer.start_as_current_span("notifications.dispatch") as span:
            events = await self.repository.claim_pending_notifications(
                limit=limit or self.batch_size,
                lease_seconds=self.lease_seconds,
                now=self._clock(),
                routing_id=routing_id,
            )
            span.set_attribute("notifications.claimed", len(events))
            for event in events:
                summary.add(await self.deliver(event))

        if summary.claimed:
            logger.info(
                "notification dispatch claimed=%s sent=%s failed=%s released=%s",
                summary.claimed,
                summary.sent,
                summary.failed,
                summary.released,
            )
        return summary

    async def deliver(self, event: dict[str, Any]) -> str:
        """Deliver one claimed event and persist its outcome. Returns sent, failed or released."""
        with tracer.start_as_current_span("notifications.deliver") as span:
            span.set_attribute("notification.id", event["id"])
            span.set_attribute("notification.channel", event["channel"])
            span.set_attribute("notification.kind", event["kind"])

            sender_key = event.get("sender_id") or "default"
            try:
                self.rate_limiter.check(sender_key)
            except RateLimitedError as exc:
                logger.warning("notification rate limited id=%s sender=%s", event["id"], sender_key)
                await self._record_attempt(event, attempt=0, outcome="rate_limited", error=str(exc))
                return await self._finish(event, status="failed", error="rate_limited")

            breaker = self.breakers.for_channel(event["channel"])
            last_error: str | None = None
            for attempt in range(1, self.max_attempts + 1):
                try:
                    breaker.acquire()
                except ServiceUnavailableError as exc:
                    await self._record_attempt(event, attempt=attempt, outcome="circuit_open", error=str(exc))
                    if event["kind"] == "reminder":
                        await self.repository.release_notification(event["id"], error="circuit_open", now=self._clock())
                        return "released"
                    return await self._finish(event, status="failed", error="circuit_open")

                result = await self._send(event)
                if result.success:
                    breaker.record_success()
                    await self._record_attempt(event, attempt=attempt, outcome="sent", error=None)
                    return await self._finish(event, status="sent", error=None)

                last_error = result.error
                if not result.transient:
                    # The provider answered, so the channel itself is healthy.
                    breaker.record_success()
                    await self._record_attempt(event, attempt=attempt, outcome="permanent_failure", error=result.error)
                    return await self._finish(event, status="failed", error=result.error)

                breaker.record_failure()
                await self._record_attempt(event, attempt=attempt, outcome="transient_failure", error=result.error)
                if attempt < self.max_attempts:
                    await self._sleep(compute_retry_delay_seconds(attempt, self.retry_base_seconds, self.retry_max_seconds))

            logger.warning(
                "notification delivery exhausted id=%s channel=%s attempts=%s error=%s",
                event["id"],
                event["channel"],
                self.max_attempts,
                last_error,
            )
            return await self._finish(event, status="failed", error=last_error)

    async def _send(self, event: dict[str, Any]) -> DeliveryResult:
        try:
            return await asyncio.wait_for(
                self.provider.send(
                    channel=event["channel"],
                    recipient=event["recipient"],
                    template=event["kind"],
                    data=event.get("payload") or {},
                ),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return DeliveryResult(success=False, transient=True, error="timeout")
        except (httpx.HTTPError, TransientDeliveryError) as exc:
            return DeliveryResult(success=False, transient=True, error=f"transient error: {exc}")
        except Exception as exc:
            logger.exception("notification provider crashed id=%s channel=%s", event["id"], event["channel"])
            return DeliveryResult(success=False, transient=True, error=f"provider error: {exc}")

    async def _record_attempt(self, event: dict[str, Any], *, attempt: int, outcome: str, error: str | None) -> None:
        now = self._clock()
        await self.repository.record_notification_attempt(
            event["id"],
            attempt={"attempt": attempt, "outcome": outcome, "error": error, "at": now.isoformat()},
            now=now,
        )

    async def _finish(self, event: dict[str, Any], *, status: str, error: str | None) -> str:
        await self.repository.complete_notification(
            event["id"],
            status=status,
            error=error,
            actor=NOTIFICATION_ACTOR,
            now=self._clock(),
        )
        return status


def compute_retry_delay_seconds(attempt: int, base_seconds: float, max_seconds: float) -> float:
    if base_seconds <= 0:
        return 0.0
    multiplier = max(0, attempt - 1)
    return min(base_seconds * (2**multiplier), max_seconds)
