from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from opentelemetry import trace

from matchroute.core.config import Settings
from matchroute.services.counterparties import CounterpartyDirectory, CounterpartyLookupError
from matchroute.services.matching import CounterpartyProfile, MatchWeights, rank_candidates, subject_from_request
from matchroute.services.notifications import compute_retry_delay_seconds
from matchroute.services.routing import RouteOutcome, Router

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Matcher:
    """Scores the counterparty pool for a searching request, stores the ranking and routes it.

    Candidates are only written once a lookup succeeds, so a request whose lookup
    failed stays in ``searching`` with no candidate rows and is matched again later.
    """

    def __init__(
        self,
        repository: Any,
        directory: CounterpartyDirectory,
        router: Router,
        *,
        weights: MatchWeights,
        lookup_max_attempts: int = 3,
        lookup_retry_base_seconds: float = 0.5,
        lookup_retry_max_seconds: float = 5.0,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.directory = directory
        self.router = router
        self.weights = weights
        self.lookup_max_attempts = max(1, lookup_max_attempts)
        self.lookup_retry_base_seconds = lookup_retry_base_seconds
        self.lookup_retry_max_seconds = lookup_retry_max_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: Any,
        directory: CounterpartyDirectory,
        router: Router,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Matcher:
        return cls(
            repository,
            directory,
            router,
            weights=MatchWeights.from_settings(settings),
            lookup_max_attempts=settings.counterparty_lookup_max_attempts,
            lookup_retry_base_seconds=settings.counterparty_lookup_retry_base_seconds,
            lookup_retry_max_seconds=settings.counterparty_lookup_retry_max_seconds,
            clock=clock,
            sleep=sleep,
        )

    async def run(self, request_id: str, *, actor: str) -> RouteOutcome:
        request = await self.repository.get_request(request_id)
        snapshot = await self.repository.get_snapshot(request_id)
        with tracer.start_as_current_span("match.run") as span:
            span.set_attribute("request.id", request_id)
            pool = await self._lookup_pool(request, snapshot)
            ranked = rank_candidates(
                subject=subject_from_request(request, snapshot),
                pool=pool,
                weights=self.weights,
            )
            await self.repository.replace_candidates(
                request_id,
                candidates=[row.to_record() for row in ranked],
                actor=actor,
                now=self._clock(),
            )
            span.set_attribute("match.pool_size", len(pool))
            span.set_attribute("match.eligible", sum(1 for row in ranked if row.eligible))

        return await self.router.route(request_id)

    async def _lookup_pool(self, request: dict[str, Any], snapshot: dict[str, Any]) -> list[CounterpartyProfile]:
        attempt = 1
        while True:
            try:
                return await self.directory.get_pool(category=request["category"], geography=snapshot["geography"])
            except CounterpartyLookupError as exc:
                if attempt >= self.lookup_max_attempts:
                    logger.warning(
                        "counterparty lookup exhausted request_id=%s attempts=%s: %s",
                        request["id"],
                        attempt,
                        exc,
                    )
                    raise
                delay = compute_retry_delay_seconds(
                    attempt,
                    self.lookup_retry_base_seconds,
                    self.lookup_retry_max_seconds,
                )
                logger.info(
                    "counterparty lookup failed request_id=%s attempt=%s retry_in=%.1fs: %s",
                    request["id"],
                    attempt,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1
