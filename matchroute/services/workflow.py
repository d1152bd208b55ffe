from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Awaitable, Callable

from matchroute.core.config import Settings, get_settings
from matchroute.schemas.requests import RequestCreate
from matchroute.services import lifecycle
from matchroute.services.channels import ChannelProvider, build_channel_provider
from matchroute.services.counterparties import CounterpartyDirectory, build_counterparty_directory
from matchroute.services.decisions import DecisionHandler
from matchroute.services.lifecycle import PolicyBook, parse_request_type_policies
from matchroute.services.matcher import Matcher
from matchroute.services.notifications import DispatchSummary, NotificationOrchestrator
from matchroute.services.repository import RepositoryConflictError, get_repository
from matchroute.services.routing import Exhausted, NotificationComposer, Routed, RouteOutcome, Router
from matchroute.workers.sla import SlaWorker, SweepSummary

logger = logging.getLogger(__name__)

MATCH_ACTOR = "system:matcher"


class Workflow:
    """Entry points shared by the HTTP API and the background scheduler."""

    def __init__(
        self,
        *,
        repository: Any,
        matcher: Matcher,
        router: Router,
        decisions: DecisionHandler,
        orchestrator: NotificationOrchestrator,
        sla_worker: SlaWorker,
        clock: Callable[[], datetime],
    ) -> None:
        self.repository = repository
        self.matcher = matcher
        self.router = router
        self.decisions = decisions
        self.orchestrator = orchestrator
        self.sla_worker = sla_worker
        self._clock = clock

    async def create_request(self, payload: RequestCreate, *, actor: str) -> dict[str, Any]:
        request = await self.repository.create_request(
            requester_id=payload.requester_id,
            item_id=payload.item_id,
            category=payload.category,
            terms=payload.terms,
            organization_id=payload.organization_id,
            request_type=payload.request_type,
            metadata=payload.metadata,
            snapshot=payload.snapshot.model_dump(),
            actor=actor,
            now=self._clock(),
        )
        logger.info("request created request_id=%s item_id=%s", request["id"], request["item_id"])
        return request

    async def trigger_match(self, request_id: str, *, actor: str = MATCH_ACTOR) -> dict[str, Any]:
        """Score the pool and route the request; repeating the call on a routed or settled request is a no-op."""
        request = await self.repository.get_request(request_id)
        if request["status"] == lifecycle.DRAFT:
            try:
                request = await self.repository.transition_request(
                    request_id,
                    from_status=lifecycle.DRAFT,
                    to_status=lifecycle.SEARCHING,
                    actor=actor,
                    reason="match requested",
                    now=self._clock(),
                )
            except RepositoryConflictError:
                request = await self.repository.get_request(request_id)

        if request["status"] != lifecycle.SEARCHING:
            return _outcome_view(request, outcome="settled")

        outcome = await self.matcher.run(request_id, actor=actor)
        return await self._route_view(request_id, outcome)

    async def get_request_status(self, request_id: str) -> dict[str, Any]:
        request = await self.repository.get_request(request_id)
        return {
            "request": request,
            "snapshot": await self.repository.get_snapshot(request_id),
            "candidates": await self.repository.list_candidates(request_id),
            "active_routing": await self.repository.get_active_routing(request_id),
            "routings": await self.repository.list_routings(request_id),
            "decisions": await self.repository.list_decisions(request_id),
            "notifications": await self.repository.list_notifications(request_id),
        }

    async def get_audit_trail(self, request_id: str, *, limit: int = 200) -> list[dict[str, Any]]:
        await self.repository.get_request(request_id)
        return await self.repository.list_audit_entries(request_id=request_id, limit=limit)

    async def submit_decision(
        self,
        token: str,
        *,
        decision: str,
        proposed_terms: float | None = None,
        message: str | None = None,
        reason: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        return await self.decisions.submit_with_token(
            token,
            decision=decision,
            proposed_terms=proposed_terms,
            message=message,
            reason=reason,
        )

    async def run_sla_sweep(self, now: datetime | None = None) -> SweepSummary:
        return await self.sla_worker.sweep(now)

    async def dispatch_notifications(self) -> DispatchSummary:
        return await self.orchestrator.dispatch_pending()

    async def drain(self) -> None:
        await self.router.drain()

    async def close(self) -> None:
        await self.drain()
        await self.repository.close()

    async def _route_view(self, request_id: str, outcome: RouteOutcome) -> dict[str, Any]:
        request = await self.repository.get_request(request_id)
        if isinstance(outcome, Routed):
            return _outcome_view(
                request,
                outcome="routed",
                routing_id=outcome.routing["id"],
                counterparty_id=outcome.routing["counterparty_id"],
            )
        if isinstance(outcome, Exhausted):
            return _outcome_view(request, outcome="exhausted", reason=outcome.reason)
        return _outcome_view(request, outcome="settled")


def _outcome_view(request: dict[str, Any], *, outcome: str, **extra: Any) -> dict[str, Any]:
    view = {
        "request_id": request["id"],
        "status": request["status"],
        "outcome": outcome,
        "reason": request.get("status_reason") if outcome != "routed" else None,
    }
    view.update(extra)
    return view


def build_workflow(
    settings: Settings,
    *,
    repository: Any,
    directory: CounterpartyDirectory | None = None,
    provider: ChannelProvider | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    immediate_dispatch: bool = True,
) -> Workflow:
    clock = clock or (lambda: datetime.now(timezone.utc))
    policies = PolicyBook(parse_request_type_policies(settings.request_type_policies_json))
    orchestrator = NotificationOrchestrator.from_settings(
        settings,
        repository=repository,
        provider=provider or build_channel_provider(settings),
        clock=clock,
        sleep=sleep,
    )
    composer = NotificationComposer(
        channels=settings.notify_channels,
        decision_base_url=settings.decision_base_url,
        token_secret=settings.routing_token_secret,
        decision_window_seconds=settings.decision_window_seconds,
    )
    router = Router(
        repository,
        composer,
        orchestrator=orchestrator if immediate_dispatch else None,
        max_conflict_retries=settings.max_conflict_retries,
        clock=clock,
    )
    matcher = Matcher.from_settings(
        settings,
        repository=repository,
        directory=directory or build_counterparty_directory(settings),
        router=router,
        clock=clock,
        sleep=sleep,
    )
    return Workflow(
        repository=repository,
        matcher=matcher,
        router=router,
        decisions=DecisionHandler(
            repository,
            router,
            policies,
            token_secret=settings.routing_token_secret,
            clock=clock,
        ),
        orchestrator=orchestrator,
        sla_worker=SlaWorker(
            repository,
            router,
            composer,
            orchestrator,
            policies,
            matcher=matcher,
            decision_window_seconds=settings.decision_window_seconds,
            reminder_after_seconds=settings.reminder_after_seconds,
            searching_stall_seconds=settings.searching_stall_seconds,
            batch_size=settings.sla_sweep_batch_size,
            clock=clock,
        ),
        clock=clock,
    )


@lru_cache
def get_workflow() -> Workflow:
    return build_workflow(get_settings(), repository=get_repository())
