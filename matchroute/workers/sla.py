from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from opentelemetry import trace

from matchroute.services import lifecycle
from matchroute.services.counterparties import CounterpartyLookupError
from matchroute.services.lifecycle import PolicyBook
from matchroute.services.matcher import Matcher
from matchroute.services.notifications import DispatchSummary, NotificationOrchestrator
from matchroute.services.repository import RepositoryConflictError
from matchroute.services.routing import Exhausted, NotificationComposer, Routed, Router
from matchroute.workers.thresholds import expiry_due, qualifies_for_auto_approval, reminder_due

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SLA_ACTOR = "system:sla"
AUTO_APPROVED_REASON = "Auto-approved under threshold"


@dataclass(slots=True)
class SweepSummary:
    reminders_created: int = 0
    auto_approved: int = 0
    expired: int = 0
    rerouted: int = 0
    recovered: int = 0
    skipped: int = 0
    notifications: DispatchSummary = field(default_factory=DispatchSummary)

    def as_dict(self) -> dict[str, Any]:
        return {
            "reminders_created": self.reminders_created,
            "auto_approved": self.auto_approved,
            "expired": self.expired,
            "rerouted": self.rerouted,
            "recovered": self.recovered,
            "skipped": self.skipped,
            "notifications": self.notifications.as_dict(),
        }


class SlaWorker:
    """Time-driven sweep over open routings.

    Every step re-reads state and lets the repository re-check status inside its
    own transaction, so overlapping sweeps only ever produce skips.
    """

    def __init__(
        self,
        repository: Any,
        router: Router,
        composer: NotificationComposer,
        orchestrator: NotificationOrchestrator,
        policies: PolicyBook,
        *,
        matcher: Matcher | None = None,
        decision_window_seconds: int,
        reminder_after_seconds: int,
        searching_stall_seconds: int,
        batch_size: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.router = router
        self.composer = composer
        self.orchestrator = orchestrator
        self.policies = policies
        self.matcher = matcher
        self.decision_window_seconds = decision_window_seconds
        self.reminder_after_seconds = reminder_after_seconds
        self.searching_stall_seconds = searching_stall_seconds
        self.batch_size = batch_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def sweep(self, now: datetime | None = None) -> SweepSummary:
        now = now or self._clock()
        summary = SweepSummary()
        with tracer.start_as_current_span("sla.sweep") as span:
            await self._send_reminders(now, summary)
            await self._resolve_expired(now, summary)
            await self._recover_stalled(now, summary)
            summary.notifications = await self.orchestrator.dispatch_pending()
            for key, value in summary.as_dict().items():
                if isinstance(value, int):
                    span.set_attribute(f"sla.{key}", value)

        logger.info(
            "sla sweep reminders=%s auto_approved=%s expired=%s rerouted=%s recovered=%s skipped=%s",
            summary.reminders_created,
            summary.auto_approved,
            summary.expired,
            summary.rerouted,
            summary.recovered,
            summary.skipped,
        )
        return summary

    async def _send_reminders(self, now: datetime, summary: SweepSummary) -> None:
        routings = await self.repository.list_due_routings(
            dispatched_before=now - timedelta(seconds=self.reminder_after_seconds),
            dispatched_after=now - timedelta(seconds=self.decision_window_seconds),
            without_reminder=True,
            limit=self.batch_size,
        )
        for routing in routings:
            if not reminder_due(
                routing,
                reminder_after_seconds=self.reminder_after_seconds,
                window_seconds=self.decision_window_seconds,
                now=now,
            ):
                continue
            request = await self.repository.get_request(routing["request_id"])
            contacts = await self._contacts_for(routing)
            notifications = self.composer.reminders(request=request, routing=routing, contacts=contacts, now=now)
            if not notifications:
                continue
            created = await self.repository.create_reminders(
                routing["id"],
                notifications=notifications,
                actor=SLA_ACTOR,
                now=now,
            )
            if created:
                summary.reminders_created += len(created)

    async def _resolve_expired(self, now: datetime, summary: SweepSummary) -> None:
        routings = await self.repository.list_due_routings(
            dispatched_before=now - timedelta(seconds=self.decision_window_seconds),
            limit=self.batch_size,
        )
        for routing in routings:
            if not expiry_due(routing, window_seconds=self.decision_window_seconds, now=now):
                continue
            request = await self.repository.get_request(routing["request_id"])
            policy = self.policies.for_type(request["request_type"])
            try:
                if qualifies_for_auto_approval(request, routing):
                    _, created = await self.repository.record_decision(
                        routing["id"],
                        decision="approved",
                        proposed_terms=None,
                        reason=AUTO_APPROVED_REASON,
                        message=None,
                        decided_by="system",
                        decline_action=policy.decline_action,
                        actor=SLA_ACTOR,
                        rule="auto_approved",
                        now=now,
                    )
                    if created:
                        summary.auto_approved += 1
                    else:
                        summary.skipped += 1
                    continue

                updated = await self.repository.close_timed_out_routing(
                    routing["id"],
                    timeout_action=policy.timeout_action,
                    actor=SLA_ACTOR,
                    now=now,
                )
                if updated["status"] == lifecycle.SEARCHING:
                    await self.router.route(request["id"])
                    summary.rerouted += 1
                else:
                    summary.expired += 1
            except RepositoryConflictError as exc:
                logger.info("sla expiry skipped routing_id=%s: %s", routing["id"], exc)
                summary.skipped += 1

    async def _recover_stalled(self, now: datetime, summary: SweepSummary) -> None:
        stalled = await self.repository.list_stalled_requests(
            status=lifecycle.SEARCHING,
            updated_before=now - timedelta(seconds=self.searching_stall_seconds),
            limit=self.batch_size,
        )
        for request in stalled:
            try:
                # No candidate rows means matching never completed for this request.
                if self.matcher is not None and not await self.repository.list_candidates(request["id"]):
                    outcome = await self.matcher.run(request["id"], actor=SLA_ACTOR)
                else:
                    outcome = await self.router.route(request["id"])
            except RepositoryConflictError as exc:
                logger.info("stalled recovery skipped request_id=%s: %s", request["id"], exc)
                summary.skipped += 1
                continue
            except CounterpartyLookupError as exc:
                logger.warning("stalled recovery lookup failed request_id=%s: %s", request["id"], exc)
                summary.skipped += 1
                continue
            if isinstance(outcome, (Routed, Exhausted)):
                summary.recovered += 1

    async def _contacts_for(self, routing: dict[str, Any]) -> dict[str, str]:
        candidates = await self.repository.list_candidates(routing["request_id"], include_superseded=True)
        for candidate in candidates:
            if candidate["id"] == routing.get("candidate_id"):
                return (candidate.get("profile") or {}).get("contacts") or {}
        return {}
