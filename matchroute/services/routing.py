from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Union
from urllib.parse import urlencode
from uuid import uuid4

from opentelemetry import trace

from matchroute.core.security import sign_routing_token
from matchroute.schemas.notifications import DecisionRequestPayload, ReminderPayload
from matchroute.services import lifecycle
from matchroute.services.repository import RepositoryConflictError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ROUTER_ACTOR = "system:router"


@dataclass(slots=True)
class Routed:
    routing: dict[str, Any]
    candidate: dict[str, Any]


@dataclass(slots=True)
class Exhausted:
    reason: str
    request: dict[str, Any]


@dataclass(slots=True)
class Settled:
    status: str


RouteOutcome = Union[Routed, Exhausted, Settled]


class NotificationComposer:
    """Builds notification intents for a routing, one per channel the counterparty can be reached on."""

    def __init__(
        self,
        *,
        channels: list[str],
        decision_base_url: str,
        token_secret: str,
        decision_window_seconds: int,
    ) -> None:
        self.channels = list(channels)
        self.decision_base_url = decision_base_url
        self.token_secret = token_secret
        self.decision_window = timedelta(seconds=decision_window_seconds)

    def decision_requests(
        self,
        *,
        request: dict[str, Any],
        routing_id: str,
        counterparty_id: str,
        attempt_number: int,
        contacts: dict[str, str],
        dispatched_at: datetime,
    ) -> list[dict[str, Any]]:
        respond_by = dispatched_at + self.decision_window
        payload = DecisionRequestPayload(
            request_id=request["id"],
            item_id=request["item_id"],
            requested_terms=request["terms"],
            decision_url=self.decision_url(routing_id, counterparty_id, respond_by),
            respond_by=respond_by,
            attempt_number=attempt_number,
            metadata=request.get("metadata") or {},
        )
        return self._fan_out(request, contacts, payload.model_dump(mode="json"))

    def reminders(
        self,
        *,
        request: dict[str, Any],
        routing: dict[str, Any],
        contacts: dict[str, str],
        now: datetime,
    ) -> list[dict[str, Any]]:
        respond_by = routing["dispatched_at"] + self.decision_window
        payload = ReminderPayload(
            request_id=request["id"],
            item_id=request["item_id"],
            requested_terms=request["terms"],
            decision_url=self.decision_url(routing["id"], routing["counterparty_id"], respond_by),
            respond_by=respond_by,
            attempt_number=routing["attempt_number"],
            hours_remaining=max(0, math.ceil((respond_by - now).total_seconds() / 3600)),
            metadata=request.get("metadata") or {},
        )
        return self._fan_out(request, contacts, payload.model_dump(mode="json"))

    def decision_url(self, routing_id: str, counterparty_id: str, expires_at: datetime) -> str:
        token = sign_routing_token(
            routing_id=routing_id,
            counterparty_id=counterparty_id,
            expires_at=expires_at,
            secret=self.token_secret,
        )
        return f"{self.decision_base_url}?{urlencode({'token': token})}"

    def _fan_out(self, request: dict[str, Any], contacts: dict[str, str], payload: dict[str, Any]) -> list[dict[str, Any]]:
        sender_id = request.get("organization_id") or "default"
        return [
            {
                "channel": channel,
                "kind": payload["kind"],
                "recipient": contacts[channel],
                "sender_id": sender_id,
                "payload": payload,
            }
            for channel in self.channels
            if contacts.get(channel)
        ]


class Router:
    def __init__(
        self,
        repository: Any,
        composer: NotificationComposer,
        *,
        orchestrator: Any | None = None,
        max_conflict_retries: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.composer = composer
        self.orchestrator = orchestrator
        self.max_conflict_retries = max(0, max_conflict_retries)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._dispatch_tasks: set[asyncio.Task[Any]] = set()

    async def route(self, request_id: str) -> RouteOutcome:
        with tracer.start_as_current_span("router.route") as span:
            span.set_attribute("request.id", request_id)
            last_conflict: RepositoryConflictError | None = None
            for attempt in range(self.max_conflict_retries + 1):
                try:
                    outcome = await self._route_once(request_id)
                except RepositoryConflictError as exc:
                    last_conflict = exc
                    logger.info("routing conflict request_id=%s attempt=%s: %s", request_id, attempt + 1, exc)
                    continue
                span.set_attribute("router.outcome", type(outcome).__name__.lower())
                return outcome

            raise last_conflict or RepositoryConflictError("routing conflict retries exhausted")

    async def _route_once(self, request_id: str) -> RouteOutcome:
        request = await self.repository.get_request(request_id)
        if request["status"] != lifecycle.SEARCHING:
            return Settled(status=request["status"])

        candidates = await self.repository.list_candidates(request_id)
        routings = await self.repository.list_routings(request_id)
        tried = {row["counterparty_id"] for row in routings}
        candidate = next(
            (row for row in candidates if row["eligible"] and row["counterparty_id"] not in tried),
            None,
        )

        now = self._clock()
        if candidate is None:
            reason = lifecycle.REASON_CANDIDATES_EXHAUSTED if routings else lifecycle.REASON_NO_ELIGIBLE_CANDIDATES
            updated = await self.repository.transition_request(
                request_id,
                from_status=lifecycle.SEARCHING,
                to_status=lifecycle.EXPIRED,
                actor=ROUTER_ACTOR,
                reason=reason,
                rule="exhausted",
                now=now,
            )
            logger.info("request exhausted request_id=%s reason=%s", request_id, reason)
            return Exhausted(reason=reason, request=updated)

        routing_id = str(uuid4())
        profile = candidate.get("profile") or {}
        notifications = self.composer.decision_requests(
            request=request,
            routing_id=routing_id,
            counterparty_id=candidate["counterparty_id"],
            attempt_number=len(routings) + 1,
            contacts=profile.get("contacts") or {},
            dispatched_at=now,
        )
        routing = await self.repository.create_routing(
            request_id,
            routing_id=routing_id,
            candidate=candidate,
            notifications=notifications,
            actor=ROUTER_ACTOR,
            now=now,
        )
        logger.info(
            "request routed request_id=%s counterparty_id=%s attempt=%s",
            request_id,
            routing["counterparty_id"],
            routing["attempt_number"],
        )
        self.schedule_dispatch(routing["id"])
        return Routed(routing=routing, candidate=candidate)

    def schedule_dispatch(self, routing_id: str) -> None:
        if self.orchestrator is None:
            return
        task = asyncio.create_task(self._dispatch(routing_id))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)

    async def drain(self) -> None:
        """Wait for dispatches scheduled by earlier routings."""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks))

    async def _dispatch(self, routing_id: str) -> None:
        try:
            await self.orchestrator.dispatch_pending(routing_id=routing_id)
        except Exception:
            # Events stay pending and are picked up by the next dispatch sweep.
            logger.exception("immediate notification dispatch failed routing_id=%s", routing_id)
