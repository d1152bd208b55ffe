from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from opentelemetry import trace

from matchroute.core.security import InvalidRoutingTokenError, verify_routing_token
from matchroute.services.lifecycle import PolicyBook
from matchroute.services.repository import RepositoryValidationError
from matchroute.services.routing import Router

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DECISION_VALUES = {"approved", "declined"}


class DecisionHandler:
    def __init__(
        self,
        repository: Any,
        router: Router,
        policies: PolicyBook,
        *,
        token_secret: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.router = router
        self.policies = policies
        self.token_secret = token_secret
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def submit_with_token(
        self,
        token: str,
        *,
        decision: str,
        proposed_terms: float | None = None,
        message: str | None = None,
        reason: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        claims = verify_routing_token(token, secret=self.token_secret, now=self._clock())
        routing = await self.repository.get_routing(claims.routing_id)
        if routing["counterparty_id"] != claims.counterparty_id:
            raise InvalidRoutingTokenError("routing token does not match routing counterparty")
        return await self.submit(
            claims.routing_id,
            decision=decision,
            proposed_terms=proposed_terms,
            message=message,
            reason=reason,
        )

    async def submit(
        self,
        routing_id: str,
        *,
        decision: str,
        proposed_terms: float | None = None,
        message: str | None = None,
        reason: str | None = None,
    ) -> tuple[dict[str, Any], bool]:
        """Record a counterparty decision; a repeat for an already decided routing returns the first one."""
        if decision not in DECISION_VALUES:
            raise RepositoryValidationError("decision must be approved or declined")
        if proposed_terms is not None and proposed_terms < 0:
            raise RepositoryValidationError("proposed_terms must be non-negative")

        with tracer.start_as_current_span("decisions.submit") as span:
            span.set_attribute("routing.id", routing_id)
            routing = await self.repository.get_routing(routing_id)
            request = await self.repository.get_request(routing["request_id"])
            policy = self.policies.for_type(request["request_type"])

            row, created = await self.repository.record_decision(
                routing_id,
                decision=decision,
                proposed_terms=proposed_terms,
                reason=reason,
                message=message,
                decided_by=routing["counterparty_id"],
                decline_action=policy.decline_action,
                actor=f"counterparty:{routing['counterparty_id']}",
                now=self._clock(),
            )
            if not created:
                logger.info("duplicate decision ignored routing_id=%s", routing_id)
                return row, False

            logger.info(
                "decision recorded request_id=%s routing_id=%s decision=%s",
                request["id"],
                routing_id,
                decision,
            )
            if decision == "declined" and policy.decline_action == "reroute":
                await self.router.route(request["id"])
            return row, True
