from __future__ import annotations

import asyncio
import copy
import itertools
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from matchroute.services import lifecycle
from matchroute.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    StaleDecisionError,
)


class InMemoryRepository:
    """Process-local repository with the same transition rules as the Postgres one.

    Per-request mutations are serialized with one asyncio lock per request id; every
    status change appends its audit entry before the lock is released.
    """

    def __init__(self) -> None:
        self.requests: dict[str, dict[str, Any]] = {}
        self.snapshots: dict[str, dict[str, Any]] = {}
        self.candidates: list[dict[str, Any]] = []
        self.routings: dict[str, dict[str, Any]] = {}
        self.decisions: dict[str, dict[str, Any]] = {}
        self.notification_events: dict[str, dict[str, Any]] = {}
        self.audit_log: list[dict[str, Any]] = []
        self._audit_ids = itertools.count(1)
        self._request_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._notification_lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def create_request(
        self,
        *,
        requester_id: str,
        item_id: str,
        category: str,
        terms: float,
        organization_id: str | None,
        request_type: str,
        metadata: dict[str, Any],
        snapshot: dict[str, Any],
        actor: str,
        now: datetime,
    ) -> dict[str, Any]:
        if terms < 0:
            raise RepositoryValidationError("terms must be non-negative")
        request_id = str(uuid4())
        request = {
            "id": request_id,
            "requester_id": requester_id,
            "item_id": item_id,
            "category": category,
            "terms": float(terms),
            "organization_id": organization_id,
            "request_type": request_type,
            "status": lifecycle.DRAFT,
            "status_reason": None,
            "agreed_terms": None,
            "metadata": dict(metadata),
            "created_at": now,
            "updated_at": now,
        }
        self.requests[request_id] = request
        self.snapshots[request_id] = {
            "request_id": request_id,
            "requester_stats": dict(snapshot.get("requester_stats") or {}),
            "goals": dict(snapshot.get("goals") or {}),
            "geography": dict(snapshot.get("geography") or {}),
            "urgency": snapshot.get("urgency") or "normal",
            "captured_at": now,
        }
        self._audit(
            actor=actor,
            action="request.created",
            entity_type="request",
            entity_id=request_id,
            request_id=request_id,
            metadata={"item_id": item_id, "category": category, "terms": float(terms)},
            now=now,
        )
        return copy.deepcopy(request)

    async def get_request(self, request_id: str) -> dict[str, Any]:
        request = self.requests.get(request_id)
        if request is None:
            raise RepositoryNotFoundError("request not found")
        return copy.deepcopy(request)

    async def get_snapshot(self, request_id: str) -> dict[str, Any]:
        snapshot = self.snapshots.get(request_id)
        if snapshot is None:
            raise RepositoryNotFoundError("snapshot not found")
        return copy.deepcopy(snapshot)

    async def transition_request(
        self,
        request_id: str,
        *,
        from_status: str,
        to_status: str,
        actor: str,
        reason: str | None = None,
        rule: str | None = None,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._request_locks[request_id]:
            request = self._require_request(request_id)
            self._set_status(
                request,
                expected=from_status,
                to_status=to_status,
                actor=actor,
                reason=reason,
                rule=rule,
                now=now,
            )
            return copy.deepcopy(request)

    async def replace_candidates(
        self,
        request_id: str,
        *,
        candidates: list[dict[str, Any]],
        actor: str,
        now: datetime,
    ) -> list[dict[str, Any]]:
        async with self._request_locks[request_id]:
            self._require_request(request_id)
            previous_runs = [row["match_run"] for row in self.candidates if row["request_id"] == request_id]
            match_run = max(previous_runs, default=0) + 1
            for row in self.candidates:
                if row["request_id"] == request_id and row["superseded_at"] is None:
                    row["superseded_at"] = now

            inserted: list[dict[str, Any]] = []
            for candidate in candidates:
                row = {
                    "id": str(uuid4()),
                    "request_id": request_id,
                    "match_run": match_run,
                    "counterparty_id": candidate["counterparty_id"],
                    "eligible": bool(candidate["eligible"]),
                    "ineligible_reason": candidate.get("ineligible_reason"),
                    "rank": candidate.get("rank"),
                    "rank_score": float(candidate.get("rank_score") or 0.0),
                    "score_breakdown": copy.deepcopy(candidate.get("score_breakdown") or {}),
                    "profile": copy.deepcopy(candidate.get("profile") or {}),
                    "distance_km": candidate.get("distance_km"),
                    "created_at": now,
                    "superseded_at": None,
                }
                self.candidates.append(row)
                inserted.append(row)

            self._audit(
                actor=actor,
                action="match.completed",
                entity_type="request",
                entity_id=request_id,
                request_id=request_id,
                metadata={
                    "match_run": match_run,
                    "eligible_count": sum(1 for row in inserted if row["eligible"]),
                    "ineligible_count": sum(1 for row in inserted if not row["eligible"]),
                },
                now=now,
            )
            return copy.deepcopy(inserted)

    async def list_candidates(self, request_id: str, *, include_superseded: bool = False) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.candidates
            if row["request_id"] == request_id and (include_superseded or row["superseded_at"] is None)
        ]
        rows.sort(key=lambda row: (row["match_run"], row["rank"] is None, row["rank"] or 0, row["counterparty_id"]))
        return copy.deepcopy(rows)

    async def create_routing(
        self,
        request_id: str,
        *,
        routing_id: str,
        candidate: dict[str, Any],
        notifications: list[dict[str, Any]],
        actor: str,
        now: datetime,
    ) -> dict[str, Any]:
        async with self._request_locks[request_id]:
            request = self._require_request(request_id)
            if request["status"] != lifecycle.SEARCHING:
                raise RepositoryConflictError(f"request is not routable from status {request['status']}")
            if not candidate.get("eligible"):
                raise RepositoryValidationError("only eligible candidates can be routed")

            existing = [row for row in self.routings.values() if row["request_id"] == request_id]
            if any(row["counterparty_id"] == candidate["counterparty_id"] for row in existing):
                raise RepositoryConflictError("counterparty already tried for this request")

            for row in existing:
                if row["closed_at"] is None:
                    row["closed_at"] = now
                    row["close_reason"] = "superseded"

            profile = candidate.get("profile") or {}
            routing = {
                "id": routing_id,
                "request_id": request_id,
                "candidate_id": candidate.get("id"),
                "counterparty_id": candidate["counterparty_id"],
                "attempt_number": len(existing) + 1,
                "distance_km": candidate.get("distance_km"),
                "fit": copy.deepcopy(candidate.get("score_breakdown") or {}),
                "auto_approve_threshold": profile.get("auto_approve_threshold"),
                "dispatched_at": now,
                "closed_at": None,
                "close_reason": None,
            }
            self.routings[routing["id"]] = routing
            self._audit(
                actor=actor,
                action="routing.created",
                entity_type="routing",
                entity_id=routing["id"],
                request_id=request_id,
                metadata={
                    "counterparty_id": routing["counterparty_id"],
                    "attempt_number": routing["attempt_number"],
                    "rank_score": candidate.get("rank_score"),
                },
                now=now,
            )
            self._set_status(
                request,
                expected=lifecycle.SEARCHING,
                to_status=lifecycle.AWAITING_DECISION,
                actor=actor,
                reason=f"routed to {routing['counterparty_id']}",
                rule=None,
                now=now,
            )
            for notification in notifications:
                self._insert_notification(routing, notification, now=now)
            return copy.deepcopy(routing)

    async def get_routing(self, routing_id: str) -> dict[str, Any]:
        routing = self.routings.get(routing_id)
        if routing is None:
            raise RepositoryNotFoundError("routing not found")
        return copy.deepcopy(routing)

    async def get_active_routing(self, request_id: str) -> dict[str, Any] | None:
        for routing in self.routings.values():
            if routing["request_id"] == request_id and routing["closed_at"] is None:
                return copy.deepcopy(routing)
        return None

    async def list_routings(self, request_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self.routings.values() if row["request_id"] == request_id]
        rows.sort(key=lambda row: row["attempt_number"])
        return copy.deepcopy(rows)

    async def record_decision(
        self,
        routing_id: str,
        *,
        decision: str,
        proposed_terms: float | None,
        reason: str | None,
        message: str | None,
        decided_by: str,
        decline_action: str,
        actor: str,
        rule: str | None = None,
        now: datetime,
    ) -> tuple[dict[str, Any], bool]:
        if decision not in {"approved", "declined"}:
            raise RepositoryValidationError("decision must be approved or declined")
        routing = self.routings.get(routing_id)
        if routing is None:
            raise RepositoryNotFoundError("routing not found")

        async with self._request_locks[routing["request_id"]]:
            existing = self._decision_for_routing(routing_id)
            if existing is not None:
                return copy.deepcopy(existing), False

            request = self._require_request(routing["request_id"])
            if routing["closed_at"] is not None or request["status"] != lifecycle.AWAITING_DECISION:
                raise StaleDecisionError("routing is no longer awaiting a decision")

            row = {
                "id": str(uuid4()),
                "request_id": request["id"],
                "routing_id": routing_id,
                "counterparty_id": routing["counterparty_id"],
                "decision": decision,
                "proposed_terms": proposed_terms,
                "reason": reason,
                "message": message,
                "decided_at": now,
                "decided_by": decided_by,
            }
            self.decisions[row["id"]] = row
            routing["closed_at"] = now
            routing["close_reason"] = decision
            self._audit(
                actor=actor,
                action="decision.recorded",
                entity_type="decision",
                entity_id=row["id"],
                request_id=request["id"],
                metadata={
                    "routing_id": routing_id,
                    "decision": decision,
                    "decided_by": decided_by,
                    "proposed_terms": proposed_terms,
                    "rule": rule,
                },
                now=now,
            )

            if decision == "approved":
                request["agreed_terms"] = proposed_terms if proposed_terms is not None else request["terms"]
                to_status = lifecycle.APPROVED
            elif decline_action == "terminate":
                to_status = lifecycle.DECLINED
            else:
                to_status = lifecycle.SEARCHING
            self._set_status(
                request,
                expected=lifecycle.AWAITING_DECISION,
                to_status=to_status,
                actor=actor,
                reason=reason or decision,
                rule=rule,
                now=now,
            )
            return copy.deepcopy(row), True

    async def close_timed_out_routing(
        self,
        routing_id: str,
        *,
        timeout_action: str,
        actor: str,
        now: datetime,
    ) -> dict[str, Any]:
        routing = self.routings.get(routing_id)
        if routing is None:
            raise RepositoryNotFoundError("routing not found")

        async with self._request_locks[routing["request_id"]]:
            request = self._require_request(routing["request_id"])
            if (
                routing["closed_at"] is not None
                or request["status"] != lifecycle.AWAITING_DECISION
                or self._decision_for_routing(routing_id) is not None
            ):
                raise RepositoryConflictError("routing already resolved")

            routing["closed_at"] = now
            routing["close_reason"] = "timed_out"
            if timeout_action == "reroute":
                to_status, rule = lifecycle.SEARCHING, "rerouted"
            else:
                to_status, rule = lifecycle.EXPIRED, "expired"
            self._set_status(
                request,
                expected=lifecycle.AWAITING_DECISION,
                to_status=to_status,
                actor=actor,
                reason=lifecycle.REASON_DECISION_WINDOW_ELAPSED,
                rule=rule,
                now=now,
            )
            return copy.deepcopy(request)

    async def list_decisions(self, request_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self.decisions.values() if row["request_id"] == request_id]
        rows.sort(key=lambda row: row["decided_at"])
        return copy.deepcopy(rows)

    async def list_due_routings(
        self,
        *,
        dispatched_before: datetime,
        dispatched_after: datetime | None = None,
        without_reminder: bool = False,
        limit: int,
    ) -> list[dict[str, Any]]:
        reminded = (
            {event["routing_id"] for event in self.notification_events.values() if event["kind"] == "reminder"}
            if without_reminder
            else set()
        )
        rows = []
        for routing in self.routings.values():
            if routing["closed_at"] is not None or routing["dispatched_at"] > dispatched_before:
                continue
            if dispatched_after is not None and routing["dispatched_at"] <= dispatched_after:
                continue
            if routing["id"] in reminded:
                continue
            request = self.requests.get(routing["request_id"])
            if request is None or request["status"] != lifecycle.AWAITING_DECISION:
                continue
            rows.append(routing)
        rows.sort(key=lambda row: row["dispatched_at"])
        return copy.deepcopy(rows[: max(1, limit)])

    async def list_stalled_requests(self, *, status: str, updated_before: datetime, limit: int) -> list[dict[str, Any]]:
        rows = [
            row for row in self.requests.values() if row["status"] == status and row["updated_at"] <= updated_before
        ]
        rows.sort(key=lambda row: row["updated_at"])
        return copy.deepcopy(rows[: max(1, limit)])

    async def create_reminders(
        self,
        routing_id: str,
        *,
        notifications: list[dict[str, Any]],
        actor: str,
        now: datetime,
    ) -> list[dict[str, Any]]:
        routing = self.routings.get(routing_id)
        if routing is None:
            raise RepositoryNotFoundError("routing not found")

        async with self._request_locks[routing["request_id"]]:
            request = self._require_request(routing["request_id"])
            if routing["closed_at"] is not None or request["status"] != lifecycle.AWAITING_DECISION:
                return []
            already_reminded = any(
                event["routing_id"] == routing_id and event["kind"] == "reminder"
                for event in self.notification_events.values()
            )
            if already_reminded:
                return []

            created = [self._insert_notification(routing, notification, now=now) for notification in notifications]
            self._audit(
                actor=actor,
                action="sla.reminder_created",
                entity_type="routing",
                entity_id=routing_id,
                request_id=request["id"],
                metadata={"notifications_created": len(created)},
                now=now,
            )
            return copy.deepcopy(created)

    async def claim_pending_notifications(
        self,
        *,
        limit: int,
        lease_seconds: int,
        now: datetime,
        routing_id: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._notification_lock:
            pending = [
                event
                for event in self.notification_events.values()
                if event["status"] == "pending"
                and (event["locked_until"] is None or event["locked_until"] <= now)
                and (routing_id is None or event["routing_id"] == routing_id)
            ]
            pending.sort(key=lambda event: (event["created_at"], event["id"]))
            claimed = pending[: max(1, limit)]
            for event in claimed:
                event["locked_until"] = now + timedelta(seconds=lease_seconds)
                event["updated_at"] = now
            return copy.deepcopy(claimed)

    async def record_notification_attempt(self, event_id: str, *, attempt: dict[str, Any], now: datetime) -> None:
        event = self._require_notification(event_id)
        event["attempts"].append(copy.deepcopy(attempt))
        event["updated_at"] = now

    async def complete_notification(
        self,
        event_id: str,
        *,
        status: str,
        error: str | None,
        actor: str,
        now: datetime,
    ) -> dict[str, Any]:
        if status not in {"sent", "failed"}:
            raise RepositoryValidationError("notification outcome must be sent or failed")
        async with self._notification_lock:
            event = self._require_notification(event_id)
            if event["status"] != "pending":
                return copy.deepcopy(event)
            event["status"] = status
            event["error"] = error
            event["locked_until"] = None
            event["updated_at"] = now
            self._audit(
                actor=actor,
                action=f"notification.{status}",
                entity_type="notification_event",
                entity_id=event_id,
                request_id=event["request_id"],
                metadata={
                    "channel": event["channel"],
                    "kind": event["kind"],
                    "recipient": event["recipient"],
                    "attempts": len(event["attempts"]),
                    "error": error,
                },
                now=now,
            )
            return copy.deepcopy(event)

    async def release_notification(self, event_id: str, *, error: str | None, now: datetime) -> None:
        async with self._notification_lock:
            event = self._require_notification(event_id)
            if event["status"] != "pending":
                return
            event["locked_until"] = None
            event["error"] = error
            event["updated_at"] = now

    async def list_notifications(self, request_id: str) -> list[dict[str, Any]]:
        rows = [event for event in self.notification_events.values() if event["request_id"] == request_id]
        rows.sort(key=lambda event: (event["created_at"], event["id"]))
        return copy.deepcopy(rows)

    async def list_audit_entries(self, *, request_id: str, limit: int = 200) -> list[dict[str, Any]]:
        rows = [entry for entry in self.audit_log if entry["request_id"] == request_id]
        return copy.deepcopy(rows[:limit])

    def _require_request(self, request_id: str) -> dict[str, Any]:
        request = self.requests.get(request_id)
        if request is None:
            raise RepositoryNotFoundError("request not found")
        return request

    def _require_notification(self, event_id: str) -> dict[str, Any]:
        event = self.notification_events.get(event_id)
        if event is None:
            raise RepositoryNotFoundError("notification event not found")
        return event

    def _decision_for_routing(self, routing_id: str) -> dict[str, Any] | None:
        return next((row for row in self.decisions.values() if row["routing_id"] == routing_id), None)

    def _set_status(
        self,
        request: dict[str, Any],
        *,
        expected: str,
        to_status: str,
        actor: str,
        reason: str | None,
        rule: str | None,
        now: datetime,
    ) -> None:
        if request["status"] != expected:
            raise RepositoryConflictError(f"expected status {expected}, found {request['status']}")
        if not lifecycle.can_transition(expected, to_status):
            raise RepositoryConflictError(f"invalid status transition: {expected} -> {to_status}")
        request["status"] = to_status
        request["status_reason"] = reason
        request["updated_at"] = now
        self._audit(
            actor=actor,
            action="request.status_changed",
            entity_type="request",
            entity_id=request["id"],
            request_id=request["id"],
            metadata={"from": expected, "to": to_status, "reason": reason, "rule": rule},
            now=now,
        )

    def _insert_notification(
        self,
        routing: dict[str, Any],
        notification: dict[str, Any],
        *,
        now: datetime,
    ) -> dict[str, Any]:
        event = {
            "id": str(uuid4()),
            "request_id": routing["request_id"],
            "routing_id": routing["id"],
            "counterparty_id": routing["counterparty_id"],
            "channel": notification["channel"],
            "kind": notification["kind"],
            "status": "pending",
            "sender_id": notification.get("sender_id"),
            "recipient": notification["recipient"],
            "payload": copy.deepcopy(notification.get("payload") or {}),
            "error": None,
            "attempts": [],
            "locked_until": None,
            "created_at": now,
            "updated_at": now,
        }
        self.notification_events[event["id"]] = event
        return event

    def _audit(
        self,
        *,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        request_id: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> None:
        self.audit_log.append(
            {
                "id": next(self._audit_ids),
                "actor": actor,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "request_id": request_id,
                "metadata": copy.deepcopy(metadata),
                "created_at": now,
            }
        )
