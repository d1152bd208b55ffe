from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, AsyncIterator

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from matchroute.core.config import get_settings
from matchroute.services import lifecycle


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an optimistic status check or transition rule fails."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


class StaleDecisionError(RepositoryConflictError):
    """Raised when a decision targets a routing that is no longer active."""


_REQUEST_COLUMNS = """
  id::text as id,
  requester_id,
  item_id,
  category,
  terms::float8 as terms,
  organization_id,
  request_type,
  status,
  status_reason,
  agreed_terms::float8 as agreed_terms,
  metadata,
  created_at,
  updated_at
"""

_CANDIDATE_COLUMNS = """
  id::text as id,
  request_id::text as request_id,
  match_run,
  counterparty_id,
  eligible,
  ineligible_reason,
  rank,
  rank_score,
  score_breakdown,
  profile,
  distance_km,
  created_at,
  superseded_at
"""

_ROUTING_COLUMNS = """
  id::text as id,
  request_id::text as request_id,
  candidate_id::text as candidate_id,
  counterparty_id,
  attempt_number,
  distance_km,
  fit,
  auto_approve_threshold::float8 as auto_approve_threshold,
  dispatched_at,
  closed_at,
  close_reason
"""

_DECISION_COLUMNS = """
  id::text as id,
  request_id::text as request_id,
  routing_id::text as routing_id,
  counterparty_id,
  decision,
  proposed_terms::float8 as proposed_terms,
  reason,
  message,
  decided_at,
  decided_by
"""

_NOTIFICATION_COLUMNS = """
  id::text as id,
  request_id::text as request_id,
  routing_id::text as routing_id,
  counterparty_id,
  channel,
  kind,
  status,
  sender_id,
  recipient,
  payload,
  error,
  attempts,
  locked_until,
  created_at,
  updated_at
"""

_JSON_FIELDS = {
    "metadata",
    "requester_stats",
    "goals",
    "geography",
    "score_breakdown",
    "profile",
    "fit",
    "payload",
    "attempts",
}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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

        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"""
                insert into requests (
                  requester_id, item_id, category, terms, organization_id,
                  request_type, status, metadata, created_at, updated_at
                )
                values ($1, $2, $3, $4, $5, $6, 'draft', $7::jsonb, $8, $8)
                returning {_REQUEST_COLUMNS}
                """,
                requester_id,
                item_id,
                category,
                terms,
                organization_id,
                request_type,
                json.dumps(metadata),
                now,
            )
            await conn.execute(
                """
                insert into snapshots (request_id, requester_stats, goals, geography, urgency, captured_at)
                values ($1::uuid, $2::jsonb, $3::jsonb, $4::jsonb, $5, $6)
                """,
                row["id"],
                json.dumps(snapshot.get("requester_stats") or {}),
                json.dumps(snapshot.get("goals") or {}),
                json.dumps(snapshot.get("geography") or {}),
                snapshot.get("urgency") or "normal",
                now,
            )
            await self._audit(
                conn,
                actor=actor,
                action="request.created",
                entity_type="request",
                entity_id=row["id"],
                request_id=row["id"],
                metadata={"item_id": item_id, "category": category, "terms": float(terms)},
                now=now,
            )
            return _row_to_dict(row)

    async def get_request(self, request_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_REQUEST_COLUMNS} from requests where id = $1::uuid", request_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("request not found") from exc
        if row is None:
            raise RepositoryNotFoundError("request not found")
        return _row_to_dict(row)

    async def get_snapshot(self, request_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  request_id::text as request_id,
                  requester_stats,
                  goals,
                  geography,
                  urgency,
                  captured_at
                from snapshots
                where request_id = $1::uuid
                """,
                request_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("snapshot not found") from exc
        if row is None:
            raise RepositoryNotFoundError("snapshot not found")
        return _row_to_dict(row)

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
        async with self._transaction() as conn:
            await self._lock_request(conn, request_id)
            return await self._set_status(
                conn,
                request_id,
                expected=from_status,
                to_status=to_status,
                actor=actor,
                reason=reason,
                rule=rule,
                now=now,
            )

    async def replace_candidates(
        self,
        request_id: str,
        *,
        candidates: list[dict[str, Any]],
        actor: str,
        now: datetime,
    ) -> list[dict[str, Any]]:
        async with self._transaction() as conn:
            await self._lock_request(conn, request_id)
            match_run = await conn.fetchval(
                "select coalesce(max(match_run), 0) + 1 from candidates where request_id = $1::uuid",
                request_id,
            )
            await conn.execute(
                """
                update candidates
                set superseded_at = $2
                where request_id = $1::uuid and superseded_at is null
                """,
                request_id,
                now,
            )

            inserted: list[dict[str, Any]] = []
            for candidate in candidates:
                row = await conn.fetchrow(
                    f"""
                    insert into candidates (
                      request_id, match_run, counterparty_id, eligible, ineligible_reason,
                      rank, rank_score, score_breakdown, profile, distance_km, created_at
                    )
                    values ($1::uuid, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb, $10, $11)
                    returning {_CANDIDATE_COLUMNS}
                    """,
                    request_id,
                    match_run,
                    candidate["counterparty_id"],
                    bool(candidate["eligible"]),
                    candidate.get("ineligible_reason"),
                    candidate.get("rank"),
                    float(candidate.get("rank_score") or 0.0),
                    json.dumps(candidate.get("score_breakdown") or {}),
                    json.dumps(candidate.get("profile") or {}, default=str),
                    candidate.get("distance_km"),
                    now,
                )
                inserted.append(_row_to_dict(row))

            await self._audit(
                conn,
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
            return inserted

    async def list_candidates(self, request_id: str, *, include_superseded: bool = False) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_CANDIDATE_COLUMNS}
            from candidates
            where request_id = $1::uuid
              and ($2 or superseded_at is null)
            order by match_run asc, rank asc nulls last, counterparty_id asc
            """,
            request_id,
            include_superseded,
        )
        return [_row_to_dict(row) for row in rows]

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
        if not candidate.get("eligible"):
            raise RepositoryValidationError("only eligible candidates can be routed")

        async with self._transaction() as conn:
            request = await self._lock_request(conn, request_id)
            if request["status"] != lifecycle.SEARCHING:
                raise RepositoryConflictError(f"request is not routable from status {request['status']}")

            already_tried = await conn.fetchval(
                "select 1 from routings where request_id = $1::uuid and counterparty_id = $2",
                request_id,
                candidate["counterparty_id"],
            )
            if already_tried:
                raise RepositoryConflictError("counterparty already tried for this request")

            await conn.execute(
                """
                update routings
                set closed_at = $2, close_reason = 'superseded'
                where request_id = $1::uuid and closed_at is null
                """,
                request_id,
                now,
            )
            attempt_number = await conn.fetchval(
                "select count(*) + 1 from routings where request_id = $1::uuid",
                request_id,
            )
            profile = candidate.get("profile") or {}
            row = await conn.fetchrow(
                f"""
                insert into routings (
                  id, request_id, candidate_id, counterparty_id, attempt_number,
                  distance_km, fit, auto_approve_threshold, dispatched_at
                )
                values ($9::uuid, $1::uuid, $2::uuid, $3, $4, $5, $6::jsonb, $7, $8)
                returning {_ROUTING_COLUMNS}
                """,
                request_id,
                candidate.get("id"),
                candidate["counterparty_id"],
                attempt_number,
                candidate.get("distance_km"),
                json.dumps(candidate.get("score_breakdown") or {}),
                profile.get("auto_approve_threshold"),
                now,
                routing_id,
            )
            routing = _row_to_dict(row)
            await self._audit(
                conn,
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
            await self._set_status(
                conn,
                request_id,
                expected=lifecycle.SEARCHING,
                to_status=lifecycle.AWAITING_DECISION,
                actor=actor,
                reason=f"routed to {routing['counterparty_id']}",
                rule=None,
                now=now,
            )
            for notification in notifications:
                await self._insert_notification(conn, routing, notification, now=now)
            return routing

    async def get_routing(self, routing_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_ROUTING_COLUMNS} from routings where id = $1::uuid", routing_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("routing not found") from exc
        if row is None:
            raise RepositoryNotFoundError("routing not found")
        return _row_to_dict(row)

    async def get_active_routing(self, request_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_ROUTING_COLUMNS} from routings where request_id = $1::uuid and closed_at is null",
            request_id,
        )
        return _row_to_dict(row) if row else None

    async def list_routings(self, request_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_ROUTING_COLUMNS} from routings where request_id = $1::uuid order by attempt_number asc",
            request_id,
        )
        return [_row_to_dict(row) for row in rows]

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
        routing = await self.get_routing(routing_id)

        async with self._transaction() as conn:
            request = await self._lock_request(conn, routing["request_id"])
            existing = await conn.fetchrow(
                f"select {_DECISION_COLUMNS} from decisions where routing_id = $1::uuid",
                routing_id,
            )
            if existing is not None:
                return _row_to_dict(existing), False

            active = await conn.fetchval(
                "select closed_at is null from routings where id = $1::uuid",
                routing_id,
            )
            if not active or request["status"] != lifecycle.AWAITING_DECISION:
                raise StaleDecisionError("routing is no longer awaiting a decision")

            row = await conn.fetchrow(
                f"""
                insert into decisions (
                  request_id, routing_id, counterparty_id, decision, proposed_terms,
                  reason, message, decided_at, decided_by
                )
                values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9)
                returning {_DECISION_COLUMNS}
                """,
                routing["request_id"],
                routing_id,
                routing["counterparty_id"],
                decision,
                proposed_terms,
                reason,
                message,
                now,
                decided_by,
            )
            await conn.execute(
                "update routings set closed_at = $2, close_reason = $3 where id = $1::uuid",
                routing_id,
                now,
                decision,
            )
            await self._audit(
                conn,
                actor=actor,
                action="decision.recorded",
                entity_type="decision",
                entity_id=row["id"],
                request_id=routing["request_id"],
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
                await conn.execute(
                    "update requests set agreed_terms = coalesce($2, terms) where id = $1::uuid",
                    routing["request_id"],
                    proposed_terms,
                )
                to_status = lifecycle.APPROVED
            elif decline_action == "terminate":
                to_status = lifecycle.DECLINED
            else:
                to_status = lifecycle.SEARCHING
            await self._set_status(
                conn,
                routing["request_id"],
                expected=lifecycle.AWAITING_DECISION,
                to_status=to_status,
                actor=actor,
                reason=reason or decision,
                rule=rule,
                now=now,
            )
            return _row_to_dict(row), True

    async def close_timed_out_routing(
        self,
        routing_id: str,
        *,
        timeout_action: str,
        actor: str,
        now: datetime,
    ) -> dict[str, Any]:
        routing = await self.get_routing(routing_id)

        async with self._transaction() as conn:
            request = await self._lock_request(conn, routing["request_id"])
            state = await conn.fetchrow(
                """
                select
                  r.closed_at is null as active,
                  exists (select 1 from decisions d where d.routing_id = r.id) as decided
                from routings r
                where r.id = $1::uuid
                """,
                routing_id,
            )
            if not state["active"] or state["decided"] or request["status"] != lifecycle.AWAITING_DECISION:
                raise RepositoryConflictError("routing already resolved")

            await conn.execute(
                "update routings set closed_at = $2, close_reason = 'timed_out' where id = $1::uuid",
                routing_id,
                now,
            )
            if timeout_action == "reroute":
                to_status, rule = lifecycle.SEARCHING, "rerouted"
            else:
                to_status, rule = lifecycle.EXPIRED, "expired"
            return await self._set_status(
                conn,
                routing["request_id"],
                expected=lifecycle.AWAITING_DECISION,
                to_status=to_status,
                actor=actor,
                reason=lifecycle.REASON_DECISION_WINDOW_ELAPSED,
                rule=rule,
                now=now,
            )

    async def list_decisions(self, request_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {_DECISION_COLUMNS} from decisions where request_id = $1::uuid order by decided_at asc",
            request_id,
        )
        return [_row_to_dict(row) for row in rows]

    async def list_due_routings(
        self,
        *,
        dispatched_before: datetime,
        dispatched_after: datetime | None = None,
        without_reminder: bool = False,
        limit: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            f"""
            select {", ".join(f"r.{line.strip()}" for line in _ROUTING_COLUMNS.strip().split(","))}
            from routings r
            join requests q on q.id = r.request_id
            where r.closed_at is null
              and q.status = 'awaiting_decision'
              and r.dispatched_at <= $1
              and ($2::timestamptz is null or r.dispatched_at > $2)
              and (not $4::boolean or not exists (
                select 1 from notification_events e where e.routing_id = r.id and e.kind = 'reminder'
              ))
            order by r.dispatched_at asc
            limit $3
            """,
            dispatched_before,
            dispatched_after,
            bounded_limit,
            without_reminder,
        )
        return [_row_to_dict(row) for row in rows]

    async def list_stalled_requests(self, *, status: str, updated_before: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            f"""
            select {_REQUEST_COLUMNS}
            from requests
            where status = $1 and updated_at <= $2
            order by updated_at asc
            limit $3
            """,
            status,
            updated_before,
            bounded_limit,
        )
        return [_row_to_dict(row) for row in rows]

    async def create_reminders(
        self,
        routing_id: str,
        *,
        notifications: list[dict[str, Any]],
        actor: str,
        now: datetime,
    ) -> list[dict[str, Any]]:
        routing = await self.get_routing(routing_id)

        async with self._transaction() as conn:
            request = await self._lock_request(conn, routing["request_id"])
            active = await conn.fetchval("select closed_at is null from routings where id = $1::uuid", routing_id)
            if not active or request["status"] != lifecycle.AWAITING_DECISION:
                return []
            already_reminded = await conn.fetchval(
                "select 1 from notification_events where routing_id = $1::uuid and kind = 'reminder' limit 1",
                routing_id,
            )
            if already_reminded:
                return []

            created = [
                await self._insert_notification(conn, routing, notification, now=now) for notification in notifications
            ]
            await self._audit(
                conn,
                actor=actor,
                action="sla.reminder_created",
                entity_type="routing",
                entity_id=routing_id,
                request_id=routing["request_id"],
                metadata={"notifications_created": len(created)},
                now=now,
            )
            return created

    async def claim_pending_notifications(
        self,
        *,
        limit: int,
        lease_seconds: int,
        now: datetime,
        routing_id: str | None = None,
    ) -> list[dict[str, Any]]:
        bounded_limit = max(1, min(limit, 1000))
        async with self._transaction() as conn:
            rows = await conn.fetch(
                f"""
                with due as (
                  select id
                  from notification_events
                  where status = 'pending'
                    and (locked_until is null or locked_until <= $1)
                    and ($4::uuid is null or routing_id = $4::uuid)
                  order by created_at asc, id asc
                  limit $2
                  for update skip locked
                )
                update notification_events n
                set locked_until = $1 + ($3::int * interval '1 second'), updated_at = $1
                from due
                where n.id = due.id
                returning {", ".join(f"n.{line.strip()}" for line in _NOTIFICATION_COLUMNS.strip().split(","))}
                """,
                now,
                bounded_limit,
                lease_seconds,
                routing_id,
            )
            claimed = [_row_to_dict(row) for row in rows]
            claimed.sort(key=lambda event: (event["created_at"], event["id"]))
            return claimed

    async def record_notification_attempt(self, event_id: str, *, attempt: dict[str, Any], now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update notification_events
            set attempts = attempts || jsonb_build_array($2::jsonb), updated_at = $3
            where id = $1::uuid
            """,
            event_id,
            json.dumps(attempt, default=str),
            now,
        )

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

        async with self._transaction() as conn:
            row = await conn.fetchrow(
                f"""
                update notification_events
                set status = $2, error = $3, locked_until = null, updated_at = $4
                where id = $1::uuid and status = 'pending'
                returning {_NOTIFICATION_COLUMNS}
                """,
                event_id,
                status,
                error,
                now,
            )
            if row is None:
                current = await conn.fetchrow(
                    f"select {_NOTIFICATION_COLUMNS} from notification_events where id = $1::uuid",
                    event_id,
                )
                if current is None:
                    raise RepositoryNotFoundError("notification event not found")
                return _row_to_dict(current)

            event = _row_to_dict(row)
            await self._audit(
                conn,
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
            return event

    async def release_notification(self, event_id: str, *, error: str | None, now: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update notification_events
            set locked_until = null, error = $2, updated_at = $3
            where id = $1::uuid and status = 'pending'
            """,
            event_id,
            error,
            now,
        )

    async def list_notifications(self, request_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_NOTIFICATION_COLUMNS}
            from notification_events
            where request_id = $1::uuid
            order by created_at asc, id asc
            """,
            request_id,
        )
        return [_row_to_dict(row) for row in rows]

    async def list_audit_entries(self, *, request_id: str, limit: int = 200) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id,
              actor,
              action,
              entity_type,
              entity_id,
              request_id::text as request_id,
              metadata,
              created_at
            from audit_log
            where request_id = $1::uuid
            order by id asc
            limit $2
            """,
            request_id,
            max(1, min(limit, 1000)),
        )
        return [_row_to_dict(row) for row in rows]

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("entity not found") from exc
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("concurrent modification detected") from exc

    async def _lock_request(self, conn: asyncpg.Connection, request_id: str) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"select {_REQUEST_COLUMNS} from requests where id = $1::uuid for update",
            request_id,
        )
        if row is None:
            raise RepositoryNotFoundError("request not found")
        return _row_to_dict(row)

    async def _set_status(
        self,
        conn: asyncpg.Connection,
        request_id: str,
        *,
        expected: str,
        to_status: str,
        actor: str,
        reason: str | None,
        rule: str | None,
        now: datetime,
    ) -> dict[str, Any]:
        if not lifecycle.can_transition(expected, to_status):
            raise RepositoryConflictError(f"invalid status transition: {expected} -> {to_status}")
        row = await conn.fetchrow(
            f"""
            update requests
            set status = $3, status_reason = $4, updated_at = $5
            where id = $1::uuid and status = $2
            returning {_REQUEST_COLUMNS}
            """,
            request_id,
            expected,
            to_status,
            reason,
            now,
        )
        if row is None:
            raise RepositoryConflictError(f"request {request_id} is no longer in status {expected}")
        await self._audit(
            conn,
            actor=actor,
            action="request.status_changed",
            entity_type="request",
            entity_id=request_id,
            request_id=request_id,
            metadata={"from": expected, "to": to_status, "reason": reason, "rule": rule},
            now=now,
        )
        return _row_to_dict(row)

    async def _insert_notification(
        self,
        conn: asyncpg.Connection,
        routing: dict[str, Any],
        notification: dict[str, Any],
        *,
        now: datetime,
    ) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            insert into notification_events (
              request_id, routing_id, counterparty_id, channel, kind, status,
              sender_id, recipient, payload, created_at, updated_at
            )
            values ($1::uuid, $2::uuid, $3, $4, $5, 'pending', $6, $7, $8::jsonb, $9, $9)
            returning {_NOTIFICATION_COLUMNS}
            """,
            routing["request_id"],
            routing["id"],
            routing["counterparty_id"],
            notification["channel"],
            notification["kind"],
            notification.get("sender_id"),
            notification["recipient"],
            json.dumps(notification.get("payload") or {}, default=str),
            now,
        )
        return _row_to_dict(row)

    @staticmethod
    async def _audit(
        conn: asyncpg.Connection,
        *,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        request_id: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> None:
        await conn.execute(
            """
            insert into audit_log (actor, action, entity_type, entity_id, request_id, metadata, created_at)
            values ($1, $2, $3, $4, $5::uuid, $6::jsonb, $7)
            """,
            actor,
            action,
            entity_type,
            entity_id,
            request_id,
            json.dumps(metadata, default=str),
            now,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("MR_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    payload = dict(row)
    for key in _JSON_FIELDS & payload.keys():
        value = payload[key]
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                value = None
        if value is None:
            value = [] if key == "attempts" else {}
        payload[key] = value
    return payload


@lru_cache
def get_repository() -> Any:
    settings = get_settings()
    if not settings.database_url:
        from matchroute.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
