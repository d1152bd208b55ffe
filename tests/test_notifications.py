from __future__ import annotations

import asyncio
from typing import Any

from matchroute.core.config import Settings
from matchroute.services.channels import DeliveryResult
from matchroute.services.circuit_breaker import CircuitBreakerState
from matchroute.services.counterparties import StaticCounterpartyDirectory
from matchroute.services.notifications import TransientDeliveryError, compute_retry_delay_seconds
from matchroute.services.store import InMemoryRepository
from matchroute.services.workflow import build_workflow

_TRANSIENT = DeliveryResult(success=False, transient=True, error="provider returned 503")


async def _matched_requests(workflow, request_payload, count: int = 1) -> list[str]:
    request_ids = []
    for index in range(count):
        request = await workflow.create_request(request_payload(item_id=f"listing-{index}"), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        request_ids.append(request["id"])
    return request_ids


def test_compute_retry_delay_seconds() -> None:
    assert compute_retry_delay_seconds(1, 1.0, 10.0) == 1.0
    assert compute_retry_delay_seconds(2, 1.0, 10.0) == 2.0
    assert compute_retry_delay_seconds(3, 1.0, 10.0) == 4.0
    assert compute_retry_delay_seconds(6, 1.0, 10.0) == 10.0
    assert compute_retry_delay_seconds(3, 0.0, 10.0) == 0.0


def test_transient_failure_is_retried_then_sent(make_workflow, make_profile, request_payload, provider, sleeps) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False, notify_channels=["email"])
    provider.script = [_TRANSIENT]

    async def run() -> tuple[Any, list[dict[str, Any]]]:
        (request_id,) = await _matched_requests(workflow, request_payload)
        summary = await workflow.dispatch_notifications()
        return summary, await workflow.repository.list_notifications(request_id)

    summary, notifications = asyncio.run(run())

    assert summary.as_dict() == {"claimed": 1, "sent": 1, "failed": 0, "released": 0}
    assert len(provider.calls) == 2
    assert sleeps.delays == [1.0]
    assert [attempt["outcome"] for attempt in notifications[0]["attempts"]] == ["transient_failure", "sent"]


def test_retries_exhausted_marks_event_failed(make_workflow, make_profile, request_payload, provider, sleeps) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False, notify_channels=["email"])
    provider.script = [_TRANSIENT, TransientDeliveryError("connection reset"), _TRANSIENT]

    async def run() -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        (request_id,) = await _matched_requests(workflow, request_payload)
        await workflow.dispatch_notifications()
        return (
            await workflow.repository.list_notifications(request_id),
            await workflow.get_audit_trail(request_id),
        )

    notifications, audit = asyncio.run(run())

    assert len(provider.calls) == 3
    assert sleeps.delays == [1.0, 2.0]
    assert notifications[0]["status"] == "failed"
    assert notifications[0]["error"] == "provider returned 503"
    failed = [entry for entry in audit if entry["action"] == "notification.failed"]
    assert len(failed) == 1
    assert failed[0]["metadata"]["attempts"] == 3


def test_permanent_failure_is_not_retried(make_workflow, make_profile, request_payload, provider, sleeps) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False, notify_channels=["email"])
    provider.script = [DeliveryResult(success=False, transient=False, error="provider returned 400")]

    async def run() -> list[dict[str, Any]]:
        (request_id,) = await _matched_requests(workflow, request_payload)
        await workflow.dispatch_notifications()
        return await workflow.repository.list_notifications(request_id)

    notifications = asyncio.run(run())

    assert len(provider.calls) == 1
    assert sleeps.delays == []
    assert notifications[0]["status"] == "failed"
    assert notifications[0]["error"] == "provider returned 400"


def test_rate_limit_rejects_over_quota_sender(make_workflow, make_profile, request_payload, provider) -> None:
    workflow = make_workflow(
        [make_profile("lender-a")],
        immediate_dispatch=False,
        notify_channels=["email"],
        notify_rate_limit_max=1,
    )

    async def run() -> tuple[Any, list[dict[str, Any]]]:
        request_ids = await _matched_requests(workflow, request_payload, count=2)
        summary = await workflow.dispatch_notifications()
        events = []
        for request_id in request_ids:
            events.extend(await workflow.repository.list_notifications(request_id))
        return summary, events

    summary, events = asyncio.run(run())

    assert summary.sent == 1
    assert summary.failed == 1
    assert len(provider.calls) == 1
    rejected = [event for event in events if event["status"] == "failed"]
    assert rejected[0]["error"] == "rate_limited"


def test_open_circuit_fails_decision_requests_fast(make_workflow, make_profile, request_payload, provider) -> None:
    workflow = make_workflow(
        [make_profile("lender-a")],
        immediate_dispatch=False,
        notify_channels=["email"],
        notify_max_attempts=1,
        circuit_failure_threshold=2,
    )
    provider.script = [_TRANSIENT, _TRANSIENT]

    async def run() -> list[dict[str, Any]]:
        request_ids = await _matched_requests(workflow, request_payload, count=3)
        await workflow.dispatch_notifications()
        events = []
        for request_id in request_ids:
            events.extend(await workflow.repository.list_notifications(request_id))
        return events

    events = asyncio.run(run())

    assert len(provider.calls) == 2
    assert sorted(event["error"] for event in events) == ["circuit_open", "provider returned 503", "provider returned 503"]
    assert all(event["status"] == "failed" for event in events)


def test_open_circuit_releases_reminders(make_workflow, make_profile, request_payload, provider, clock) -> None:
    workflow = make_workflow([make_profile("lender-a")], notify_channels=["email"], circuit_failure_threshold=1)

    async def run() -> tuple[Any, list[dict[str, Any]]]:
        (request_id,) = await _matched_requests(workflow, request_payload)
        await workflow.drain()
        workflow.orchestrator.breakers.for_channel("email").record_failure()
        clock.advance(hours=3)
        summary = await workflow.run_sla_sweep()
        return summary, await workflow.repository.list_notifications(request_id)

    summary, notifications = asyncio.run(run())

    assert summary.reminders_created == 1
    assert summary.notifications.released == 1
    reminder = next(event for event in notifications if event["kind"] == "reminder")
    assert reminder["status"] == "pending"
    assert reminder["locked_until"] is None
    assert reminder["error"] == "circuit_open"
    assert [call["template"] for call in provider.calls] == ["decision_request"]


def test_slow_provider_times_out(make_profile, request_payload, clock) -> None:
    class HangingProvider:
        async def send(self, **kwargs: Any) -> DeliveryResult:
            await asyncio.sleep(5)
            return DeliveryResult(success=True)

    workflow = build_workflow(
        Settings(notify_channels=["email"], notify_send_timeout_seconds=0.01, notify_max_attempts=1),
        repository=InMemoryRepository(),
        directory=StaticCounterpartyDirectory([make_profile("lender-a")]),
        provider=HangingProvider(),
        clock=clock,
        immediate_dispatch=False,
    )

    async def run() -> list[dict[str, Any]]:
        (request_id,) = await _matched_requests(workflow, request_payload)
        await workflow.dispatch_notifications()
        return await workflow.repository.list_notifications(request_id)

    notifications = asyncio.run(run())

    assert notifications[0]["status"] == "failed"
    assert notifications[0]["error"] == "timeout"


def test_provider_crash_is_recorded_and_frees_half_open_trial(
    make_workflow, make_profile, request_payload, provider
) -> None:
    workflow = make_workflow(
        [make_profile("lender-a")],
        immediate_dispatch=False,
        notify_channels=["email"],
        notify_max_attempts=1,
        circuit_failure_threshold=1,
        circuit_cooldown_seconds=0,
    )
    breaker = workflow.orchestrator.breakers.for_channel("email")
    provider.script = [RuntimeError("bad provider")]

    async def run() -> tuple[Any, Any, list[dict[str, Any]]]:
        (first_id,) = await _matched_requests(workflow, request_payload)
        breaker.record_failure()
        crashed = await workflow.dispatch_notifications()
        await _matched_requests(workflow, request_payload)
        recovered = await workflow.dispatch_notifications()
        return crashed, recovered, await workflow.repository.list_notifications(first_id)

    crashed, recovered, notifications = asyncio.run(run())

    assert crashed.as_dict() == {"claimed": 1, "sent": 0, "failed": 1, "released": 0}
    assert notifications[0]["status"] == "failed"
    assert notifications[0]["error"] == "provider error: bad provider"
    assert notifications[0]["locked_until"] is None
    assert recovered.sent == 1
    assert breaker.state == CircuitBreakerState.CLOSED
    assert len(provider.calls) == 2
