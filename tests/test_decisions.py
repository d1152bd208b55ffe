from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest

from matchroute.core.security import InvalidRoutingTokenError
from matchroute.services.repository import RepositoryValidationError, StaleDecisionError


def _token(notification: dict[str, Any]) -> str:
    query = parse_qs(urlparse(notification["payload"]["decision_url"]).query)
    return query["token"][0]


def test_approve_finalizes_request_with_agreed_terms(make_workflow, make_profile, request_payload, transitions) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False)

    async def run() -> tuple[dict[str, Any], bool, dict[str, Any], list[dict[str, Any]]]:
        request = await workflow.create_request(request_payload(terms=22.0), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        notifications = await workflow.repository.list_notifications(request["id"])
        decision, created = await workflow.submit_decision(
            _token(notifications[0]),
            decision="approved",
            proposed_terms=20.0,
            message="happy to co-market",
        )
        status = await workflow.get_request_status(request["id"])
        return decision, created, status, await workflow.get_audit_trail(request["id"])

    decision, created, status, audit = asyncio.run(run())

    assert created
    assert decision["decided_by"] == "lender-a"
    assert status["request"]["status"] == "approved"
    assert status["request"]["agreed_terms"] == 20.0
    assert status["active_routing"] is None
    assert status["routings"][0]["close_reason"] == "approved"
    assert transitions(audit) == [
        ("draft", "searching"),
        ("searching", "awaiting_decision"),
        ("awaiting_decision", "approved"),
    ]


def test_approve_without_counter_terms_keeps_requested_terms(make_workflow, make_profile, request_payload) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False)

    async def run() -> dict[str, Any]:
        request = await workflow.create_request(request_payload(terms=18.0), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        active = await workflow.repository.get_active_routing(request["id"])
        await workflow.decisions.submit(active["id"], decision="approved")
        return await workflow.repository.get_request(request["id"])

    assert asyncio.run(run())["agreed_terms"] == 18.0


def test_duplicate_decision_returns_existing_without_side_effects(
    make_workflow, make_profile, request_payload
) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False)

    async def run() -> tuple[Any, ...]:
        request = await workflow.create_request(request_payload(), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        active = await workflow.repository.get_active_routing(request["id"])
        first, first_created = await workflow.decisions.submit(active["id"], decision="approved")
        audit_before = await workflow.get_audit_trail(request["id"])
        second, second_created = await workflow.decisions.submit(active["id"], decision="declined")
        audit_after = await workflow.get_audit_trail(request["id"])
        decisions = await workflow.repository.list_decisions(request["id"])
        return first, first_created, second, second_created, audit_before, audit_after, decisions

    first, first_created, second, second_created, audit_before, audit_after, decisions = asyncio.run(run())

    assert first_created and not second_created
    assert second == first
    assert second["decision"] == "approved"
    assert audit_after == audit_before
    assert len(decisions) == 1


def test_decline_reroutes_to_second_candidate(make_workflow, make_profile, request_payload) -> None:
    workflow = make_workflow(
        [make_profile("lender-a", rating=5.0), make_profile("lender-b", rating=4.0)],
        immediate_dispatch=False,
    )

    async def run() -> dict[str, Any]:
        request = await workflow.create_request(request_payload(), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        notifications = await workflow.repository.list_notifications(request["id"])
        await workflow.submit_decision(_token(notifications[0]), decision="declined", reason="at capacity")
        return await workflow.get_request_status(request["id"])

    status = asyncio.run(run())

    assert status["request"]["status"] == "awaiting_decision"
    assert status["active_routing"]["counterparty_id"] == "lender-b"
    assert status["active_routing"]["attempt_number"] == 2
    assert [row["close_reason"] for row in status["routings"]] == ["declined", None]
    second_round = [row for row in status["notifications"] if row["counterparty_id"] == "lender-b"]
    assert {row["channel"] for row in second_round} == {"email", "sms"}
    assert all(row["payload"]["attempt_number"] == 2 for row in second_round)


def test_three_declines_exhaust_candidates(make_workflow, make_profile, request_payload, transitions) -> None:
    workflow = make_workflow(
        [make_profile("lender-a", rating=5.0), make_profile("lender-b", rating=4.0), make_profile("lender-c", rating=3.0)],
        immediate_dispatch=False,
    )

    async def run() -> tuple[dict[str, Any], list[dict[str, Any]]]:
        request = await workflow.create_request(request_payload(), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        for _ in range(3):
            active = await workflow.repository.get_active_routing(request["id"])
            await workflow.decisions.submit(active["id"], decision="declined")
        return await workflow.get_request_status(request["id"]), await workflow.get_audit_trail(request["id"])

    status, audit = asyncio.run(run())

    assert status["request"]["status"] == "expired"
    assert status["request"]["status_reason"] == "candidates exhausted"
    assert [row["counterparty_id"] for row in status["routings"]] == ["lender-a", "lender-b", "lender-c"]
    assert [row["attempt_number"] for row in status["routings"]] == [1, 2, 3]
    assert transitions(audit)[-2:] == [("awaiting_decision", "searching"), ("searching", "expired")]


def test_terminate_policy_declines_request(make_workflow, make_profile, request_payload) -> None:
    workflow = make_workflow(
        [make_profile("lender-a"), make_profile("lender-b")],
        immediate_dispatch=False,
        request_type_policies_json='{"exclusive": {"decline_action": "terminate"}}',
    )

    async def run() -> dict[str, Any]:
        request = await workflow.create_request(request_payload(request_type="exclusive"), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        active = await workflow.repository.get_active_routing(request["id"])
        await workflow.decisions.submit(active["id"], decision="declined")
        return await workflow.get_request_status(request["id"])

    status = asyncio.run(run())

    assert status["request"]["status"] == "declined"
    assert len(status["routings"]) == 1


def test_decision_after_timeout_is_stale(make_workflow, make_profile, request_payload, clock) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False)

    async def run() -> None:
        request = await workflow.create_request(request_payload(), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        active = await workflow.repository.get_active_routing(request["id"])
        clock.advance(hours=24)
        await workflow.run_sla_sweep()
        await workflow.decisions.submit(active["id"], decision="approved")

    with pytest.raises(StaleDecisionError):
        asyncio.run(run())


def test_invalid_inputs_are_rejected(make_workflow, make_profile, request_payload) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False)

    async def run(decision: str, proposed_terms: float | None) -> None:
        request = await workflow.create_request(request_payload(), actor="machine:intake")
        await workflow.trigger_match(request["id"])
        active = await workflow.repository.get_active_routing(request["id"])
        await workflow.decisions.submit(active["id"], decision=decision, proposed_terms=proposed_terms)

    with pytest.raises(RepositoryValidationError):
        asyncio.run(run("maybe", None))
    with pytest.raises(RepositoryValidationError):
        asyncio.run(run("approved", -1.0))


def test_forged_token_is_rejected(make_workflow, make_profile) -> None:
    workflow = make_workflow([make_profile("lender-a")], immediate_dispatch=False)

    with pytest.raises(InvalidRoutingTokenError):
        asyncio.run(workflow.submit_decision("forged.token", decision="approved"))
