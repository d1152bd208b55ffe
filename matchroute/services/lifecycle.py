from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal

DRAFT = "draft"
SEARCHING = "searching"
AWAITING_DECISION = "awaiting_decision"
APPROVED = "approved"
DECLINED = "declined"
EXPIRED = "expired"

REQUEST_STATUSES = {DRAFT, SEARCHING, AWAITING_DECISION, APPROVED, DECLINED, EXPIRED}
TERMINAL_STATUSES = frozenset({APPROVED, DECLINED, EXPIRED})

# awaiting_decision -> searching is the declined-pending-rerouting hop; it is
# always followed by a routing attempt inside the same decline operation.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    DRAFT: {SEARCHING},
    SEARCHING: {AWAITING_DECISION, EXPIRED},
    AWAITING_DECISION: {APPROVED, DECLINED, EXPIRED, SEARCHING},
    APPROVED: set(),
    DECLINED: set(),
    EXPIRED: set(),
}

REASON_CANDIDATES_EXHAUSTED = "candidates exhausted"
REASON_NO_ELIGIBLE_CANDIDATES = "no eligible candidates"
REASON_DECISION_WINDOW_ELAPSED = "decision window elapsed"

DeclineAction = Literal["reroute", "terminate"]
TimeoutAction = Literal["expire", "reroute"]

logger = logging.getLogger(__name__)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


@dataclass(frozen=True, slots=True)
class RequestTypePolicy:
    decline_action: DeclineAction = "reroute"
    timeout_action: TimeoutAction = "expire"


DEFAULT_POLICY = RequestTypePolicy()


class PolicyBook:
    """Per request-type decline and timeout behavior."""

    def __init__(self, policies: dict[str, RequestTypePolicy] | None = None) -> None:
        self._policies = dict(policies or {})

    def for_type(self, request_type: str | None) -> RequestTypePolicy:
        if request_type and request_type in self._policies:
            return self._policies[request_type]
        return self._policies.get("default", DEFAULT_POLICY)


def parse_request_type_policies(raw: str | None) -> dict[str, RequestTypePolicy]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed request type policies json")
        return {}
    if not isinstance(payload, dict):
        return {}

    parsed: dict[str, RequestTypePolicy] = {}
    for request_type, raw_policy in payload.items():
        if not isinstance(request_type, str) or not isinstance(raw_policy, dict):
            continue
        decline_action = _coerce_choice(raw_policy.get("decline_action"), {"reroute", "terminate"}, "reroute")
        timeout_action = _coerce_choice(raw_policy.get("timeout_action"), {"expire", "reroute"}, "expire")
        parsed[request_type.strip()] = RequestTypePolicy(
            decline_action=decline_action,  # type: ignore[arg-type]
            timeout_action=timeout_action,  # type: ignore[arg-type]
        )
    return parsed


def _coerce_choice(value: Any, allowed: set[str], default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return default
