from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


def is_active(routing: dict[str, Any]) -> bool:
    return routing.get("closed_at") is None


def decision_deadline(routing: dict[str, Any], *, window_seconds: int) -> datetime | None:
    dispatched_at = _as_datetime(routing.get("dispatched_at"))
    if dispatched_at is None:
        return None
    return dispatched_at + timedelta(seconds=window_seconds)


def reminder_due(
    routing: dict[str, Any],
    *,
    reminder_after_seconds: int,
    window_seconds: int,
    now: datetime | None = None,
) -> bool:
    now = now or datetime.now(timezone.utc)
    dispatched_at = _as_datetime(routing.get("dispatched_at"))
    if dispatched_at is None or not is_active(routing):
        return False
    elapsed = now - dispatched_at
    return timedelta(seconds=reminder_after_seconds) <= elapsed < timedelta(seconds=window_seconds)


def expiry_due(routing: dict[str, Any], *, window_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    deadline = decision_deadline(routing, window_seconds=window_seconds)
    return deadline is not None and is_active(routing) and deadline <= now


def qualifies_for_auto_approval(request: dict[str, Any], routing: dict[str, Any]) -> bool:
    threshold = routing.get("auto_approve_threshold")
    if threshold is None:
        return False
    return float(request["terms"]) <= float(threshold)
