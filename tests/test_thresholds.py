from datetime import datetime, timedelta, timezone

from matchroute.workers.thresholds import expiry_due, qualifies_for_auto_approval, reminder_due

WINDOW = 24 * 3600
REMINDER_AFTER = 2 * 3600


def test_reminder_due_inside_window_only() -> None:
    now = datetime.now(timezone.utc)
    routing = {"dispatched_at": now - timedelta(hours=3), "closed_at": None}
    assert reminder_due(routing, reminder_after_seconds=REMINDER_AFTER, window_seconds=WINDOW, now=now)

    early = {"dispatched_at": now - timedelta(minutes=119), "closed_at": None}
    assert not reminder_due(early, reminder_after_seconds=REMINDER_AFTER, window_seconds=WINDOW, now=now)

    late = {"dispatched_at": now - timedelta(hours=24), "closed_at": None}
    assert not reminder_due(late, reminder_after_seconds=REMINDER_AFTER, window_seconds=WINDOW, now=now)


def test_expiry_due_at_window_boundary() -> None:
    now = datetime.now(timezone.utc)
    assert expiry_due({"dispatched_at": (now - timedelta(hours=24)).isoformat(), "closed_at": None}, window_seconds=WINDOW, now=now)
    assert not expiry_due(
        {"dispatched_at": now - timedelta(hours=23, minutes=59), "closed_at": None},
        window_seconds=WINDOW,
        now=now,
    )


def test_closed_routing_is_never_due() -> None:
    now = datetime.now(timezone.utc)
    routing = {"dispatched_at": now - timedelta(days=3), "closed_at": now}
    assert not expiry_due(routing, window_seconds=WINDOW, now=now)
    assert not reminder_due(routing, reminder_after_seconds=REMINDER_AFTER, window_seconds=WINDOW, now=now)


def test_auto_approval_requires_threshold_at_or_above_terms() -> None:
    assert qualifies_for_auto_approval({"terms": 25.0}, {"auto_approve_threshold": 25.0})
    assert not qualifies_for_auto_approval({"terms": 25.5}, {"auto_approve_threshold": 25.0})
    assert not qualifies_for_auto_approval({"terms": 1.0}, {"auto_approve_threshold": None})
