from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

os.environ.setdefault("MR_OTEL_ENABLED", "false")

from matchroute.core.config import Settings  # noqa: E402
from matchroute.schemas.requests import RequestCreate  # noqa: E402
from matchroute.services.channels import DeliveryResult  # noqa: E402
from matchroute.services.counterparties import StaticCounterpartyDirectory  # noqa: E402
from matchroute.services.matching import CounterpartyProfile  # noqa: E402
from matchroute.services.store import InMemoryRepository  # noqa: E402
from matchroute.services.workflow import Workflow, build_workflow  # noqa: E402

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingProvider:
    """Channel provider that records calls and replays scripted results."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.script: list[DeliveryResult | Exception] = []
        self.default = DeliveryResult(success=True)

    async def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: dict[str, Any],
    ) -> DeliveryResult:
        self.calls.append({"channel": channel, "recipient": recipient, "template": template, "data": data})
        if self.script:
            result = self.script.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self.default


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _profile(counterparty_id: str, **overrides: Any) -> CounterpartyProfile:
    values: dict[str, Any] = {
        "counterparty_id": counterparty_id,
        "name": counterparty_id.title(),
        "categories": ["lending"],
        "lat": 40.7128,
        "lon": -74.0060,
        "service_radius_km": 100.0,
        "capacity_ceiling": 10,
        "current_load": 1,
        "min_terms": 10.0,
        "max_terms": 50.0,
        "preferred_terms": 25.0,
        "rating": 4.0,
        "rating_count": 20,
        "avg_response_hours": 4.0,
        "registered_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "contacts": {"email": f"{counterparty_id}@example.com", "sms": "+15550100"},
    }
    values.update(overrides)
    return CounterpartyProfile(**values)


def _request_payload(**overrides: Any) -> RequestCreate:
    values: dict[str, Any] = {
        "requester_id": "requester-1",
        "item_id": "listing-42",
        "category": "lending",
        "terms": 25.0,
        "organization_id": "org-1",
        "metadata": {"address": "1 Main St"},
        "snapshot": {
            "requester_stats": {"buyers_12mo": 12, "units_12mo": 30},
            "geography": {"lat": 40.73, "lon": -73.99, "region": "NY"},
            "urgency": "normal",
        },
    }
    values.update(overrides)
    return RequestCreate.model_validate(values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> RecordingProvider:
    return RecordingProvider()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_profile() -> Callable[..., CounterpartyProfile]:
    return _profile


@pytest.fixture
def request_payload() -> Callable[..., RequestCreate]:
    return _request_payload


@pytest.fixture
def make_workflow(
    clock: FakeClock,
    provider: RecordingProvider,
    sleeps: SleepRecorder,
) -> Callable[..., Workflow]:
    def factory(
        profiles: list[CounterpartyProfile],
        *,
        immediate_dispatch: bool = True,
        **setting_overrides: Any,
    ) -> Workflow:
        settings = Settings(**setting_overrides)
        return build_workflow(
            settings,
            repository=InMemoryRepository(),
            directory=StaticCounterpartyDirectory(profiles),
            provider=provider,
            clock=clock,
            sleep=sleeps,
            immediate_dispatch=immediate_dispatch,
        )

    return factory


def status_changes(audit_entries: list[dict[str, Any]]) -> list[tuple[str, str]]:
    return [
        (entry["metadata"]["from"], entry["metadata"]["to"])
        for entry in audit_entries
        if entry["action"] == "request.status_changed"
    ]


@pytest.fixture
def transitions() -> Callable[[list[dict[str, Any]]], list[tuple[str, str]]]:
    return status_changes
