from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from matchroute.core.config import Settings
from matchroute.services.counterparties import (
    CounterpartyLookupError,
    HttpCounterpartyDirectory,
    StaticCounterpartyDirectory,
    build_counterparty_directory,
)

_PROFILE = {
    "counterparty_id": "lender-a",
    "name": "Lender A",
    "categories": ["lending"],
    "regions": ["NY"],
    "location": {"lat": 40.71, "lon": -74.0},
    "service_radius_km": 80,
    "rating": 4.5,
    "registered_at": "2024-01-01T00:00:00Z",
    "contacts": {"email": "a@example.com"},
}


def test_static_directory_skips_invalid_profiles() -> None:
    raw = json.dumps([_PROFILE, {"counterparty_id": "bad", "rating": 9}, "noise", {"name": "missing id"}])
    directory = StaticCounterpartyDirectory.from_json(raw)

    pool = asyncio.run(directory.get_pool(category="lending", geography={}))

    assert [profile.counterparty_id for profile in pool] == ["lender-a"]
    profile = pool[0]
    assert (profile.lat, profile.lon) == (40.71, -74.0)
    assert profile.regions == ["NY"]
    assert profile.contacts == {"email": "a@example.com"}


def test_static_directory_tolerates_malformed_json() -> None:
    assert StaticCounterpartyDirectory.from_json("{oops").profiles == []
    assert StaticCounterpartyDirectory.from_json('{"counterparty_id": "x"}').profiles == []
    assert StaticCounterpartyDirectory.from_json(None).profiles == []


def test_http_directory_passes_category_and_geography() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"counterparties": [_PROFILE]})

    directory = HttpCounterpartyDirectory("https://directory.test/", transport=httpx.MockTransport(handler))
    pool = asyncio.run(directory.get_pool(category="lending", geography={"region": "NY", "lat": 40.7, "lon": None}))

    assert [profile.counterparty_id for profile in pool] == ["lender-a"]
    assert captured[0].url.path == "/counterparties"
    assert dict(captured[0].url.params) == {"category": "lending", "region": "NY", "lat": "40.7"}


def test_http_directory_errors_raise_lookup_error() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"detail": "upstream"})

    def garbled(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>")

    def unexpected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json="nope")

    for handler in (failing, garbled, unexpected):
        directory = HttpCounterpartyDirectory("https://directory.test", transport=httpx.MockTransport(handler))
        with pytest.raises(CounterpartyLookupError):
            asyncio.run(directory.get_pool(category="lending", geography={}))


def test_build_counterparty_directory_prefers_http_url() -> None:
    directory = build_counterparty_directory(Settings(counterparty_directory_url="https://directory.test"))
    assert isinstance(directory, HttpCounterpartyDirectory)

    static = build_counterparty_directory(Settings(counterparty_pool_json=json.dumps([_PROFILE])))
    assert isinstance(static, StaticCounterpartyDirectory)
    assert len(static.profiles) == 1
