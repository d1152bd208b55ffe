from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from matchroute.core.config import Settings
from matchroute.schemas.counterparties import CounterpartyProfileIn
from matchroute.services.matching import CounterpartyProfile

logger = logging.getLogger(__name__)


class CounterpartyLookupError(Exception):
    """Raised when the counterparty directory cannot be reached or answers badly."""


class CounterpartyDirectory(Protocol):
    async def get_pool(self, *, category: str, geography: dict[str, Any]) -> list[CounterpartyProfile]: ...


class StaticCounterpartyDirectory:
    def __init__(self, profiles: list[CounterpartyProfile]) -> None:
        self.profiles = list(profiles)

    @classmethod
    def from_json(cls, raw: str | None) -> StaticCounterpartyDirectory:
        if not raw:
            return cls([])
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("ignoring malformed counterparty pool json")
            return cls([])
        if not isinstance(payload, list):
            return cls([])
        return cls(parse_profiles(payload))

    async def get_pool(self, *, category: str, geography: dict[str, Any]) -> list[CounterpartyProfile]:
        return list(self.profiles)


class HttpCounterpartyDirectory:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def get_pool(self, *, category: str, geography: dict[str, Any]) -> list[CounterpartyProfile]:
        params = {"category": category}
        for key in ("region", "postal_code", "lat", "lon"):
            value = geography.get(key)
            if value is not None:
                params[key] = str(value)

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/counterparties", params=params)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CounterpartyLookupError(f"counterparty directory unavailable: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("counterparties", [])
        if not isinstance(payload, list):
            raise CounterpartyLookupError("counterparty directory returned an unexpected payload")
        return parse_profiles(payload)


def parse_profiles(rows: list[Any]) -> list[CounterpartyProfile]:
    profiles: list[CounterpartyProfile] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        try:
            parsed = CounterpartyProfileIn.model_validate(row)
        except ValidationError as exc:
            logger.warning("skipping invalid counterparty profile id=%s: %s", row.get("counterparty_id"), exc)
            continue
        profiles.append(profile_from_schema(parsed))
    return profiles


def profile_from_schema(parsed: CounterpartyProfileIn) -> CounterpartyProfile:
    return CounterpartyProfile(
        counterparty_id=parsed.counterparty_id,
        name=parsed.name,
        categories=list(parsed.categories),
        regions=list(parsed.regions) if parsed.regions is not None else None,
        lat=parsed.location.lat if parsed.location else None,
        lon=parsed.location.lon if parsed.location else None,
        service_radius_km=parsed.service_radius_km,
        capacity_ceiling=parsed.capacity_ceiling,
        current_load=parsed.current_load,
        min_terms=parsed.min_terms,
        max_terms=parsed.max_terms,
        preferred_terms=parsed.preferred_terms,
        auto_approve_threshold=parsed.auto_approve_threshold,
        rating=parsed.rating,
        rating_count=parsed.rating_count,
        avg_response_hours=parsed.avg_response_hours,
        min_requester_stats=dict(parsed.min_requester_stats),
        active=parsed.active,
        registered_at=parsed.registered_at,
        contacts=dict(parsed.contacts),
    )


def build_counterparty_directory(settings: Settings) -> CounterpartyDirectory:
    if settings.counterparty_directory_url:
        return HttpCounterpartyDirectory(
            settings.counterparty_directory_url,
            timeout_seconds=settings.counterparty_directory_timeout_seconds,
        )
    return StaticCounterpartyDirectory.from_json(settings.counterparty_pool_json)
