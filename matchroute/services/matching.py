from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from matchroute.core.config import Settings

_EARTH_RADIUS_KM = 6371.0
_URGENCY_LEVELS = {"low": 0.0, "normal": 0.5, "high": 1.0}
# Average response time (hours) at which responsiveness drops to one half.
_RESPONSIVENESS_HALF_LIFE_HOURS = 4.0


@dataclass(slots=True)
class CounterpartyProfile:
    counterparty_id: str
    name: str = ""
    categories: list[str] = field(default_factory=list)
    regions: list[str] | None = None
    lat: float | None = None
    lon: float | None = None
    service_radius_km: float | None = None
    capacity_ceiling: int | None = None
    current_load: int = 0
    min_terms: float | None = None
    max_terms: float | None = None
    preferred_terms: float | None = None
    auto_approve_threshold: float | None = None
    rating: float = 0.0
    rating_count: int = 0
    avg_response_hours: float | None = None
    min_requester_stats: dict[str, float] = field(default_factory=dict)
    active: bool = True
    registered_at: datetime | None = None
    contacts: dict[str, str] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["registered_at"] = self.registered_at.isoformat() if self.registered_at else None
        return record


@dataclass(slots=True)
class MatchSubject:
    category: str
    terms: float
    requester_stats: dict[str, float]
    lat: float | None
    lon: float | None
    region: str | None
    urgency: str


@dataclass(slots=True)
class MatchWeights:
    terms: float = 0.35
    geo: float = 0.25
    rating: float = 0.30
    urgency: float = 0.10
    geo_scale_km: float = 50.0

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchWeights:
        return cls(
            terms=settings.match_weight_terms,
            geo=settings.match_weight_geo,
            rating=settings.match_weight_rating,
            urgency=settings.match_weight_urgency,
            geo_scale_km=settings.match_geo_scale_km,
        )


@dataclass(slots=True)
class ScoredCandidate:
    profile: CounterpartyProfile
    eligible: bool
    ineligible_reason: str | None
    rank_score: float
    score_breakdown: dict[str, dict[str, float]]
    distance_km: float | None
    rank: int | None = None

    @property
    def counterparty_id(self) -> str:
        return self.profile.counterparty_id

    def to_record(self) -> dict[str, Any]:
        return {
            "counterparty_id": self.counterparty_id,
            "eligible": self.eligible,
            "ineligible_reason": self.ineligible_reason,
            "rank": self.rank,
            "rank_score": self.rank_score,
            "score_breakdown": self.score_breakdown,
            "distance_km": self.distance_km,
            "profile": self.profile.to_record(),
        }


def subject_from_request(request: dict[str, Any], snapshot: dict[str, Any]) -> MatchSubject:
    geography = snapshot.get("geography") or {}
    stats = snapshot.get("requester_stats") or {}
    return MatchSubject(
        category=str(request["category"]),
        terms=float(request["terms"]),
        requester_stats={key: _coerce_float(value) for key, value in stats.items()},
        lat=_coerce_optional_float(geography.get("lat")),
        lon=_coerce_optional_float(geography.get("lon")),
        region=geography.get("region") or None,
        urgency=snapshot.get("urgency") or "normal",
    )


def rank_candidates(
    *,
    subject: MatchSubject,
    pool: list[CounterpartyProfile],
    weights: MatchWeights,
) -> list[ScoredCandidate]:
    """Score every counterparty in the pool and assign 1-based ranks.

    Eligible candidates come first ordered by score, rating, load, registration
    time and id; ineligible ones follow ordered by id. The result depends only on
    the inputs.
    """
    scored = [score_counterparty(subject=subject, profile=profile, weights=weights) for profile in pool]
    eligible = sorted(
        (row for row in scored if row.eligible),
        key=lambda row: (
            -row.rank_score,
            -row.profile.rating,
            row.profile.current_load,
            row.profile.registered_at is None,
            row.profile.registered_at.timestamp() if row.profile.registered_at else 0.0,
            row.counterparty_id,
        ),
    )
    ineligible = sorted((row for row in scored if not row.eligible), key=lambda row: row.counterparty_id)

    ranked = eligible + ineligible
    for index, row in enumerate(ranked, start=1):
        row.rank = index
    return ranked


def score_counterparty(
    *,
    subject: MatchSubject,
    profile: CounterpartyProfile,
    weights: MatchWeights,
) -> ScoredCandidate:
    distance_km = _distance(subject, profile)
    reason = evaluate_gates(subject=subject, profile=profile, distance_km=distance_km)
    if reason is not None:
        return ScoredCandidate(
            profile=profile,
            eligible=False,
            ineligible_reason=reason,
            rank_score=0.0,
            score_breakdown={},
            distance_km=distance_km,
        )

    factors = {
        "terms": (weights.terms, terms_proximity(subject.terms, profile)),
        "geo": (weights.geo, geo_proximity(distance_km, weights.geo_scale_km)),
        "rating": (weights.rating, _clamp(profile.rating / 5.0)),
        "urgency": (weights.urgency, urgency_boost(subject.urgency, profile.avg_response_hours)),
    }
    breakdown: dict[str, dict[str, float]] = {}
    total = 0.0
    for name, (weight, value) in factors.items():
        contribution = weight * value
        total += contribution
        breakdown[name] = {
            "weight": weight,
            "value": round(value, 6),
            "contribution": round(contribution, 6),
        }

    return ScoredCandidate(
        profile=profile,
        eligible=True,
        ineligible_reason=None,
        rank_score=round(total, 6),
        score_breakdown=breakdown,
        distance_km=distance_km,
    )


def evaluate_gates(
    *,
    subject: MatchSubject,
    profile: CounterpartyProfile,
    distance_km: float | None,
) -> str | None:
    if not profile.active:
        return "inactive"
    if subject.category.lower() not in {category.lower() for category in profile.categories}:
        return "category_mismatch"
    if profile.regions is not None:
        covered = {region.lower() for region in profile.regions}
        if subject.region is None or subject.region.lower() not in covered:
            return "region_not_covered"
    if profile.service_radius_km is not None and distance_km is not None and distance_km > profile.service_radius_km:
        return "outside_service_radius"
    if profile.capacity_ceiling is not None and profile.current_load >= profile.capacity_ceiling:
        return "capacity_reached"
    if profile.min_terms is not None and subject.terms < profile.min_terms:
        return "terms_below_minimum"
    if profile.max_terms is not None and subject.terms > profile.max_terms:
        return "terms_above_maximum"
    for stat, minimum in sorted(profile.min_requester_stats.items()):
        if subject.requester_stats.get(stat, 0.0) < minimum:
            return f"requester_below_minimum:{stat}"
    return None


def terms_proximity(terms: float, profile: CounterpartyProfile) -> float:
    target = profile.preferred_terms
    if target is None and profile.min_terms is not None and profile.max_terms is not None:
        target = (profile.min_terms + profile.max_terms) / 2.0
    if target is None:
        return 0.5

    span = None
    if profile.min_terms is not None and profile.max_terms is not None:
        span = profile.max_terms - profile.min_terms
    if not span or span <= 0:
        span = max(abs(target), 1.0)
    return _clamp(1.0 - abs(terms - target) / span)


def geo_proximity(distance_km: float | None, scale_km: float) -> float:
    if distance_km is None:
        return 0.0
    return 1.0 / (1.0 + distance_km / max(scale_km, 1e-9))


def urgency_boost(urgency: str, avg_response_hours: float | None) -> float:
    level = _URGENCY_LEVELS.get(urgency, _URGENCY_LEVELS["normal"])
    if avg_response_hours is None:
        responsiveness = 0.5
    else:
        responsiveness = 1.0 / (1.0 + max(avg_response_hours, 0.0) / _RESPONSIVENESS_HALF_LIFE_HOURS)
    return _clamp(level * responsiveness)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def _distance(subject: MatchSubject, profile: CounterpartyProfile) -> float | None:
    if subject.lat is None or subject.lon is None or profile.lat is None or profile.lon is None:
        return None
    return round(haversine_km(subject.lat, subject.lon, profile.lat, profile.lon), 3)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _coerce_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _coerce_optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
