from __future__ import annotations

from datetime import datetime, timezone

import pytest

from matchroute.services.matching import (
    MatchSubject,
    MatchWeights,
    haversine_km,
    rank_candidates,
    subject_from_request,
    terms_proximity,
    urgency_boost,
)


def _subject(**overrides) -> MatchSubject:
    values = {
        "category": "lending",
        "terms": 25.0,
        "requester_stats": {"buyers_12mo": 12.0},
        "lat": 40.73,
        "lon": -73.99,
        "region": "NY",
        "urgency": "normal",
    }
    values.update(overrides)
    return MatchSubject(**values)


def test_haversine_known_distance() -> None:
    # New York to Los Angeles is roughly 3936 km.
    assert haversine_km(40.7128, -74.0060, 34.0522, -118.2437) == pytest.approx(3936, rel=0.01)
    assert haversine_km(10.0, 10.0, 10.0, 10.0) == 0.0


def test_hard_gates_report_first_failure(make_profile) -> None:
    pool = [
        make_profile("inactive", active=False, categories=["other"]),
        make_profile("wrong-category", categories=["insurance"]),
        make_profile("wrong-region", regions=["CA", "NV"]),
        make_profile("far-away", lat=34.0522, lon=-118.2437, service_radius_km=50.0),
        make_profile("full", capacity_ceiling=3, current_load=3),
        make_profile("too-cheap", min_terms=30.0),
        make_profile("too-rich", max_terms=20.0, min_terms=5.0),
        make_profile("picky", min_requester_stats={"buyers_12mo": 20}),
    ]
    ranked = rank_candidates(subject=_subject(), pool=pool, weights=MatchWeights())
    reasons = {row.counterparty_id: row.ineligible_reason for row in ranked}

    assert reasons == {
        "far-away": "outside_service_radius",
        "full": "capacity_reached",
        "inactive": "inactive",
        "picky": "requester_below_minimum:buyers_12mo",
        "too-cheap": "terms_below_minimum",
        "too-rich": "terms_above_maximum",
        "wrong-category": "category_mismatch",
        "wrong-region": "region_not_covered",
    }
    assert all(not row.eligible and row.rank_score == 0.0 for row in ranked)
    assert [row.counterparty_id for row in ranked] == sorted(reasons)


def test_national_counterparty_covers_any_region(make_profile) -> None:
    ranked = rank_candidates(
        subject=_subject(region="TX"),
        pool=[make_profile("national", regions=None), make_profile("regional", regions=["ny"])],
        weights=MatchWeights(),
    )
    eligibility = {row.counterparty_id: row.eligible for row in ranked}
    assert eligibility == {"national": True, "regional": False}


def test_eligible_ordering_uses_score_then_tie_breakers(make_profile) -> None:
    registered = datetime(2023, 6, 1, tzinfo=timezone.utc)
    pool = [
        make_profile("c-late", registered_at=datetime(2024, 6, 1, tzinfo=timezone.utc)),
        make_profile("b-early", registered_at=registered),
        make_profile("a-early", registered_at=registered),
        make_profile("busy", current_load=5),
        make_profile("star", rating=5.0),
        make_profile("excluded", categories=["other"]),
    ]
    ranked = rank_candidates(subject=_subject(), pool=pool, weights=MatchWeights())

    assert [row.counterparty_id for row in ranked] == [
        "star",
        "a-early",
        "b-early",
        "c-late",
        "busy",
        "excluded",
    ]
    assert [row.rank for row in ranked] == [1, 2, 3, 4, 5, 6]


def test_ranking_is_deterministic_for_identical_inputs(make_profile) -> None:
    pool = [make_profile(f"cp-{index}", rating=float(index % 5), current_load=index % 3) for index in range(12)]
    first = rank_candidates(subject=_subject(), pool=pool, weights=MatchWeights())
    second = rank_candidates(subject=_subject(), pool=list(reversed(pool)), weights=MatchWeights())

    assert [row.to_record() for row in first] == [row.to_record() for row in second]


def test_score_breakdown_records_weight_value_and_contribution(make_profile) -> None:
    weights = MatchWeights(terms=0.4, geo=0.2, rating=0.3, urgency=0.1, geo_scale_km=50.0)
    ranked = rank_candidates(subject=_subject(urgency="high"), pool=[make_profile("solo")], weights=weights)
    breakdown = ranked[0].score_breakdown

    assert set(breakdown) == {"terms", "geo", "rating", "urgency"}
    assert breakdown["terms"] == {"weight": 0.4, "value": 1.0, "contribution": 0.4}
    assert breakdown["rating"]["value"] == pytest.approx(0.8)
    assert breakdown["urgency"]["value"] == pytest.approx(0.5)
    assert ranked[0].rank_score == pytest.approx(sum(row["contribution"] for row in breakdown.values()), abs=1e-5)


def test_missing_coordinates_score_zero_geo_and_skip_radius(make_profile) -> None:
    ranked = rank_candidates(
        subject=_subject(lat=None, lon=None),
        pool=[make_profile("remote", service_radius_km=1.0)],
        weights=MatchWeights(),
    )
    assert ranked[0].eligible
    assert ranked[0].distance_km is None
    assert ranked[0].score_breakdown["geo"]["value"] == 0.0


def test_empty_pool_returns_no_candidates() -> None:
    assert rank_candidates(subject=_subject(), pool=[], weights=MatchWeights()) == []


def test_terms_proximity_falls_back_to_midpoint(make_profile) -> None:
    profile = make_profile("mid", preferred_terms=None, min_terms=10.0, max_terms=30.0)
    assert terms_proximity(20.0, profile) == 1.0
    assert terms_proximity(30.0, profile) == pytest.approx(0.5)


def test_urgency_boost_scales_with_responsiveness() -> None:
    assert urgency_boost("low", 1.0) == 0.0
    assert urgency_boost("high", 0.0) == 1.0
    assert urgency_boost("high", 4.0) == pytest.approx(0.5)


def test_subject_from_request_reads_snapshot() -> None:
    subject = subject_from_request(
        {"category": "lending", "terms": "12.5"},
        {
            "requester_stats": {"buyers_12mo": "7"},
            "geography": {"lat": 1.5, "lon": 2.5, "region": "WA"},
            "urgency": "high",
        },
    )
    assert subject.terms == 12.5
    assert subject.requester_stats == {"buyers_12mo": 7.0}
    assert (subject.lat, subject.lon, subject.region, subject.urgency) == (1.5, 2.5, "WA", "high")
