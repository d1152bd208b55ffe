from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RequestStatus = Literal["draft", "searching", "awaiting_decision", "approved", "declined", "expired"]
Urgency = Literal["low", "normal", "high"]


class GeographyIn(BaseModel):
    lat: float | None = Field(default=None, ge=-90, le=90)
    lon: float | None = Field(default=None, ge=-180, le=180)
    region: str | None = None
    postal_code: str | None = None


class SnapshotIn(BaseModel):
    requester_stats: dict[str, float] = Field(default_factory=dict)
    goals: dict[str, Any] = Field(default_factory=dict)
    geography: GeographyIn = Field(default_factory=GeographyIn)
    urgency: Urgency = "normal"


class RequestCreate(BaseModel):
    requester_id: str = Field(min_length=1)
    item_id: str = Field(min_length=1)
    category: str = Field(min_length=1)
    terms: float = Field(ge=0)
    organization_id: str | None = None
    request_type: str = Field(default="standard", min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    snapshot: SnapshotIn = Field(default_factory=SnapshotIn)


class RequestCreatedOut(BaseModel):
    request_id: str
    status: RequestStatus


class RequestOut(BaseModel):
    id: str
    requester_id: str
    item_id: str
    category: str
    terms: float
    organization_id: str | None = None
    request_type: str
    status: RequestStatus
    status_reason: str | None = None
    agreed_terms: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class SnapshotOut(BaseModel):
    request_id: str
    requester_stats: dict[str, Any] = Field(default_factory=dict)
    goals: dict[str, Any] = Field(default_factory=dict)
    geography: dict[str, Any] = Field(default_factory=dict)
    urgency: Urgency
    captured_at: datetime


class CandidateOut(BaseModel):
    id: str
    match_run: int
    counterparty_id: str
    eligible: bool
    ineligible_reason: str | None = None
    rank: int | None = None
    rank_score: float
    score_breakdown: dict[str, Any] = Field(default_factory=dict)
    distance_km: float | None = None
    created_at: datetime


class RoutingOut(BaseModel):
    id: str
    counterparty_id: str
    attempt_number: int
    distance_km: float | None = None
    fit: dict[str, Any] = Field(default_factory=dict)
    auto_approve_threshold: float | None = None
    dispatched_at: datetime
    closed_at: datetime | None = None
    close_reason: str | None = None


class NotificationOut(BaseModel):
    id: str
    routing_id: str
    counterparty_id: str
    channel: str
    kind: str
    status: str
    recipient: str
    error: str | None = None
    attempts: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime


class RequestStatusOut(BaseModel):
    request: RequestOut
    snapshot: SnapshotOut
    candidates: list[CandidateOut] = Field(default_factory=list)
    active_routing: RoutingOut | None = None
    routings: list[RoutingOut] = Field(default_factory=list)
    decisions: list[dict[str, Any]] = Field(default_factory=list)
    notifications: list[NotificationOut] = Field(default_factory=list)


class MatchOut(BaseModel):
    request_id: str
    status: RequestStatus
    outcome: Literal["routed", "exhausted", "settled"]
    routing_id: str | None = None
    counterparty_id: str | None = None
    reason: str | None = None
