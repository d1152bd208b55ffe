from datetime import datetime

from pydantic import BaseModel, Field


class LocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class CounterpartyProfileIn(BaseModel):
    counterparty_id: str = Field(min_length=1)
    name: str = ""
    categories: list[str] = Field(default_factory=list)
    regions: list[str] | None = None
    location: LocationIn | None = None
    service_radius_km: float | None = Field(default=None, ge=0)
    capacity_ceiling: int | None = Field(default=None, ge=0)
    current_load: int = Field(default=0, ge=0)
    min_terms: float | None = None
    max_terms: float | None = None
    preferred_terms: float | None = None
    auto_approve_threshold: float | None = None
    rating: float = Field(default=0.0, ge=0, le=5)
    rating_count: int = Field(default=0, ge=0)
    avg_response_hours: float | None = Field(default=None, ge=0)
    min_requester_stats: dict[str, float] = Field(default_factory=dict)
    active: bool = True
    registered_at: datetime | None = None
    contacts: dict[str, str] = Field(default_factory=dict)
