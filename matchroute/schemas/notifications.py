from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class DecisionRequestPayload(BaseModel):
    kind: Literal["decision_request"] = "decision_request"
    request_id: str
    item_id: str
    requested_terms: float
    decision_url: str
    respond_by: datetime
    attempt_number: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReminderPayload(BaseModel):
    kind: Literal["reminder"] = "reminder"
    request_id: str
    item_id: str
    requested_terms: float
    decision_url: str
    respond_by: datetime
    attempt_number: int
    hours_remaining: int
    urgency: Literal["high"] = "high"
    metadata: dict[str, Any] = Field(default_factory=dict)


class DispatchSummaryOut(BaseModel):
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    released: int = 0


class SweepSummaryOut(BaseModel):
    reminders_created: int = 0
    auto_approved: int = 0
    expired: int = 0
    rerouted: int = 0
    recovered: int = 0
    skipped: int = 0
    notifications: DispatchSummaryOut = Field(default_factory=DispatchSummaryOut)
