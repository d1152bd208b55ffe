from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

DecisionValue = Literal["approved", "declined"]


class DecisionSubmit(BaseModel):
    token: str = Field(min_length=1)
    decision: DecisionValue
    proposed_terms: float | None = Field(default=None, ge=0)
    message: str | None = Field(default=None, max_length=2000)
    reason: str | None = Field(default=None, max_length=500)


class DecisionOut(BaseModel):
    id: str
    request_id: str
    routing_id: str
    counterparty_id: str
    decision: DecisionValue
    proposed_terms: float | None = None
    reason: str | None = None
    message: str | None = None
    decided_at: datetime
    decided_by: str
    created: bool = True
