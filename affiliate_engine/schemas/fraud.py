"""Schemas for the fraud alert review queue."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from affiliate_engine.models.fraud import FraudAlertStatus
from affiliate_engine.schemas.base import BaseResponseSchema


class FraudAlertResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    affiliate_id: UUID
    commission_event_id: Optional[UUID] = None
    touch_id: Optional[UUID] = None
    source_event_id: Optional[str] = None
    alert_type: str
    severity: str
    decision: str
    risk_score: int
    description: str
    evidence: Optional[dict] = None
    status: str
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UUID] = None
    resolution_notes: Optional[str] = None
    created_at: datetime


class FraudAlertListResponse(BaseModel):
    items: List[FraudAlertResponse]
    total: int
    skip: int
    limit: int


class FraudAlertResolveRequest(BaseModel):
    status: FraudAlertStatus
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("status")
    @classmethod
    def not_open(cls, v: FraudAlertStatus) -> FraudAlertStatus:
        if v == FraudAlertStatus.OPEN:
            raise ValueError("Resolution status cannot be OPEN")
        return v
