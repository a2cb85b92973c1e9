"""Schemas for payouts."""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from affiliate_engine.schemas.base import BaseResponseSchema


class PayoutResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    affiliate_id: UUID
    period_key: str
    gross_amount_cents: int
    fee_cents: int
    net_amount_cents: int
    currency: str
    event_count: int
    method_type: str
    status: str
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class PayoutListResponse(BaseModel):
    items: List[PayoutResponse]
    total: int
    skip: int
    limit: int


class PayoutCompleteRequest(BaseModel):
    external_reference: Optional[str] = Field(None, max_length=255)


class PayoutFailRequest(BaseModel):
    reason: str = Field(..., min_length=2, max_length=1000)
