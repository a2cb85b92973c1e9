"""Schemas for affiliates, ref codes, touches and the affiliate portal."""
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from affiliate_engine.models.affiliate import AffiliateStatus, PayoutMethodType
from affiliate_engine.models.touch import TouchType
from affiliate_engine.schemas.base import BaseResponseSchema, BaseCreateSchema
from affiliate_engine.schemas.commission import CommissionEventResponse
from affiliate_engine.schemas.payout import PayoutResponse


REF_CODE_PATTERN = r"^[A-Za-z0-9_-]{3,32}$"


# ==================== Affiliate ====================

class AffiliateCreate(BaseCreateSchema):
    user_id: UUID
    display_name: str = Field(..., min_length=2, max_length=200)
    email: Optional[str] = Field(None, max_length=255)
    commission_plan_id: Optional[UUID] = None
    payout_method_type: Optional[PayoutMethodType] = None
    payout_method_reference: Optional[str] = Field(None, max_length=255)
    ref_code: Optional[str] = Field(None, pattern=REF_CODE_PATTERN, description="Generated when omitted")


class AffiliateUpdate(BaseModel):
    display_name: Optional[str] = Field(None, min_length=2, max_length=200)
    email: Optional[str] = Field(None, max_length=255)
    status: Optional[AffiliateStatus] = None
    commission_plan_id: Optional[UUID] = None
    payout_method_type: Optional[PayoutMethodType] = None
    payout_method_reference: Optional[str] = Field(None, max_length=255)


class AffiliateResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    user_id: UUID
    display_name: str
    email: Optional[str] = None
    status: str
    commission_plan_id: Optional[UUID] = None
    payout_method_type: Optional[str] = None
    lifetime_conversions: int
    lifetime_revenue_cents: int
    lifetime_commission_cents: int
    created_at: datetime


class AffiliateListResponse(BaseModel):
    items: List[AffiliateResponse]
    total: int
    skip: int
    limit: int


# ==================== Ref Codes ====================

class RefCodeCreate(BaseCreateSchema):
    ref_code: Optional[str] = Field(None, pattern=REF_CODE_PATTERN, description="Generated when omitted")
    description: Optional[str] = Field(None, max_length=255)


class RefCodeUpdate(BaseModel):
    is_active: bool


class RefCodeResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    affiliate_id: UUID
    ref_code: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime


class PublicRefCodeResponse(BaseModel):
    """Non-sensitive ref code lookup result for unauthenticated callers."""
    valid: bool
    ref_code: Optional[str] = None
    affiliate_name: Optional[str] = None
    clinic_id: Optional[UUID] = None
    clinic_name: Optional[str] = None
    branding: Optional[Dict] = None


# ==================== Touches ====================

class TouchCreate(BaseCreateSchema):
    """Public touch payload sent by the tracking snippet."""
    ref_code: str = Field(..., min_length=1, max_length=50)
    clinic_id: Optional[UUID] = None
    touch_type: TouchType = TouchType.CLICK
    visitor_fingerprint: Optional[str] = Field(None, max_length=255)
    cookie_id: Optional[str] = Field(None, max_length=255)
    landing_page: Optional[str] = Field(None, max_length=2048)
    referrer_url: Optional[str] = Field(None, max_length=2048)
    utm_source: Optional[str] = Field(None, max_length=255)
    utm_medium: Optional[str] = Field(None, max_length=255)
    utm_campaign: Optional[str] = Field(None, max_length=255)
    utm_content: Optional[str] = Field(None, max_length=255)
    utm_term: Optional[str] = Field(None, max_length=255)
    sub_ids: List[str] = Field(default_factory=list, max_length=5)

    @field_validator("sub_ids")
    @classmethod
    def trim_sub_ids(cls, v: List[str]) -> List[str]:
        return [s.strip()[:255] for s in v if s and s.strip()]


class TouchAcceptedResponse(BaseModel):
    """Uniform response; does not reveal whether the ref code was valid."""
    success: bool = True
    cookie_id: Optional[str] = None


# ==================== Intake attribution ====================

class IntakeAttributionRequest(BaseCreateSchema):
    clinic_id: UUID
    patient_id: UUID
    promo_code: str = Field(..., min_length=1, max_length=50)
    source: str = Field("intake_form", max_length=50)


class IntakeAttributionResponse(BaseModel):
    success: bool
    touch_id: Optional[UUID] = None
    affiliate_id: Optional[UUID] = None
    skip_reason: Optional[str] = None


# ==================== Affiliate portal ====================

class EarningsSummary(BaseModel):
    affiliate_id: UUID
    display_name: str
    pending_balance_cents: int
    available_balance_cents: int
    processing_payout_cents: int
    lifetime_paid_cents: int
    lifetime_commission_cents: int
    lifetime_revenue_cents: int
    lifetime_conversions: int
    minimum_payout_cents: int
    payout_frequency: str
    recent_commissions: List[CommissionEventResponse] = []
    recent_payouts: List[PayoutResponse] = []
