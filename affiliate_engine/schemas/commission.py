"""Pydantic schemas for commission plans, rules, conversion events and the ledger."""
from datetime import datetime
from typing import ClassVar, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from affiliate_engine.models.commission import CommissionType, PlanAppliesTo, CommissionEventStatus
from affiliate_engine.schemas.base import BaseResponseSchema, BaseCreateSchema, StrictInputSchema


def validate_rate(commission_type: str, percent_bps: Optional[int], flat_amount_cents: Optional[int]) -> None:
    """Exactly the amount column matching the commission type is set."""
    if commission_type == CommissionType.PERCENT:
        if percent_bps is None:
            raise ValueError("percent_bps is required when commission type is PERCENT")
        if flat_amount_cents is not None:
            raise ValueError("flat_amount_cents must be empty when commission type is PERCENT")
    else:
        if flat_amount_cents is None:
            raise ValueError("flat_amount_cents is required when commission type is FLAT")
        if percent_bps is not None:
            raise ValueError("percent_bps must be empty when commission type is FLAT")


# ==================== CommissionPlan Schemas ====================

class CommissionPlanCreate(BaseCreateSchema):
    """Schema for creating a CommissionPlan."""
    name: str = Field(..., min_length=2, max_length=200)
    description: Optional[str] = None
    commission_type: CommissionType = CommissionType.PERCENT
    percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    flat_amount_cents: Optional[int] = Field(None, ge=0)
    applies_to: PlanAppliesTo = PlanAppliesTo.ALL_PAYMENTS
    recurring_enabled: bool = True
    recurring_percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    recurring_flat_amount_cents: Optional[int] = Field(None, ge=0)
    recurring_months: Optional[int] = Field(None, ge=1)
    recurring_decay_pct: Optional[int] = Field(None, ge=0, le=100)
    tier_enabled: bool = False
    is_default: bool = False
    is_active: bool = True

    @model_validator(mode="after")
    def check_rate(self):
        validate_rate(self.commission_type, self.percent_bps, self.flat_amount_cents)
        return self


class CommissionPlanUpdate(BaseModel):
    """
    Partial plan update.

    Only the optional plan columns may be cleared with an explicit null.
    The rate columns are validated by the service against the merged plan.
    """
    NULLABLE_FIELDS: ClassVar[frozenset] = frozenset({
        "description",
        "recurring_percent_bps",
        "recurring_flat_amount_cents",
        "recurring_months",
        "recurring_decay_pct",
    })

    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = None
    commission_type: Optional[CommissionType] = None
    percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    flat_amount_cents: Optional[int] = Field(None, ge=0)
    applies_to: Optional[PlanAppliesTo] = None
    recurring_enabled: Optional[bool] = None
    recurring_percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    recurring_flat_amount_cents: Optional[int] = Field(None, ge=0)
    recurring_months: Optional[int] = Field(None, ge=1)
    recurring_decay_pct: Optional[int] = Field(None, ge=0, le=100)
    tier_enabled: Optional[bool] = None
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def reject_explicit_nulls(self):
        for name in self.model_fields_set - self.NULLABLE_FIELDS:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class ProductCommissionRuleCreate(BaseCreateSchema):
    """A rule names exactly one product or bundle and exactly one amount."""
    product_id: Optional[str] = Field(None, min_length=1, max_length=100)
    product_bundle_id: Optional[str] = Field(None, min_length=1, max_length=100)
    bonus_type: CommissionType
    percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    flat_amount_cents: Optional[int] = Field(None, ge=0)
    priority: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def check_target_and_amount(self):
        if (self.product_id is None) == (self.product_bundle_id is None):
            raise ValueError("Exactly one of product_id or product_bundle_id is required")
        validate_rate(self.bonus_type, self.percent_bps, self.flat_amount_cents)
        return self


class ProductCommissionRuleResponse(BaseResponseSchema):
    id: UUID
    plan_id: UUID
    product_id: Optional[str] = None
    product_bundle_id: Optional[str] = None
    bonus_type: str
    percent_bps: Optional[int] = None
    flat_amount_cents: Optional[int] = None
    priority: int
    is_active: bool
    created_at: datetime


# ==================== Tier / Promotion Schemas ====================

class CommissionTierCreate(BaseCreateSchema):
    """A tier rate of the plan's type replaces the plan rate; NULL keeps it."""
    name: str = Field(..., min_length=1, max_length=100)
    level: int = Field(..., ge=1)
    min_conversions: int = Field(0, ge=0)
    min_revenue_cents: int = Field(0, ge=0)
    percent_bps: Optional[int] = Field(None, ge=0, le=10000)
    flat_amount_cents: Optional[int] = Field(None, ge=0)
    bonus_cents: int = Field(0, ge=0)


class CommissionTierResponse(BaseResponseSchema):
    id: UUID
    plan_id: UUID
    name: str
    level: int
    min_conversions: int
    min_revenue_cents: int
    percent_bps: Optional[int] = None
    flat_amount_cents: Optional[int] = None
    bonus_cents: int
    created_at: datetime


class CommissionPromotionCreate(BaseCreateSchema):
    name: str = Field(..., min_length=2, max_length=200)
    description: Optional[str] = None
    starts_at: datetime
    ends_at: datetime
    bonus_percent_bps: int = Field(0, ge=0, le=10000)
    bonus_flat_cents: int = Field(0, ge=0)
    min_order_cents: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=1)
    affiliate_ids: Optional[List[UUID]] = None
    ref_codes: Optional[List[str]] = None
    is_active: bool = True

    @field_validator("starts_at", "ends_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("promotion window must include a timezone")
        return v

    @field_validator("ref_codes")
    @classmethod
    def normalize_ref_codes(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        return [code.strip().upper() for code in v]

    @model_validator(mode="after")
    def check_window_and_bonus(self):
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        if not self.bonus_percent_bps and not self.bonus_flat_cents:
            raise ValueError("A promotion needs a percent or flat bonus")
        return self


class CommissionPromotionUpdate(StrictInputSchema):
    is_active: Optional[bool] = None
    ends_at: Optional[datetime] = None
    max_uses: Optional[int] = Field(None, ge=1)

    @field_validator("ends_at")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("ends_at must include a timezone")
        return v

    @model_validator(mode="after")
    def reject_explicit_nulls(self):
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class CommissionPromotionResponse(BaseResponseSchema):
    id: UUID
    plan_id: UUID
    name: str
    description: Optional[str] = None
    starts_at: datetime
    ends_at: datetime
    bonus_percent_bps: int
    bonus_flat_cents: int
    min_order_cents: Optional[int] = None
    max_uses: Optional[int] = None
    uses_count: int
    affiliate_ids: Optional[List[UUID]] = None
    ref_codes: Optional[List[str]] = None
    is_active: bool
    created_at: datetime


class CommissionPlanResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    name: str
    description: Optional[str] = None
    commission_type: str
    percent_bps: Optional[int] = None
    flat_amount_cents: Optional[int] = None
    applies_to: str
    recurring_enabled: bool
    recurring_percent_bps: Optional[int] = None
    recurring_flat_amount_cents: Optional[int] = None
    recurring_months: Optional[int] = None
    recurring_decay_pct: Optional[int] = None
    tier_enabled: bool
    is_default: bool
    is_active: bool
    rules: List[ProductCommissionRuleResponse] = []
    tiers: List[CommissionTierResponse] = []
    promotions: List[CommissionPromotionResponse] = []
    created_at: datetime
    updated_at: datetime


class CommissionPlanListResponse(BaseModel):
    items: List[CommissionPlanResponse]
    total: int


# ==================== Conversion / Refund Events ====================

class ConversionEvent(BaseCreateSchema):
    """
    Normalized successful-payment event from the billing service.

    Billing, subscription and ad-hoc payments all arrive in this shape.
    """
    clinic_id: UUID
    patient_id: UUID
    source_event_id: str = Field(..., min_length=1, max_length=255)
    source_object_id: Optional[str] = Field(None, max_length=255)
    amount_cents: int = Field(..., ge=0)
    occurred_at: datetime
    is_first_payment: bool = False
    is_recurring: bool = False
    recurring_month: Optional[int] = Field(None, ge=1, description="1-based month of the subscription")
    product_sku: Optional[str] = None
    product_category: Optional[str] = None
    product_bundle_id: Optional[str] = None
    visitor_fingerprint: Optional[str] = None
    cookie_id: Optional[str] = None
    ip_address: Optional[str] = None
    patient_email: Optional[str] = Field(None, max_length=255)

    @field_validator("occurred_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("occurred_at must include a timezone")
        return v


class RefundEvent(BaseCreateSchema):
    """Refund or chargeback of an earlier conversion."""
    clinic_id: UUID
    source_event_id: str = Field(..., min_length=1, max_length=255, description="Refund event id")
    original_source_event_id: str = Field(..., min_length=1, max_length=255)
    reason: str = Field("refund", max_length=500)
    occurred_at: Optional[datetime] = None


class CommissionResult(BaseModel):
    """Outcome of processing a conversion. Never raised, always returned."""
    success: bool
    skipped: bool = False
    skip_reason: Optional[str] = None
    commission_event_ids: List[UUID] = []
    commission_amount_cents: int = 0
    fraud_decision: Optional[str] = None
    error: Optional[str] = None


class ReversalResult(BaseModel):
    success: bool
    skipped: bool = False
    skip_reason: Optional[str] = None
    reversed_event_ids: List[UUID] = []
    adjustment_event_ids: List[UUID] = []
    reversed_amount_cents: int = 0


# ==================== Ledger Schemas ====================

class CommissionEventResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    affiliate_id: UUID
    source_event_id: str
    source_object_id: Optional[str] = None
    split_index: int
    ref_code_id: Optional[UUID] = None
    touch_id: Optional[UUID] = None
    commission_plan_id: Optional[UUID] = None
    attribution_model: Optional[str] = None
    attribution_weight_bps: int
    order_amount_cents: int
    commission_amount_cents: int
    status: str
    occurred_at: datetime
    hold_until: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    payout_id: Optional[UUID] = None
    is_risk_flagged: bool
    risk_reasons: Optional[List[str]] = None
    is_adjustment: bool
    adjusts_event_id: Optional[UUID] = None
    created_at: datetime


class CommissionEventListResponse(BaseModel):
    items: List[CommissionEventResponse]
    total: int
    skip: int
    limit: int


class CommissionReverseRequest(BaseModel):
    reason: str = Field(..., min_length=2, max_length=500)


class CommissionStatusTotals(BaseModel):
    count: int = 0
    amount_cents: int = 0


class CommissionStatsResponse(BaseModel):
    """Counts and sums per ledger status."""
    by_status: dict[CommissionEventStatus, CommissionStatusTotals]
    total_count: int
    total_amount_cents: int
