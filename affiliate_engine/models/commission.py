"""Commission plan, product rule and commission ledger models.

Supports:
- Percent (basis points) and flat-amount plans
- Product / bundle overrides
- Recurring-payment rates, recurring window and decay
- Performance tiers and time-boxed promotions
- Hold periods, clawback adjustments and LINEAR attribution splits
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy import UniqueConstraint, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from affiliate_engine.database import Base
from affiliate_engine.db_types import CentsType, JSONType, UUIDType


class CommissionType(str, Enum):
    """Rate type for plans and product rules."""
    PERCENT = "PERCENT"     # percent_bps of the order amount
    FLAT = "FLAT"           # flat_amount_cents per conversion


class PlanAppliesTo(str, Enum):
    """Which payments a plan pays commission on."""
    ALL_PAYMENTS = "ALL_PAYMENTS"
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"


class CommissionEventStatus(str, Enum):
    """Commission ledger status."""
    PENDING = "PENDING"         # Inside hold period or under review
    APPROVED = "APPROVED"       # Matured, eligible for payout
    PAID = "PAID"               # Settled by a completed payout
    REVERSED = "REVERSED"       # Clawed back before settlement


class AttributionModel(str, Enum):
    """Attribution model used to credit touches."""
    FIRST_CLICK = "FIRST_CLICK"
    LAST_CLICK = "LAST_CLICK"
    LINEAR = "LINEAR"


class CommissionPlan(Base):
    """
    Clinic commission plan.

    The plan rate applies unless a product or bundle rule of the plan
    matches the converting product.
    """
    __tablename__ = "affiliate_commission_plans"
    __table_args__ = (
        Index("ix_commission_plans_clinic_default", "clinic_id", "is_default"),
        CheckConstraint("percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)", name="ck_plan_percent_bps"),
        CheckConstraint("flat_amount_cents IS NULL OR flat_amount_cents >= 0", name="ck_plan_flat_amount"),
        CheckConstraint(
            "recurring_decay_pct IS NULL OR (recurring_decay_pct >= 0 AND recurring_decay_pct <= 100)",
            name="ck_plan_recurring_decay"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    commission_type: Mapped[str] = mapped_column(
        String(50),
        default=CommissionType.PERCENT.value,
        nullable=False
    )
    percent_bps: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Basis points, 1000 = 10%"
    )
    flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Applicability
    applies_to: Mapped[str] = mapped_column(
        String(50),
        default=PlanAppliesTo.ALL_PAYMENTS.value,
        nullable=False
    )
    recurring_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    recurring_percent_bps: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Overrides percent_bps for recurring payments"
    )
    recurring_flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    recurring_months: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Recurring payments after this month earn nothing"
    )
    recurring_decay_pct: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Percent of the commission paid on recurring payments after month 12"
    )

    # Performance tiers
    tier_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    rules: Mapped[list["ProductCommissionRule"]] = relationship(
        "ProductCommissionRule",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ProductCommissionRule.priority.desc()",
    )
    tiers: Mapped[list["CommissionTier"]] = relationship(
        "CommissionTier",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CommissionTier.level",
    )
    promotions: Mapped[list["CommissionPromotion"]] = relationship(
        "CommissionPromotion",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CommissionPromotion.starts_at",
    )

    def __repr__(self) -> str:
        return f"<CommissionPlan(name='{self.name}', type='{self.commission_type}')>"


class ProductCommissionRule(Base):
    """
    Per-product or per-bundle override of a plan's rate.

    Exactly one of product_id / product_bundle_id is set, and the amount
    column matching bonus_type is set.
    """
    __tablename__ = "affiliate_product_commission_rules"
    __table_args__ = (
        CheckConstraint(
            "(product_id IS NULL) <> (product_bundle_id IS NULL)",
            name="ck_rule_product_or_bundle"
        ),
        CheckConstraint("percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)", name="ck_rule_percent_bps"),
        CheckConstraint("flat_amount_cents IS NULL OR flat_amount_cents >= 0", name="ck_rule_flat_amount"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Product SKU as sent by the billing service"
    )
    product_bundle_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    bonus_type: Mapped[str] = mapped_column(String(50), nullable=False)
    percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    plan: Mapped["CommissionPlan"] = relationship("CommissionPlan", back_populates="rules")

    def __repr__(self) -> str:
        target = self.product_id or f"bundle:{self.product_bundle_id}"
        return f"<ProductCommissionRule(target='{target}', type='{self.bonus_type}')>"


class CommissionTier(Base):
    """
    Performance tier of a plan.

    An affiliate sits in the highest level whose conversion and revenue
    minimums are both met by their lifetime totals. A tier rate replaces
    the plan rate; bonus_cents is added on top of every conversion.
    """
    __tablename__ = "affiliate_commission_tiers"
    __table_args__ = (
        UniqueConstraint("plan_id", "level", name="uq_commission_tier_level"),
        UniqueConstraint("plan_id", "name", name="uq_commission_tier_name"),
        CheckConstraint("percent_bps IS NULL OR (percent_bps >= 0 AND percent_bps <= 10000)", name="ck_tier_percent_bps"),
        CheckConstraint("flat_amount_cents IS NULL OR flat_amount_cents >= 0", name="ck_tier_flat_amount"),
        CheckConstraint("bonus_cents >= 0", name="ck_tier_bonus"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)

    min_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    min_revenue_cents: Mapped[int] = mapped_column(CentsType, default=0, nullable=False)

    # Rate of the plan's commission_type; NULL keeps the plan rate
    percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    flat_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bonus_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    plan: Mapped["CommissionPlan"] = relationship("CommissionPlan", back_populates="tiers")

    def __repr__(self) -> str:
        return f"<CommissionTier(name='{self.name}', level={self.level})>"


class CommissionPromotion(Base):
    """
    Time-boxed commission bonus on a plan.

    Optionally limited to a set of affiliates or ref codes, to orders of a
    minimum amount, and to a maximum number of uses.
    """
    __tablename__ = "affiliate_promotions"
    __table_args__ = (
        Index("ix_promotions_plan_window", "plan_id", "starts_at", "ends_at"),
        CheckConstraint("ends_at > starts_at", name="ck_promotion_window"),
        CheckConstraint("bonus_percent_bps >= 0 AND bonus_percent_bps <= 10000", name="ck_promotion_percent_bps"),
        CheckConstraint("bonus_flat_cents >= 0", name="ck_promotion_flat"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    bonus_percent_bps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bonus_flat_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    min_order_cents: Mapped[Optional[int]] = mapped_column(CentsType, nullable=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    uses_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Targeting; NULL means everyone
    affiliate_ids: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    ref_codes: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    plan: Mapped["CommissionPlan"] = relationship("CommissionPlan", back_populates="promotions")

    def __repr__(self) -> str:
        return f"<CommissionPromotion(name='{self.name}')>"


class AffiliateCommissionEvent(Base):
    """
    Commission ledger entry.

    One conversion produces one event, or one event per credited touch
    under LINEAR attribution (split_index 0..n-1). The commission amount
    is immutable once written; corrections after settlement are separate
    negative adjustment rows pointing at the event they correct.
    """
    __tablename__ = "affiliate_commission_events"
    __table_args__ = (
        UniqueConstraint("clinic_id", "source_event_id", "split_index", name="uq_commission_event_source"),
        Index("ix_commission_events_status_hold", "status", "hold_until"),
        Index("ix_commission_events_affiliate_status", "affiliate_id", "status"),
        Index("ix_commission_events_clinic_occurred", "clinic_id", "occurred_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliates.id", ondelete="RESTRICT"),
        nullable=False
    )

    # Source linkage (idempotency key is clinic_id + source_event_id + split_index)
    source_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_object_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Payment / invoice id in the billing service"
    )
    split_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    ref_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_ref_codes.id", ondelete="SET NULL"),
        nullable=True
    )
    touch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_touches.id", ondelete="SET NULL"),
        nullable=True
    )
    commission_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_plans.id", ondelete="SET NULL"),
        nullable=True
    )
    product_rule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_product_commission_rules.id", ondelete="SET NULL"),
        nullable=True
    )

    # Attribution
    attribution_model: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    attribution_weight_bps: Mapped[int] = mapped_column(Integer, default=10000, nullable=False)

    # Money (integer cents)
    order_amount_cents: Mapped[int] = mapped_column(CentsType, nullable=False)
    commission_amount_cents: Mapped[int] = mapped_column(CentsType, nullable=False)
    commission_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    percent_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    is_first_payment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(50),
        default=CommissionEventStatus.PENDING.value,
        nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hold_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reversed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reversal_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_payouts.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Risk review
    is_risk_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    risk_reasons: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Clawback adjustments
    is_adjustment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    adjusts_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_events.id", ondelete="SET NULL"),
        nullable=True
    )

    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<AffiliateCommissionEvent(source='{self.source_event_id}', "
            f"amount={self.commission_amount_cents}, status='{self.status}')>"
        )
