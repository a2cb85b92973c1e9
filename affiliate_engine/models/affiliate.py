"""Affiliate and referral code models."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base
from affiliate_engine.db_types import CentsType, UUIDType


class AffiliateStatus(str, Enum):
    """Affiliate account status."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class PayoutMethodType(str, Enum):
    """How an affiliate is paid."""
    STRIPE_CONNECT = "STRIPE_CONNECT"
    PAYPAL = "PAYPAL"
    BANK_WIRE = "BANK_WIRE"
    CHECK = "CHECK"
    MANUAL = "MANUAL"


class Affiliate(Base):
    """
    Clinic-owned affiliate (referral partner).

    Lifetime counters are maintained by the commission ledger in the same
    transaction as the commission events they summarise. Affiliates are
    never hard-deleted; deactivate with status INACTIVE.
    """
    __tablename__ = "affiliates"
    __table_args__ = (
        UniqueConstraint("clinic_id", "user_id", name="uq_affiliate_clinic_user"),
        Index("ix_affiliates_clinic_status", "clinic_id", "status"),
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
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=False,
        index=True,
        comment="Platform user that logs into the affiliate portal"
    )
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=AffiliateStatus.ACTIVE.value,
        nullable=False
    )

    commission_plan_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_plans.id", ondelete="SET NULL"),
        nullable=True,
        comment="Assigned plan; clinic default plan applies when NULL"
    )

    # Payout destination
    payout_method_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payout_method_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Connected account id, PayPal email, bank reference, ..."
    )

    # Lifetime aggregates
    lifetime_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_revenue_cents: Mapped[int] = mapped_column(CentsType, default=0, nullable=False)
    lifetime_commission_cents: Mapped[int] = mapped_column(CentsType, default=0, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

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

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Affiliate(name='{self.display_name}', status='{self.status}')>"


class AffiliateRefCode(Base):
    """
    Referral code bound to one affiliate.

    Codes are stored upper-case and are unique per clinic, which makes
    lookups case-insensitive.
    """
    __tablename__ = "affiliate_ref_codes"
    __table_args__ = (
        UniqueConstraint("clinic_id", "ref_code", name="uq_ref_code_clinic_code"),
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
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    ref_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<AffiliateRefCode(code='{self.ref_code}', active={self.is_active})>"
