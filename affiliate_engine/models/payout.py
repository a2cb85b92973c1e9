"""Affiliate payout batches."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base
from affiliate_engine.db_types import CentsType, UUIDType


class PayoutStatus(str, Enum):
    """Payout batch status."""
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PayoutFrequency(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class AffiliatePayout(Base):
    """
    Per-affiliate payout batch.

    gross_amount_cents always equals the sum of the commission events
    linked through payout_id. One payout per affiliate per period.
    """
    __tablename__ = "affiliate_payouts"
    __table_args__ = (
        UniqueConstraint("affiliate_id", "period_key", name="uq_payout_affiliate_period"),
        Index("ix_payouts_clinic_status", "clinic_id", "status"),
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
        nullable=False,
        index=True
    )

    period_key: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="e.g. 2026-10, 2026-W42, 2026-BW21"
    )
    period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    gross_amount_cents: Mapped[int] = mapped_column(CentsType, nullable=False)
    fee_cents: Mapped[int] = mapped_column(CentsType, default=0, nullable=False)
    net_amount_cents: Mapped[int] = mapped_column(CentsType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    method_type: Mapped[str] = mapped_column(String(50), nullable=False)
    method_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=PayoutStatus.PROCESSING.value,
        nullable=False
    )
    external_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Transfer id returned by the payment rail"
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

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
        return f"<AffiliatePayout(period='{self.period_key}', net={self.net_amount_cents}, status='{self.status}')>"
