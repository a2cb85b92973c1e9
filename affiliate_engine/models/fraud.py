"""Fraud alert review queue."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base
from affiliate_engine.db_types import JSONType, UUIDType


class FraudAlertType(str, Enum):
    VELOCITY_SPIKE = "VELOCITY_SPIKE"           # daily conversion cap reached
    DUPLICATE_IP = "DUPLICATE_IP"               # per-IP conversion cap reached
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"   # proxy / VPN / Tor traffic
    SELF_REFERRAL = "SELF_REFERRAL"             # affiliate converting their own referral
    REFUND_ABUSE = "REFUND_ABUSE"               # refund rate above the program limit


class FraudAlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FraudAlertStatus(str, Enum):
    OPEN = "OPEN"
    CONFIRMED_FRAUD = "CONFIRMED_FRAUD"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    DISMISSED = "DISMISSED"


class AffiliateFraudAlert(Base):
    """Fraud signal raised while evaluating a conversion."""
    __tablename__ = "affiliate_fraud_alerts"
    __table_args__ = (
        Index("ix_fraud_alerts_clinic_status", "clinic_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clinics.id", ondelete="RESTRICT"),
        nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    commission_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_commission_events.id", ondelete="SET NULL"),
        nullable=True
    )
    touch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_touches.id", ondelete="SET NULL"),
        nullable=True
    )
    source_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False, comment="HOLD or BLOCK")
    risk_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default=FraudAlertStatus.OPEN.value,
        nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<AffiliateFraudAlert(type='{self.alert_type}', status='{self.status}')>"
