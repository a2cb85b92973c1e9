"""Affiliate competitions and their ranked entries."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base
from affiliate_engine.db_types import CentsType, UUIDType


class CompetitionMetric(str, Enum):
    CLICKS = "CLICKS"
    CONVERSIONS = "CONVERSIONS"
    REVENUE = "REVENUE"
    CONVERSION_RATE = "CONVERSION_RATE"     # stored as basis points
    NEW_CUSTOMERS = "NEW_CUSTOMERS"


class CompetitionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AffiliateCompetition(Base):
    """
    Time-boxed contest between a clinic's affiliates.

    status is derived from start/end dates (CANCELLED is explicit) and
    persisted so list queries can filter on it.
    """
    __tablename__ = "affiliate_competitions"
    __table_args__ = (
        Index("ix_competitions_clinic_status", "clinic_id", "status"),
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
    metric: Mapped[str] = mapped_column(String(50), nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default=CompetitionStatus.SCHEDULED.value,
        nullable=False
    )
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    prize_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prize_value_cents: Mapped[Optional[int]] = mapped_column(CentsType, nullable=True)
    auto_enroll_all: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

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
        return f"<AffiliateCompetition(name='{self.name}', metric='{self.metric}', status='{self.status}')>"


class AffiliateCompetitionEntry(Base):
    """An affiliate's standing in a competition."""
    __tablename__ = "affiliate_competition_entries"
    __table_args__ = (
        UniqueConstraint("competition_id", "affiliate_id", name="uq_competition_entry"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    competition_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_competitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    current_value: Mapped[int] = mapped_column(CentsType, default=0, nullable=False)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

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
        return f"<AffiliateCompetitionEntry(rank={self.rank}, value={self.current_value})>"
