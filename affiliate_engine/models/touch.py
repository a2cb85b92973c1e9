"""Affiliate touch (click / impression / postback) records."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base
from affiliate_engine.db_types import UUIDType


# Written over visitor_fingerprint by the retention job
ANONYMIZED_FINGERPRINT = "ANONYMIZED"


class TouchType(str, Enum):
    """How the visitor interacted with the affiliate link."""
    CLICK = "CLICK"
    IMPRESSION = "IMPRESSION"
    POSTBACK = "POSTBACK"


class AffiliateTouch(Base):
    """
    One recorded visitor interaction with an affiliate link.

    A touch never establishes attribution by itself; the attribution
    resolver selects touches when a conversion arrives and stamps
    converted_at. PII columns (fingerprint, IP hash, cookie, user agent)
    are scrubbed by the data retention job after 90 days and marketing
    columns are cleared after two years.
    """
    __tablename__ = "affiliate_touches"
    __table_args__ = (
        Index("ix_touches_clinic_fingerprint_created", "clinic_id", "visitor_fingerprint", "created_at"),
        Index("ix_touches_clinic_cookie_created", "clinic_id", "cookie_id", "created_at"),
        Index("ix_touches_affiliate_created", "affiliate_id", "created_at"),
        Index("ix_touches_created_anonymized", "created_at", "anonymized_at"),
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
        nullable=False
    )
    ref_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("affiliate_ref_codes.id", ondelete="SET NULL"),
        nullable=True
    )
    ref_code: Mapped[str] = mapped_column(String(50), nullable=False)
    touch_type: Mapped[str] = mapped_column(
        String(50),
        default=TouchType.CLICK.value,
        nullable=False
    )

    # Visitor identity (PII, anonymized after 90 days)
    visitor_fingerprint: Mapped[str] = mapped_column(String(255), nullable=False)
    cookie_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Salted SHA-256 of the visitor IP"
    )
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Marketing context (archived after 2 years)
    landing_page: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    referrer_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    utm_source: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_content: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_term: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_id1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_id2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_id3: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_id4: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_id5: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Conversion (set once, never cleared)
    converted_patient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=True,
        index=True
    )
    converted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retention markers
    anonymized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<AffiliateTouch(ref_code='{self.ref_code}', type='{self.touch_type}')>"
