"""Read-only projection of the platform's clinic (tenant) records."""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base
from affiliate_engine.db_types import JSONType, UUIDType


class Clinic(Base):
    """
    Clinic tenant as seen by the affiliate engine.

    Owned by the tenancy service; the engine only reads name, domain,
    active flag and branding for ref-code resolution.
    """
    __tablename__ = "clinics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="Public hostname used to resolve clinic context"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    branding: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Logo URL, primary colour, etc."
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Clinic(name='{self.name}', active={self.is_active})>"
