from datetime import datetime, timezone

from sqlalchemy import BigInteger, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from affiliate_engine.database import Base


class JobLease(Base):
    """
    Lease row backing the job lock on databases without advisory locks.

    Primary key on lock_key gives one holder per key; expired leases are
    reclaimed by the next acquirer.
    """
    __tablename__ = "job_leases"

    lock_key: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<JobLease(key={self.lock_key}, holder='{self.holder}')>"
