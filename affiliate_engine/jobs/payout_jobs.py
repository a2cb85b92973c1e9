"""Scheduled payout batch."""
import logging
import uuid
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_engine.config import settings
from affiliate_engine.jobs.job_runner import locked_job, run_job
from affiliate_engine.services.payment_rail import PaymentRail
from affiliate_engine.services.payout_service import PayoutService

logger = logging.getLogger(__name__)

JOB_NAME = "payout_batch"


@locked_job(
    JOB_NAME,
    lock_key=settings.PAYOUT_LOCK_KEY,
    counts=("payouts_created", "completed", "processing", "failed", "total_net_cents"),
)
async def _payout_batch(
    factory: async_sessionmaker,
    now: Optional[datetime] = None,
    force: bool = False,
    clinic_id: Optional[uuid.UUID] = None,
    rail: Optional[PaymentRail] = None,
) -> Dict:
    async with factory() as session:
        return await PayoutService(session, rail=rail).run_batch(
            now=now,
            force=force,
            clinic_id=clinic_id,
            time_budget_seconds=settings.PAYOUT_TIME_BUDGET_SECONDS,
        )


async def run_payout_batch(session_factory: Optional[async_sessionmaker] = None, **kwargs) -> Dict:
    return await run_job(JOB_NAME, session_factory=session_factory, **kwargs)
