"""Commission approval and competition refresh jobs."""
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_engine.config import settings
from affiliate_engine.jobs.job_runner import locked_job, run_job
from affiliate_engine.services.commission_ledger import CommissionLedgerService
from affiliate_engine.services.competition_service import CompetitionService

logger = logging.getLogger(__name__)

APPROVAL_JOB = "commission_approval"
COMPETITION_JOB = "competition_refresh"


@locked_job(APPROVAL_JOB, lock_key=settings.APPROVAL_LOCK_KEY, counts=("approved", "batches"))
async def _approve_matured_commissions(
    factory: async_sessionmaker,
    now: Optional[datetime] = None,
    time_budget_seconds: Optional[float] = None,
) -> Dict:
    async with factory() as session:
        return await CommissionLedgerService(session).approve_matured(
            now=now,
            time_budget_seconds=time_budget_seconds,
        )


@locked_job(COMPETITION_JOB, lock_key=settings.COMPETITION_LOCK_KEY, counts=("competitions_refreshed", "entries_changed"))
async def _refresh_competitions(factory: async_sessionmaker, now: Optional[datetime] = None) -> Dict:
    async with factory() as session:
        result = await CompetitionService(session).refresh_all(now=now)
        await session.commit()
        return result


async def run_commission_approval(session_factory: Optional[async_sessionmaker] = None, **kwargs) -> Dict:
    return await run_job(APPROVAL_JOB, session_factory=session_factory, **kwargs)


async def run_competition_refresh(session_factory: Optional[async_sessionmaker] = None, **kwargs) -> Dict:
    return await run_job(COMPETITION_JOB, session_factory=session_factory, **kwargs)
