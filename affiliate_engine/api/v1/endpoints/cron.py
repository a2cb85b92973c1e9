"""
Cron trigger endpoints.

Each call runs the same lock-guarded job the in-process scheduler runs;
a call that loses the lock returns skipped=true with zero counts.
"""
from typing import Annotated, Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_engine.api.deps import get_job_session_factory, require_cron_secret
from affiliate_engine.jobs.commission_jobs import run_commission_approval, run_competition_refresh
from affiliate_engine.jobs.data_retention import run_data_retention
from affiliate_engine.jobs.payout_jobs import run_payout_batch

router = APIRouter(dependencies=[Depends(require_cron_secret)])

SessionFactory = Annotated[async_sessionmaker, Depends(get_job_session_factory)]


@router.post("/data-retention")
async def trigger_data_retention(session_factory: SessionFactory) -> Dict[str, Any]:
    return await run_data_retention(session_factory=session_factory)


@router.post("/payouts")
async def trigger_payouts(
    session_factory: SessionFactory,
    force: bool = False,
    clinic_id: Optional[UUID] = None,
) -> Dict[str, Any]:
    """Run the payout batch. ``force`` ignores the clinics' payout days."""
    return await run_payout_batch(session_factory=session_factory, force=force, clinic_id=clinic_id)


@router.post("/commission-approval")
async def trigger_commission_approval(session_factory: SessionFactory) -> Dict[str, Any]:
    return await run_commission_approval(session_factory=session_factory)


@router.post("/competitions")
async def trigger_competition_refresh(session_factory: SessionFactory) -> Dict[str, Any]:
    return await run_competition_refresh(session_factory=session_factory)
