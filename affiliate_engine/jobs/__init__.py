"""
Background Jobs Module

Handles scheduled tasks for:
- Commission approval after the hold period
- Competition standings refresh
- Payout batches
- Touch data retention
"""

from affiliate_engine.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from affiliate_engine.jobs.commission_jobs import run_commission_approval, run_competition_refresh
from affiliate_engine.jobs.data_retention import run_data_retention
from affiliate_engine.jobs.payout_jobs import run_payout_batch

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "run_commission_approval",
    "run_competition_refresh",
    "run_data_retention",
    "run_payout_batch",
]
