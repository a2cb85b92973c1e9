"""
APScheduler configuration

Every job runs through job_runner.run_job(), so a tick on one instance
and a cron call or a tick on another instance never overlap: the loser of
the advisory lock returns skipped.

Schedule (UTC):
- commission approval: hourly
- competition refresh: every 15 minutes
- payout batch: daily 02:00 (clinics not on their payout day are skipped)
- data retention: daily 03:00
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from affiliate_engine.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_scheduled_job(job_name: str):
    """Wrapper called by APScheduler; delegates to the locked job runner."""
    from affiliate_engine.jobs.job_runner import run_job

    try:
        result = await run_job(job_name)
        if result.get("skipped"):
            logger.info(f"Job '{job_name}' skipped on this instance")
    except Exception as e:
        logger.error(f"Job '{job_name}' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        # Importing the job modules registers them with the runner
        from affiliate_engine.jobs import commission_jobs, data_retention, payout_jobs  # noqa: F401

        scheduler.add_job(
            run_scheduled_job,
            'interval',
            hours=1,
            args=[commission_jobs.APPROVAL_JOB],
            id='commission_approval',
            name='Approve Matured Commissions',
            replace_existing=True,
        )

        scheduler.add_job(
            run_scheduled_job,
            'interval',
            minutes=15,
            args=[commission_jobs.COMPETITION_JOB],
            id='competition_refresh',
            name='Refresh Competition Standings',
            replace_existing=True,
        )

        scheduler.add_job(
            run_scheduled_job,
            'cron',
            hour=2,
            minute=0,
            args=[payout_jobs.JOB_NAME],
            id='payout_batch',
            name='Affiliate Payout Batch',
            replace_existing=True,
        )

        scheduler.add_job(
            run_scheduled_job,
            'cron',
            hour=3,
            minute=0,
            args=[data_retention.JOB_NAME],
            id='data_retention',
            name='Touch Data Retention',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        # Log all scheduled jobs
        jobs = scheduler.get_jobs()
        for job in jobs:
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
