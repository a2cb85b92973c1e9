"""
Registry and runner for lock-guarded background jobs.

Jobs are registered with @locked_job and executed through run_job(), which
is shared by the scheduler and the cron endpoints:

    @locked_job("commission_approval", lock_key=settings.APPROVAL_LOCK_KEY, counts=("approved",))
    async def approve_matured_commissions(session_factory, **kwargs):
        ...
        return {"approved": 12}

run_job() takes the job's advisory lock, times the run and always returns
a dict with success, skipped and elapsed_ms next to the job's own counts.
A run that loses the lock returns skipped=True with zero counts.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_engine.database import async_session_factory
from affiliate_engine.jobs.job_lock import try_advisory_lock

logger = logging.getLogger(__name__)


@dataclass
class RegisteredJob:
    name: str
    func: Callable[..., Awaitable[Dict[str, Any]]]
    lock_key: int
    counts: Sequence[str]


_jobs: Dict[str, RegisteredJob] = {}


def locked_job(name: str, lock_key: int, counts: Sequence[str] = ()):
    """Register a job under ``name``; ``counts`` are zeroed in skipped results."""
    def decorator(func):
        _jobs[name] = RegisteredJob(name=name, func=func, lock_key=lock_key, counts=tuple(counts))
        logger.debug(f"Registered job: {name}")
        return func
    return decorator


def get_registered_jobs() -> Dict[str, RegisteredJob]:
    return dict(_jobs)


def _empty_result(job: RegisteredJob, skipped: bool) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": True, "skipped": skipped}
    result.update({count: 0 for count in job.counts})
    return result


async def run_job(
    name: str,
    session_factory: Optional[async_sessionmaker] = None,
    **kwargs,
) -> Dict[str, Any]:
    """Run a registered job under its lock. Never raises for job failures."""
    job = _jobs.get(name)
    if job is None:
        raise KeyError(f"Unknown job: {name}")

    factory = session_factory or async_session_factory
    started = time.monotonic()
    logger.info(f"Job '{name}' starting")

    async with try_advisory_lock(job.lock_key, factory) as acquired:
        if not acquired:
            result = _empty_result(job, skipped=True)
            result["elapsed_ms"] = int((time.monotonic() - started) * 1000)
            logger.info(f"Job '{name}' skipped: lock {job.lock_key} is held by another run")
            return result

        result = _empty_result(job, skipped=False)
        try:
            result.update(await job.func(factory, **kwargs))
        except Exception as e:
            logger.error(f"Job '{name}' failed: {e}", exc_info=True)
            result["success"] = False
            result["error"] = str(e)

    result["elapsed_ms"] = int((time.monotonic() - started) * 1000)
    logger.info(f"Job '{name}' finished in {result['elapsed_ms']}ms: {result}")
    return result
