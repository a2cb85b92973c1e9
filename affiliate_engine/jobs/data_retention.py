"""
Touch data retention

Daily job that minimises stored visitor data:
- touches older than RETENTION_ANONYMIZE_AFTER_DAYS lose fingerprint,
  IP hash, cookie and user agent
- touches older than RETENTION_ARCHIVE_AFTER_DAYS also lose landing page,
  referrer, UTM parameters and sub ids

Both passes only touch rows not yet processed, so a re-run changes
nothing. Each batch commits on its own.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_engine.config import settings
from affiliate_engine.jobs.job_runner import locked_job, run_job
from affiliate_engine.models.touch import AffiliateTouch, ANONYMIZED_FINGERPRINT

logger = logging.getLogger(__name__)

JOB_NAME = "data_retention"


async def _run_pass(
    factory: async_sessionmaker,
    where,
    values: Dict,
    batch_size: int,
    max_batches: int,
    deadline: float,
) -> Dict:
    processed = 0
    batches = 0
    timed_out = False

    while batches < max_batches:
        if time.monotonic() >= deadline:
            timed_out = True
            break

        async with factory() as session:
            result = await session.execute(
                select(AffiliateTouch.id)
                .where(*where)
                .order_by(AffiliateTouch.created_at)
                .limit(batch_size)
            )
            ids = [row[0] for row in result.all()]
            if not ids:
                break

            await session.execute(
                update(AffiliateTouch)
                .where(AffiliateTouch.id.in_(ids), *where)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        processed += len(ids)
        batches += 1
        if len(ids) < batch_size:
            break

    return {"processed": processed, "batches": batches, "timed_out": timed_out}


@locked_job(JOB_NAME, lock_key=settings.RETENTION_LOCK_KEY, counts=("anonymized", "archived", "batches"))
async def _data_retention(
    factory: async_sessionmaker,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
    max_batches: Optional[int] = None,
    time_budget_seconds: Optional[float] = None,
) -> Dict:
    now = now or datetime.now(timezone.utc)
    batch_size = batch_size or settings.RETENTION_BATCH_SIZE
    max_batches = max_batches or settings.RETENTION_MAX_BATCHES
    budget = time_budget_seconds if time_budget_seconds is not None else settings.RETENTION_TIME_BUDGET_SECONDS
    deadline = time.monotonic() + budget

    anonymize_cutoff = now - timedelta(days=settings.RETENTION_ANONYMIZE_AFTER_DAYS)
    archive_cutoff = now - timedelta(days=settings.RETENTION_ARCHIVE_AFTER_DAYS)

    anonymized = await _run_pass(
        factory,
        where=[AffiliateTouch.created_at < anonymize_cutoff, AffiliateTouch.anonymized_at.is_(None)],
        values={
            "visitor_fingerprint": ANONYMIZED_FINGERPRINT,
            "ip_address_hash": None,
            "cookie_id": None,
            "user_agent": None,
            "anonymized_at": now,
        },
        batch_size=batch_size,
        max_batches=max_batches,
        deadline=deadline,
    )

    archived = {"processed": 0, "batches": 0, "timed_out": anonymized["timed_out"]}
    if not anonymized["timed_out"]:
        archived = await _run_pass(
            factory,
            where=[AffiliateTouch.created_at < archive_cutoff, AffiliateTouch.archived_at.is_(None)],
            values={
                "landing_page": None,
                "referrer_url": None,
                "utm_source": None,
                "utm_medium": None,
                "utm_campaign": None,
                "utm_content": None,
                "utm_term": None,
                "sub_id1": None,
                "sub_id2": None,
                "sub_id3": None,
                "sub_id4": None,
                "sub_id5": None,
                "archived_at": now,
            },
            batch_size=batch_size,
            max_batches=max_batches,
            deadline=deadline,
        )

    if anonymized["timed_out"] or archived["timed_out"]:
        logger.warning("Data retention stopped at its time budget; the next run continues")

    return {
        "anonymized": anonymized["processed"],
        "archived": archived["processed"],
        "batches": anonymized["batches"] + archived["batches"],
        "timed_out": anonymized["timed_out"] or archived["timed_out"],
    }


async def run_data_retention(session_factory: Optional[async_sessionmaker] = None, **kwargs) -> Dict:
    """
    Returns:
        {success, skipped, anonymized, archived, batches, timed_out, elapsed_ms}
    """
    result = await run_job(JOB_NAME, session_factory=session_factory, **kwargs)
    result.setdefault("timed_out", False)
    return result
