"""
Non-blocking mutual exclusion for scheduled jobs.

PostgreSQL uses session-level advisory locks on one pinned connection.
Other databases fall back to a lease row in job_leases. Either way the
lock is released on every exit path and at most one caller wins.
"""
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from sqlalchemy import delete, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_engine.config import settings
from affiliate_engine.database import async_session_factory
from affiliate_engine.models.job_lease import JobLease

logger = logging.getLogger(__name__)


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@asynccontextmanager
async def _pg_advisory_lock(engine, key: int) -> AsyncIterator[bool]:
    async with engine.connect() as conn:
        conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
        acquired = bool((await conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})).scalar())
        try:
            yield acquired
        finally:
            if acquired:
                await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})


@asynccontextmanager
async def _lease_lock(factory: async_sessionmaker, key: int, ttl_seconds: int) -> AsyncIterator[bool]:
    holder = _holder_id()
    now = datetime.now(timezone.utc)

    async with factory() as session:
        await session.execute(delete(JobLease).where(JobLease.lock_key == key, JobLease.expires_at < now))
        session.add(JobLease(
            lock_key=key,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        ))
        try:
            await session.commit()
            acquired = True
        except IntegrityError:
            await session.rollback()
            acquired = False

    try:
        yield acquired
    finally:
        if acquired:
            async with factory() as session:
                await session.execute(delete(JobLease).where(JobLease.lock_key == key, JobLease.holder == holder))
                await session.commit()


@asynccontextmanager
async def try_advisory_lock(
    key: int,
    session_factory: Optional[async_sessionmaker] = None,
    ttl_seconds: Optional[int] = None,
) -> AsyncIterator[bool]:
    """
    Try to take the lock for ``key`` without waiting.

    Usage:
        async with try_advisory_lock(settings.RETENTION_LOCK_KEY) as acquired:
            if not acquired:
                return {"skipped": True}
            ...
    """
    factory = session_factory or async_session_factory
    engine = factory.kw.get("bind")

    if engine is not None and engine.dialect.name == "postgresql":
        async with _pg_advisory_lock(engine, key) as acquired:
            yield acquired
    else:
        async with _lease_lock(factory, key, ttl_seconds or settings.JOB_LEASE_TTL_SECONDS) as acquired:
            yield acquired
