"""Lock-guarded background jobs."""
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from affiliate_engine.config import settings
from affiliate_engine.jobs.commission_jobs import run_commission_approval, run_competition_refresh
from affiliate_engine.jobs.data_retention import run_data_retention
from affiliate_engine.jobs.job_lock import try_advisory_lock
from affiliate_engine.jobs.job_runner import get_registered_jobs, locked_job, run_job
from affiliate_engine.jobs.payout_jobs import run_payout_batch
from affiliate_engine.models.commission import AffiliateCommissionEvent
from affiliate_engine.models.competition import AffiliateCompetition, CompetitionMetric
from affiliate_engine.models.touch import ANONYMIZED_FINGERPRINT, AffiliateTouch
from affiliate_engine.services.payment_rail import ManualRail


async def seed_touches(db, seed, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    code = await seed.ref_code(jane, "JANE2026")
    tracking = {
        "ip_address_hash": "a" * 64,
        "cookie_id": "ck_123",
        "user_agent": "Mozilla/5.0",
        "landing_page": "https://sunrise.example/semaglutide",
        "utm_source": "instagram",
        "sub_id1": "story-42",
    }
    fresh = await seed.touch(code, created_at=days_ago(10), **tracking)
    stale = await seed.touch(code, created_at=days_ago(120), **tracking)
    ancient = await seed.touch(code, created_at=days_ago(800), **tracking)
    await db.commit()
    return fresh.id, stale.id, ancient.id


def test_jobs_are_registered():
    assert {"data_retention", "payout_batch", "commission_approval", "competition_refresh"} <= set(
        get_registered_jobs()
    )


async def test_data_retention_anonymizes_and_archives(db, seed, session_factory, days_ago):
    fresh_id, stale_id, ancient_id = await seed_touches(db, seed, days_ago)

    result = await run_data_retention(session_factory)

    assert result["success"] and not result["skipped"]
    assert result["anonymized"] == 2
    assert result["archived"] == 1
    assert result["timed_out"] is False
    assert "elapsed_ms" in result

    async with session_factory() as session:
        fresh = await session.get(AffiliateTouch, fresh_id)
        stale = await session.get(AffiliateTouch, stale_id)
        ancient = await session.get(AffiliateTouch, ancient_id)

        assert fresh.visitor_fingerprint == "fp-visitor-1"
        assert fresh.anonymized_at is None

        assert stale.visitor_fingerprint == ANONYMIZED_FINGERPRINT
        assert stale.ip_address_hash is None
        assert stale.cookie_id is None
        assert stale.user_agent is None
        assert stale.landing_page == "https://sunrise.example/semaglutide"
        assert stale.archived_at is None

        assert ancient.anonymized_at is not None
        assert ancient.archived_at is not None
        assert ancient.landing_page is None
        assert ancient.utm_source is None
        assert ancient.sub_id1 is None
        # Attribution facts survive
        assert ancient.ref_code == "JANE2026"

    again = await run_data_retention(session_factory)
    assert again["anonymized"] == 0
    assert again["archived"] == 0


async def test_data_retention_batches(db, seed, session_factory, days_ago):
    clinic = await seed.clinic()
    code = await seed.ref_code(await seed.affiliate(clinic), "JANE2026")
    for i in range(5):
        await seed.touch(code, created_at=days_ago(100 + i), fingerprint=f"fp-{i}")
    await db.commit()

    result = await run_data_retention(session_factory, batch_size=2)
    assert result["anonymized"] == 5
    assert result["batches"] == 3

    capped = await run_data_retention(session_factory, batch_size=2, max_batches=1)
    assert capped["anonymized"] == 0


async def test_data_retention_stops_at_time_budget(db, seed, session_factory, days_ago):
    await seed_touches(db, seed, days_ago)

    result = await run_data_retention(session_factory, time_budget_seconds=0)

    assert result["success"]
    assert result["timed_out"] is True
    assert result["anonymized"] == 0


async def test_job_skipped_while_lock_held(db, seed, session_factory, days_ago):
    await seed_touches(db, seed, days_ago)

    async with try_advisory_lock(settings.RETENTION_LOCK_KEY, session_factory) as acquired:
        assert acquired
        result = await run_data_retention(session_factory)

    assert result["success"]
    assert result["skipped"]
    assert result["anonymized"] == 0
    assert result["archived"] == 0

    # Lock is released on exit
    after = await run_data_retention(session_factory)
    assert not after["skipped"]
    assert after["anonymized"] == 2


async def test_second_lock_holder_is_refused(session_factory):
    async with try_advisory_lock(settings.PAYOUT_LOCK_KEY, session_factory) as first:
        async with try_advisory_lock(settings.PAYOUT_LOCK_KEY, session_factory) as second:
            assert first and not second
        async with try_advisory_lock(settings.APPROVAL_LOCK_KEY, session_factory) as other_key:
            assert other_key


async def test_commission_approval_job(db, seed, session_factory, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.commission(jane, 500, status="PENDING", hold_until=days_ago(2))
    await seed.commission(jane, 500, status="PENDING", hold_until=days_ago(-2))
    await db.commit()

    result = await run_commission_approval(session_factory)

    assert result["success"] and not result["skipped"]
    assert result["approved"] == 1

    async with session_factory() as session:
        statuses = sorted(
            (await session.execute(select(AffiliateCommissionEvent.status))).scalars().all()
        )
    assert statuses == ["APPROVED", "PENDING"]


async def test_payout_job(db, seed, session_factory):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.commission(jane, 6000, status="APPROVED")
    await db.commit()

    not_payout_day = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)
    skipped = await run_payout_batch(session_factory, now=not_payout_day, rail=ManualRail())
    assert skipped["payouts_created"] == 0

    forced = await run_payout_batch(session_factory, now=not_payout_day, force=True, rail=ManualRail())
    assert forced["success"]
    assert forced["payouts_created"] == 1
    assert forced["processing"] == 1
    assert forced["total_net_cents"] == 6000


async def test_competition_refresh_job(db, seed, session_factory, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.commission(jane, 300, order_cents=3000, status="PENDING", occurred_at=days_ago(1))
    competition = AffiliateCompetition(
        clinic_id=clinic.id,
        name="October Sprint",
        metric=CompetitionMetric.REVENUE.value,
        start_date=days_ago(5),
        end_date=days_ago(-5),
        status="SCHEDULED",
    )
    db.add(competition)
    await db.commit()
    competition_id = competition.id

    result = await run_competition_refresh(session_factory)

    assert result["success"]
    assert result["competitions_refreshed"] == 1
    assert result["entries_changed"] == 1

    async with session_factory() as session:
        stored = await session.get(AffiliateCompetition, competition_id)
        assert stored.status == "ACTIVE"


@locked_job("always_fails", lock_key=990_001, counts=("processed",))
async def _always_fails(factory, **kwargs):
    raise RuntimeError("provider exploded")


async def test_job_failure_is_reported(session_factory):
    result = await run_job("always_fails", session_factory)

    assert result["success"] is False
    assert result["error"] == "provider exploded"
    assert result["processed"] == 0

    # The lock was released despite the failure
    async with try_advisory_lock(990_001, session_factory) as acquired:
        assert acquired


async def test_scheduled_window_passes_now(db, seed, session_factory):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.commission(jane, 500, status="PENDING", hold_until=datetime.now(timezone.utc) + timedelta(days=3))
    await db.commit()

    later = datetime.now(timezone.utc) + timedelta(days=4)
    result = await run_commission_approval(session_factory, now=later)
    assert result["approved"] == 1
