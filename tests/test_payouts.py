"""Payout periods, batching and payment rail outcomes."""
import uuid
from datetime import date, datetime, timezone

import httpx
import pytest
from sqlalchemy import select

from affiliate_engine.config import settings
from affiliate_engine.core.exceptions import InvalidTransitionError, PaymentRailError
from affiliate_engine.models.commission import AffiliateCommissionEvent
from affiliate_engine.models.payout import AffiliatePayout
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.payment_rail import HttpPayoutRail, ManualRail, PaymentRail, RailResult
from affiliate_engine.services.payout_service import (
    PayoutService,
    is_payout_day,
    payout_fee_cents,
    period_bounds,
    period_key_for,
)


class CompletingRail(PaymentRail):
    name = "test-complete"

    async def send(self, payout):
        return RailResult(status="COMPLETED", external_reference=f"tr_{payout.id.hex[:8]}")


class BrokenRail(PaymentRail):
    name = "test-broken"

    async def send(self, payout):
        raise PaymentRailError("Destination account closed", retryable=False)


NOW = datetime(2026, 11, 1, 6, 0, tzinfo=timezone.utc)


class TestPeriods:

    def test_period_keys(self):
        day = date(2026, 10, 18)
        assert period_key_for("MONTHLY", day) == "2026-10"
        assert period_key_for("WEEKLY", day) == "2026-W42"
        assert period_key_for("BIWEEKLY", day) == "2026-BW21"

    def test_payout_days(self):
        assert is_payout_day("MONTHLY", date(2026, 11, 1))
        assert not is_payout_day("MONTHLY", date(2026, 10, 18))
        assert is_payout_day("WEEKLY", date(2026, 10, 19))
        assert not is_payout_day("WEEKLY", date(2026, 10, 18))
        # ISO week 42 is even, week 43 is odd
        assert is_payout_day("BIWEEKLY", date(2026, 10, 12))
        assert not is_payout_day("BIWEEKLY", date(2026, 10, 19))

    def test_monthly_bounds_roll_over_year(self):
        start, end = period_bounds("MONTHLY", date(2026, 12, 15))
        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_weekly_bounds_start_monday(self):
        start, end = period_bounds("WEEKLY", date(2026, 10, 18))
        assert start == datetime(2026, 10, 12, tzinfo=timezone.utc)
        assert end == datetime(2026, 10, 19, tzinfo=timezone.utc)

    def test_fees(self):
        assert payout_fee_cents("BANK_WIRE") == settings.BANK_WIRE_FEE_CENTS
        assert payout_fee_cents("PAYPAL") == 0
        assert payout_fee_cents("STRIPE_CONNECT") == 0


async def seed_balance(db, seed, payout_method_type="PAYPAL", amounts=(3000, 4000)):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic, payout_method_type=payout_method_type)
    for amount in amounts:
        await seed.commission(jane, amount, status="APPROVED")
    await db.commit()
    return clinic.id, jane.id


async def linked_events(session_factory, affiliate_id):
    async with session_factory() as session:
        result = await session.execute(
            select(AffiliateCommissionEvent).where(AffiliateCommissionEvent.affiliate_id == affiliate_id)
        )
        return result.scalars().all()


async def test_payout_gross_equals_linked_events(db, seed, session_factory):
    clinic_id, jane_id = await seed_balance(db, seed, amounts=(3000, 4000, -1000))

    service = PayoutService(db, rail=ManualRail())
    payout = await service.create_payout(jane_id, ProgramSettings(), NOW)

    assert payout.status == "PROCESSING"
    assert payout.period_key == "2026-11"
    assert payout.gross_amount_cents == 6000
    assert payout.fee_cents == 0
    assert payout.net_amount_cents == 6000
    assert payout.event_count == 3

    payout = await service.submit_to_rail(payout)
    assert payout.status == "PROCESSING"

    events = await linked_events(session_factory, jane_id)
    assert {e.payout_id for e in events} == {payout.id}
    assert sum(e.commission_amount_cents for e in events) == payout.gross_amount_cents
    assert {e.status for e in events} == {"APPROVED"}


async def test_bank_wire_fee_is_deducted(db, seed):
    _, jane_id = await seed_balance(db, seed, payout_method_type="BANK_WIRE", amounts=(6000,))

    payout = await PayoutService(db, rail=ManualRail()).create_payout(jane_id, ProgramSettings(), NOW)
    assert payout.gross_amount_cents == 6000
    assert payout.fee_cents == settings.BANK_WIRE_FEE_CENTS
    assert payout.net_amount_cents == 6000 - settings.BANK_WIRE_FEE_CENTS


async def test_balance_below_minimum_is_carried(db, seed, session_factory):
    _, jane_id = await seed_balance(db, seed, amounts=(1000, 2000))

    payout = await PayoutService(db, rail=ManualRail()).create_payout(jane_id, ProgramSettings(), NOW)

    assert payout is None
    events = await linked_events(session_factory, jane_id)
    assert all(e.payout_id is None for e in events)


async def test_completed_rail_marks_events_paid(db, seed, session_factory):
    clinic_id, jane_id = await seed_balance(db, seed)

    stats = await PayoutService(db, rail=CompletingRail()).run_batch(now=NOW, clinic_id=clinic_id)

    assert stats["payouts_created"] == 1
    assert stats["completed"] == 1
    assert stats["total_net_cents"] == 7000

    async with session_factory() as session:
        payout = (await session.execute(select(AffiliatePayout))).scalar_one()
        assert payout.status == "COMPLETED"
        assert payout.external_reference.startswith("tr_")
        assert payout.completed_at is not None

    events = await linked_events(session_factory, jane_id)
    assert {e.status for e in events} == {"PAID"}
    assert all(e.paid_at is not None for e in events)


async def test_failed_rail_releases_events(db, seed, session_factory):
    clinic_id, jane_id = await seed_balance(db, seed)

    service = PayoutService(db, rail=BrokenRail())
    payout = await service.create_payout(jane_id, ProgramSettings(), NOW)
    payout = await service.submit_to_rail(payout)

    assert payout.status == "FAILED"
    assert payout.failure_reason == "Destination account closed"

    events = await linked_events(session_factory, jane_id)
    assert all(e.payout_id is None for e in events)
    assert {e.status for e in events} == {"APPROVED"}

    # One payout per affiliate and period, even after a failure
    async with session_factory() as session:
        again = await PayoutService(session, rail=ManualRail()).create_payout(jane_id, ProgramSettings(), NOW)
    assert again is None


async def test_batch_respects_payout_day(db, seed):
    clinic_id, _ = await seed_balance(db, seed)
    not_payout_day = datetime(2026, 10, 18, 6, 0, tzinfo=timezone.utc)

    skipped = await PayoutService(db, rail=ManualRail()).run_batch(now=not_payout_day, clinic_id=clinic_id)
    assert skipped["clinics_skipped"] == 1
    assert skipped["payouts_created"] == 0

    forced = await PayoutService(db, rail=ManualRail()).run_batch(now=not_payout_day, clinic_id=clinic_id, force=True)
    assert forced["payouts_created"] == 1
    assert forced["processing"] == 1


async def test_affiliate_without_payout_method_is_skipped(db, seed):
    clinic_id, _ = await seed_balance(db, seed, payout_method_type=None)

    stats = await PayoutService(db, rail=ManualRail()).run_batch(now=NOW, clinic_id=clinic_id)
    assert stats["clinics_processed"] == 1
    assert stats["payouts_created"] == 0


async def test_manual_completion_and_terminal_state(db, seed, session_factory):
    clinic_id, jane_id = await seed_balance(db, seed)
    payout = await PayoutService(db, rail=ManualRail()).create_payout(jane_id, ProgramSettings(), NOW)
    payout_id = payout.id

    async with session_factory() as session:
        service = PayoutService(session, rail=ManualRail())
        completed = await service.complete_payout(clinic_id, payout_id, external_reference="wire-8841")
        await session.commit()
        assert completed.status == "COMPLETED"
        assert completed.external_reference == "wire-8841"

        with pytest.raises(InvalidTransitionError):
            await service.fail_payout(clinic_id, payout_id, "too late")

    events = await linked_events(session_factory, jane_id)
    assert {e.status for e in events} == {"PAID"}


class TestHttpPayoutRail:

    @staticmethod
    def payout(**overrides):
        data = {
            "id": uuid.uuid4(),
            "affiliate_id": uuid.uuid4(),
            "net_amount_cents": 7000,
            "currency": "USD",
            "method_type": "PAYPAL",
            "method_reference": "jane@example.com",
            "period_key": "2026-11",
        }
        data.update(overrides)
        return AffiliatePayout(**data)

    async def test_completed_transfer(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["idempotency_key"] = request.headers["Idempotency-Key"]
            seen["authorization"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"id": "tr_991", "status": "paid"})

        payout = self.payout()
        rail = HttpPayoutRail("https://payouts.test", api_key="sk_test", transport=httpx.MockTransport(handler))
        result = await rail.send(payout)

        assert result.status == "COMPLETED"
        assert result.external_reference == "tr_991"
        assert seen == {"idempotency_key": str(payout.id), "authorization": "Bearer sk_test"}

    async def test_pending_transfer_stays_processing(self):
        rail = HttpPayoutRail(
            "https://payouts.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(202, json={"id": "tr_1", "status": "pending"})),
        )
        assert (await rail.send(self.payout())).status == "PROCESSING"

    async def test_rejected_transfer_raises(self):
        rail = HttpPayoutRail(
            "https://payouts.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(422, json={"error": "invalid account"})),
        )
        with pytest.raises(PaymentRailError) as exc_info:
            await rail.send(self.payout())
        assert exc_info.value.error_code == "RAIL_REJECTED"
        assert not exc_info.value.retryable

    async def test_unconfigured_rail_raises(self):
        with pytest.raises(PaymentRailError):
            await HttpPayoutRail("", transport=httpx.MockTransport(lambda request: httpx.Response(200))).send(
                self.payout()
            )
