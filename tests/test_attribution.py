"""Touch selection and end-to-end attribution of conversions."""
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from affiliate_engine.models.affiliate import Affiliate
from affiliate_engine.models.commission import AffiliateCommissionEvent, AttributionModel
from affiliate_engine.models.touch import AffiliateTouch, TouchType
from affiliate_engine.schemas.commission import ConversionEvent
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.attribution_service import (
    AttributionService,
    model_for_conversion,
    select_touches,
)
from affiliate_engine.services.commission_service import CommissionService


def conversion(clinic_id, patient_id=None, **overrides) -> ConversionEvent:
    data = {
        "clinic_id": clinic_id,
        "patient_id": patient_id or uuid.uuid4(),
        "source_event_id": f"pi_{uuid.uuid4().hex[:10]}",
        "amount_cents": 5000,
        "occurred_at": datetime.now(timezone.utc),
        "is_first_payment": True,
        "visitor_fingerprint": "fp-visitor-1",
    }
    data.update(overrides)
    return ConversionEvent(**data)


class TestSelectTouches:

    touches = [SimpleNamespace(name="first"), SimpleNamespace(name="middle"), SimpleNamespace(name="last")]

    def test_first_click(self):
        assert [t.name for t in select_touches(self.touches, AttributionModel.FIRST_CLICK)] == ["first"]

    def test_last_click(self):
        assert [t.name for t in select_touches(self.touches, AttributionModel.LAST_CLICK)] == ["last"]

    def test_linear_credits_every_touch(self):
        assert [t.name for t in select_touches(self.touches, AttributionModel.LINEAR)] == ["first", "middle", "last"]

    def test_no_candidates(self):
        assert select_touches([], AttributionModel.LINEAR) == []

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            select_touches(self.touches, "TIME_DECAY")


def test_model_depends_on_first_payment():
    program = ProgramSettings()
    assert model_for_conversion(program, is_first_payment=True) == "FIRST_CLICK"
    assert model_for_conversion(program, is_first_payment=False) == "LAST_CLICK"


async def test_first_click_credits_earliest_affiliate(db, seed, session_factory, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic, "Jane Doe")
    john = await seed.affiliate(clinic, "John Roe")
    jane_code = await seed.ref_code(jane, "JANE2026")
    john_code = await seed.ref_code(john, "JOHN2026")
    jane_touch = await seed.touch(jane_code, created_at=days_ago(10))
    await seed.touch(john_code, created_at=days_ago(2))
    await db.commit()
    jane_id, jane_touch_id, clinic_id = jane.id, jane_touch.id, clinic.id

    event = conversion(clinic_id)
    result = await CommissionService(db).process_conversion(event)

    assert result.success and not result.skipped
    assert result.commission_amount_cents == 500

    async with session_factory() as session:
        events = (await session.execute(select(AffiliateCommissionEvent))).scalars().all()
        assert len(events) == 1
        assert events[0].affiliate_id == jane_id
        assert events[0].status == "PENDING"
        assert events[0].attribution_model == "FIRST_CLICK"
        assert events[0].order_amount_cents == 5000

        touch = await session.get(AffiliateTouch, jane_touch_id)
        assert touch.converted_patient_id == event.patient_id
        assert touch.converted_at is not None

        affiliate = await session.get(Affiliate, jane_id)
        assert affiliate.lifetime_conversions == 1
        assert affiliate.lifetime_revenue_cents == 5000
        assert affiliate.lifetime_commission_cents == 500


async def test_returning_patient_uses_last_click(db, seed, session_factory, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic, "Jane Doe")
    john = await seed.affiliate(clinic, "John Roe")
    await seed.touch(await seed.ref_code(jane, "JANE2026"), created_at=days_ago(10))
    await seed.touch(await seed.ref_code(john, "JOHN2026"), created_at=days_ago(2))
    await db.commit()
    john_id, clinic_id = john.id, clinic.id

    result = await CommissionService(db).process_conversion(conversion(clinic_id, is_first_payment=False))
    assert result.success and not result.skipped

    async with session_factory() as session:
        event = (await session.execute(select(AffiliateCommissionEvent))).scalar_one()
        assert event.affiliate_id == john_id
        assert event.attribution_model == "LAST_CLICK"


async def test_touch_outside_window_is_ignored(db, seed, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.touch(await seed.ref_code(jane, "JANE2026"), created_at=days_ago(45))
    await db.commit()

    result = await CommissionService(db).process_conversion(conversion(clinic.id))

    assert result.success
    assert result.skipped
    assert result.skip_reason == "No affiliate attribution"


async def test_touch_after_conversion_is_ignored(db, seed, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.touch(await seed.ref_code(jane, "JANE2026"), created_at=days_ago(1))
    await db.commit()

    result = await CommissionService(db).process_conversion(conversion(clinic.id, occurred_at=days_ago(3)))
    assert result.skip_reason == "No affiliate attribution"


async def test_touch_converted_by_another_patient_is_not_reused(db, seed, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.touch(
        await seed.ref_code(jane, "JANE2026"),
        created_at=days_ago(5),
        converted_patient_id=uuid.uuid4(),
        converted_at=days_ago(4),
    )
    await db.commit()

    result = await CommissionService(db).process_conversion(conversion(clinic.id))
    assert result.skip_reason == "No affiliate attribution"


async def test_linear_splits_commission_across_touches(db, seed, session_factory, days_ago):
    clinic = await seed.clinic()
    await seed.program_settings(clinic, new_patient_model="LINEAR")
    jane = await seed.affiliate(clinic, "Jane Doe")
    john = await seed.affiliate(clinic, "John Roe")
    await seed.touch(await seed.ref_code(jane, "JANE2026"), created_at=days_ago(6))
    await seed.touch(await seed.ref_code(john, "JOHN2026"), created_at=days_ago(3))
    await db.commit()
    jane_id, john_id, clinic_id = jane.id, john.id, clinic.id

    # 10% of 3333 = 333.3 -> 333
    result = await CommissionService(db).process_conversion(conversion(clinic_id, amount_cents=3333))
    assert result.commission_amount_cents == 333
    assert len(result.commission_event_ids) == 2

    async with session_factory() as session:
        events = (
            await session.execute(
                select(AffiliateCommissionEvent).order_by(AffiliateCommissionEvent.split_index)
            )
        ).scalars().all()
        assert [e.affiliate_id for e in events] == [jane_id, john_id]
        assert [e.commission_amount_cents for e in events] == [167, 166]
        assert sum(e.order_amount_cents for e in events) == 3333
        assert sum(e.attribution_weight_bps for e in events) == 10000
        assert len({e.source_event_id for e in events}) == 1


async def test_patient_match_without_visitor_identity(db, seed, session_factory, days_ago):
    """A later payment finds the touch already linked to the patient."""
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.touch(await seed.ref_code(jane, "JANE2026"), created_at=days_ago(8))
    await db.commit()
    jane_id, clinic_id = jane.id, clinic.id

    patient_id = uuid.uuid4()
    first = await CommissionService(db).process_conversion(conversion(clinic_id, patient_id))
    assert not first.skipped

    renewal = conversion(
        clinic_id,
        patient_id,
        is_first_payment=False,
        is_recurring=True,
        visitor_fingerprint=None,
    )
    second = await CommissionService(db).process_conversion(renewal)
    assert not second.skipped

    async with session_factory() as session:
        events = (await session.execute(select(AffiliateCommissionEvent))).scalars().all()
        assert len(events) == 2
        assert {e.affiliate_id for e in events} == {jane_id}


async def test_intake_attribution_links_patient_once(db, seed, session_factory):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.ref_code(jane, "JANE2026")
    await db.commit()
    clinic_id, jane_id = clinic.id, jane.id
    patient_id = uuid.uuid4()

    service = AttributionService(db)
    touch, reason = await service.attribute_from_intake(clinic_id, patient_id, " jane2026 ")
    await db.commit()
    assert reason is None
    assert touch.touch_type == TouchType.POSTBACK.value
    assert touch.affiliate_id == jane_id

    again, reason = await service.attribute_from_intake(clinic_id, patient_id, "JANE2026")
    assert again is None
    assert reason == "Patient already attributed"

    missing, reason = await service.attribute_from_intake(clinic_id, uuid.uuid4(), "NOPE")
    assert missing is None
    assert reason == "Invalid ref code"

    async with session_factory() as session:
        touches = (await session.execute(select(AffiliateTouch))).scalars().all()
        assert len(touches) == 1
        assert touches[0].converted_patient_id == patient_id
