"""Ref code resolution, touch recording, affiliates, commission plans and program settings."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from affiliate_engine.core.exceptions import AffiliateEngineError, ConflictError, InvalidConfigurationError
from affiliate_engine.models.affiliate import AffiliateRefCode, AffiliateStatus
from affiliate_engine.models.commission import CommissionPlan
from affiliate_engine.models.program_settings import AffiliateProgramSettings
from affiliate_engine.schemas.affiliate import AffiliateCreate, TouchCreate
from affiliate_engine.schemas.commission import CommissionPlanUpdate, CommissionPromotionCreate, CommissionTierCreate
from affiliate_engine.schemas.program_settings import ProgramSettingsUpdate, merge_program_settings
from affiliate_engine.services.affiliate_service import AffiliateService
from affiliate_engine.services.program_settings_service import ProgramSettingsService
from affiliate_engine.services.ref_code_service import RefCodeService, normalize_ref_code
from affiliate_engine.services.touch_service import TouchService


def test_normalize_ref_code():
    assert normalize_ref_code("  jane2026 ") == "JANE2026"
    assert normalize_ref_code(None) == ""


class TestResolve:

    async def test_case_insensitive(self, db, seed):
        clinic = await seed.clinic(branding={"primary_color": "#0a7"})
        jane = await seed.affiliate(clinic)
        await seed.ref_code(jane, "JANE2026")
        await db.commit()

        resolved = await RefCodeService(db).resolve(" jane2026", clinic_id=clinic.id)
        assert resolved.affiliate.id == jane.id

        public = resolved.to_public()
        assert public.valid
        assert public.affiliate_name == "Jane Doe"
        assert public.clinic_name == "Sunrise Clinic"
        assert public.branding == {"primary_color": "#0a7"}

    async def test_inactive_code(self, db, seed):
        clinic = await seed.clinic()
        jane = await seed.affiliate(clinic)
        await seed.ref_code(jane, "JANE2026", is_active=False)
        await db.commit()

        assert await RefCodeService(db).resolve("JANE2026", clinic_id=clinic.id) is None

    @pytest.mark.parametrize("status", [AffiliateStatus.PAUSED.value, AffiliateStatus.SUSPENDED.value])
    async def test_affiliate_not_active(self, db, seed, status):
        clinic = await seed.clinic()
        jane = await seed.affiliate(clinic, status=status)
        await seed.ref_code(jane, "JANE2026")
        await db.commit()

        assert await RefCodeService(db).resolve("JANE2026", clinic_id=clinic.id) is None

    async def test_inactive_clinic(self, db, seed):
        clinic = await seed.clinic(is_active=False)
        await seed.ref_code(await seed.affiliate(clinic), "JANE2026")
        await db.commit()

        assert await RefCodeService(db).resolve("JANE2026") is None

    async def test_domain_context(self, db, seed):
        sunrise = await seed.clinic(domain="sunrise.example")
        harbor = await seed.clinic("Harbor Health", domain="harbor.example")
        await seed.ref_code(await seed.affiliate(sunrise), "SHARED")
        harbor_affiliate = await seed.affiliate(harbor, "Hank Harbor")
        await seed.ref_code(harbor_affiliate, "SHARED")
        await db.commit()

        service = RefCodeService(db)
        # Same code in two clinics is ambiguous without context
        assert await service.resolve("SHARED") is None

        resolved = await service.resolve("shared", clinic_domain="Harbor.Example:443")
        assert resolved.affiliate.id == harbor_affiliate.id
        assert await service.resolve("SHARED", clinic_domain="unknown.example") is None

    async def test_unknown_code_public_answer(self, db, seed):
        clinic = await seed.clinic()
        await db.commit()

        public = await RefCodeService(db).resolve_public("NOPE", clinic_id=clinic.id)
        assert public.valid is False
        assert public.affiliate_name is None


class TestRefCodeRegistration:

    async def test_duplicate_in_clinic(self, db, seed):
        clinic = await seed.clinic()
        jane = await seed.affiliate(clinic)
        john = await seed.affiliate(clinic, "John Roe")
        await seed.ref_code(jane, "SPRING")
        await db.commit()

        with pytest.raises(ConflictError) as exc_info:
            await RefCodeService(db).create_ref_code(john, "spring")
        assert exc_info.value.error_code == "DUPLICATE_REF_CODE"

    async def test_same_code_in_other_clinic(self, db, seed):
        sunrise = await seed.clinic()
        harbor = await seed.clinic("Harbor Health")
        await seed.ref_code(await seed.affiliate(sunrise), "SPRING")
        hank = await seed.affiliate(harbor, "Hank Harbor")
        await db.commit()

        code = await RefCodeService(db).create_ref_code(hank, "spring")
        assert code.ref_code == "SPRING"

    @pytest.mark.parametrize("code", ["ab", "has space", "emoji🙂", "x" * 33])
    async def test_invalid_format(self, db, seed, code):
        clinic = await seed.clinic()
        jane = await seed.affiliate(clinic)
        await db.commit()

        with pytest.raises(AffiliateEngineError) as exc_info:
            await RefCodeService(db).create_ref_code(jane, code)
        assert exc_info.value.error_code == "INVALID_REF_CODE"

    async def test_generated_code(self, db, seed):
        clinic = await seed.clinic()
        jane = await seed.affiliate(clinic)
        await db.commit()

        code = await RefCodeService(db).create_ref_code(jane)
        assert code.ref_code.startswith("JANE")
        assert len(code.ref_code) == 8

    async def test_deactivate(self, db, seed):
        clinic = await seed.clinic()
        code = await seed.ref_code(await seed.affiliate(clinic), "JANE2026")
        await db.commit()

        service = RefCodeService(db)
        await service.set_active(clinic.id, code.id, False)
        assert await service.resolve("JANE2026", clinic_id=clinic.id) is None


class TestRecordTouch:

    async def test_records_tracking_fields(self, db, seed):
        clinic = await seed.clinic()
        await seed.ref_code(await seed.affiliate(clinic), "JANE2026")
        await db.commit()

        payload = TouchCreate(
            ref_code="jane2026",
            clinic_id=clinic.id,
            visitor_fingerprint="fp-abc",
            utm_source="instagram",
            sub_ids=[" story-42 ", "", "reel"],
        )
        touch, cookie_id = await TouchService(db).record_touch(payload, ip_address="198.51.100.7", user_agent="UA")

        assert touch.ref_code == "JANE2026"
        assert touch.visitor_fingerprint == "fp-abc"
        assert touch.cookie_id == cookie_id
        assert touch.ip_address_hash and touch.ip_address_hash != "198.51.100.7"
        assert (touch.sub_id1, touch.sub_id2, touch.sub_id3) == ("story-42", "reel", None)

    async def test_fingerprinting_disabled_uses_cookie(self, db, seed):
        clinic = await seed.clinic()
        await seed.program_settings(clinic, enable_fingerprinting=False, enable_sub_ids=False)
        await seed.ref_code(await seed.affiliate(clinic), "JANE2026")
        await db.commit()

        payload = TouchCreate(
            ref_code="JANE2026",
            clinic_id=clinic.id,
            visitor_fingerprint="fp-abc",
            cookie_id="ck_existing",
            sub_ids=["story-42"],
        )
        touch, cookie_id = await TouchService(db).record_touch(payload)

        assert cookie_id == "ck_existing"
        assert touch.visitor_fingerprint == "cookie:ck_existing"
        assert touch.sub_id1 is None

    async def test_invalid_code_records_nothing(self, db, seed):
        clinic = await seed.clinic()
        await db.commit()

        touch, cookie_id = await TouchService(db).record_touch(TouchCreate(ref_code="NOPE", clinic_id=clinic.id))
        assert touch is None
        assert cookie_id


class TestAffiliates:

    async def test_create_with_generated_code(self, db, seed):
        clinic = await seed.clinic()
        await db.commit()

        data = AffiliateCreate(user_id=uuid.uuid4(), display_name="Maria Lopez", payout_method_type="PAYPAL")
        affiliate = await AffiliateService(db).create_affiliate(clinic.id, data)
        await db.commit()

        assert affiliate.status == "ACTIVE"
        codes = (
            await db.execute(select(AffiliateRefCode).where(AffiliateRefCode.affiliate_id == affiliate.id))
        ).scalars().all()
        assert len(codes) == 1
        assert codes[0].ref_code.startswith("MARI")

        with pytest.raises(ConflictError):
            await AffiliateService(db).create_affiliate(clinic.id, data)

    async def test_earnings_summary(self, db, seed):
        clinic = await seed.clinic()
        jane = await seed.affiliate(clinic, lifetime_commission_cents=1500)
        await seed.commission(jane, 300, status="PENDING")
        await seed.commission(jane, 700, status="APPROVED")
        await seed.commission(jane, 500, status="REVERSED")
        await db.commit()

        summary = await AffiliateService(db).get_earnings_summary(jane)

        assert summary.pending_balance_cents == 300
        assert summary.available_balance_cents == 700
        assert summary.processing_payout_cents == 0
        assert summary.minimum_payout_cents == 5000
        assert summary.payout_frequency == "MONTHLY"
        assert len(summary.recent_commissions) == 3


class TestProgramSettings:

    def test_merge_drops_unknown_keys(self):
        merged = merge_program_settings({"hold_days": 14, "legacy_bonus_tier": "gold"})
        assert merged.hold_days == 14
        assert merged.cookie_window_days == 30

    def test_defaults(self):
        defaults = merge_program_settings(None)
        assert defaults.new_patient_model == "FIRST_CLICK"
        assert defaults.returning_patient_model == "LAST_CLICK"
        assert defaults.minimum_payout_cents == 5000

    def test_update_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            ProgramSettingsUpdate(hold_days=3, legacy_bonus_tier="gold")

    def test_update_rejects_explicit_null(self):
        with pytest.raises(ValidationError):
            ProgramSettingsUpdate(hold_days=None)

    def test_update_validates_ranges(self):
        with pytest.raises(ValidationError):
            ProgramSettingsUpdate(default_percent_bps=10001)

    async def test_update_persists_only_set_keys(self, db, seed, session_factory):
        clinic = await seed.clinic()
        await db.commit()

        service = ProgramSettingsService(db)
        await service.update_settings(clinic.id, ProgramSettingsUpdate(hold_days=14))
        effective = await service.update_settings(
            clinic.id, ProgramSettingsUpdate(payout_frequency="WEEKLY"), updated_by=uuid.uuid4()
        )
        await db.commit()

        assert effective.hold_days == 14
        assert effective.payout_frequency == "WEEKLY"

        async with session_factory() as session:
            row = (await session.execute(select(AffiliateProgramSettings))).scalar_one()
            assert row.overrides == {"hold_days": 14, "payout_frequency": "WEEKLY"}
            assert (await ProgramSettingsService(session).get_settings(clinic.id)).hold_days == 14


class TestCommissionPlans:

    async def test_type_switch_without_amount_is_rejected(self, db, seed, session_factory):
        clinic = await seed.clinic()
        plan = await seed.plan(clinic, percent_bps=1500)
        await db.commit()
        clinic_id, plan_id = clinic.id, plan.id

        with pytest.raises(InvalidConfigurationError) as exc:
            await AffiliateService(db).update_plan(clinic_id, plan_id, CommissionPlanUpdate(commission_type="FLAT"))
        assert exc.value.status_code == 422
        assert exc.value.error_code == "INVALID_COMMISSION_PLAN"
        await db.rollback()

        async with session_factory() as session:
            stored = await session.get(CommissionPlan, plan_id)
            assert stored.commission_type == "PERCENT"
            assert stored.percent_bps == 1500
            assert stored.flat_amount_cents is None

    async def test_type_switch_clears_old_amount(self, db, seed):
        clinic = await seed.clinic()
        plan = await seed.plan(clinic, percent_bps=1500)
        await db.commit()

        updated = await AffiliateService(db).update_plan(
            clinic.id, plan.id, CommissionPlanUpdate(commission_type="FLAT", flat_amount_cents=2500)
        )

        assert updated.commission_type == "FLAT"
        assert updated.flat_amount_cents == 2500
        assert updated.percent_bps is None

    async def test_rate_without_type_is_checked_against_stored_type(self, db, seed):
        clinic = await seed.clinic()
        plan = await seed.plan(clinic, percent_bps=1500)
        await db.commit()

        with pytest.raises(InvalidConfigurationError):
            await AffiliateService(db).update_plan(clinic.id, plan.id, CommissionPlanUpdate(flat_amount_cents=900))

    @pytest.mark.parametrize("field", ["commission_type", "percent_bps", "flat_amount_cents", "is_active"])
    def test_update_rejects_explicit_null(self, field):
        with pytest.raises(ValidationError):
            CommissionPlanUpdate(**{field: None})

    def test_update_allows_clearing_optional_columns(self):
        update = CommissionPlanUpdate(recurring_months=None, description=None)
        assert update.model_fields_set == {"recurring_months", "description"}

    async def test_duplicate_tier_level(self, db, seed):
        clinic = await seed.clinic()
        plan = await seed.plan(clinic, tier_enabled=True)
        await db.commit()
        service = AffiliateService(db)

        silver = await service.add_tier(
            clinic.id, plan.id, CommissionTierCreate(name="Silver", level=1, min_conversions=10, percent_bps=2000)
        )
        assert silver.plan_id == plan.id

        with pytest.raises(ConflictError):
            await service.add_tier(clinic.id, plan.id, CommissionTierCreate(name="Gold", level=1))

    async def test_promotion_targeting_is_normalized(self, db, seed):
        clinic = await seed.clinic()
        plan = await seed.plan(clinic)
        await db.commit()
        now = datetime.now(timezone.utc)

        promotion = await AffiliateService(db).add_promotion(
            clinic.id,
            plan.id,
            CommissionPromotionCreate(
                name="Launch week",
                starts_at=now,
                ends_at=now + timedelta(days=7),
                bonus_flat_cents=500,
                ref_codes=[" jane2026 "],
            ),
        )

        assert promotion.ref_codes == ["JANE2026"]
        assert promotion.affiliate_ids is None
        assert promotion.uses_count == 0

    def test_promotion_needs_window_and_bonus(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            CommissionPromotionCreate(name="Backwards", starts_at=now, ends_at=now - timedelta(days=1), bonus_flat_cents=500)
        with pytest.raises(ValidationError):
            CommissionPromotionCreate(name="Nothing", starts_at=now, ends_at=now + timedelta(days=1))
