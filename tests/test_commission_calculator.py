"""Commission amount, split, rate selection, tiers, promotions and recurring rules."""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from affiliate_engine.models.commission import CommissionType, PlanAppliesTo
from affiliate_engine.schemas.commission import ConversionEvent
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.commission_service import (
    active_promotions,
    calculate_breakdown,
    calculate_commission_amount,
    find_matching_rule,
    plan_multiplier,
    plan_skip_reason,
    recurring_multiplier,
    select_rate,
    select_tier,
    split_amount,
)


def make_event(**overrides) -> ConversionEvent:
    data = {
        "clinic_id": uuid.uuid4(),
        "patient_id": uuid.uuid4(),
        "source_event_id": "pi_123",
        "amount_cents": 10000,
        "occurred_at": datetime.now(timezone.utc),
    }
    data.update(overrides)
    return ConversionEvent(**data)


def make_rule(**overrides):
    rule = {
        "id": uuid.uuid4(),
        "product_id": None,
        "product_bundle_id": None,
        "bonus_type": CommissionType.FLAT.value,
        "percent_bps": None,
        "flat_amount_cents": 2500,
        "priority": 0,
        "is_active": True,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    rule.update(overrides)
    return SimpleNamespace(**rule)


def make_plan(rules=(), **overrides):
    plan = {
        "id": uuid.uuid4(),
        "rules": list(rules),
        "commission_type": CommissionType.PERCENT.value,
        "percent_bps": 1500,
        "flat_amount_cents": None,
        "recurring_percent_bps": None,
        "recurring_flat_amount_cents": None,
        "applies_to": PlanAppliesTo.ALL_PAYMENTS.value,
        "recurring_enabled": True,
        "recurring_months": None,
        "recurring_decay_pct": None,
        "tier_enabled": False,
        "tiers": [],
        "promotions": [],
    }
    plan.update(overrides)
    return SimpleNamespace(**plan)


class TestCalculateCommissionAmount:

    def test_percent_of_order(self):
        assert calculate_commission_amount(5000, CommissionType.PERCENT, percent_bps=1000) == 500

    def test_percent_rounds_half_up(self):
        # 1005 * 10% = 100.5
        assert calculate_commission_amount(1005, CommissionType.PERCENT, percent_bps=1000) == 101
        # 1004 * 10% = 100.4
        assert calculate_commission_amount(1004, CommissionType.PERCENT, percent_bps=1000) == 100

    def test_flat_ignores_order_amount(self):
        assert calculate_commission_amount(99999, CommissionType.FLAT, flat_amount_cents=2500) == 2500
        assert calculate_commission_amount(0, CommissionType.FLAT, flat_amount_cents=2500) == 2500

    def test_zero_order_is_zero_percent_commission(self):
        assert calculate_commission_amount(0, CommissionType.PERCENT, percent_bps=2000) == 0

    def test_accepts_plain_strings(self):
        assert calculate_commission_amount(10000, "PERCENT", percent_bps=250) == 250

    def test_negative_order_amount_rejected(self):
        with pytest.raises(ValueError):
            calculate_commission_amount(-1, CommissionType.PERCENT, percent_bps=1000)

    def test_percent_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            calculate_commission_amount(1000, CommissionType.PERCENT, percent_bps=10001)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            calculate_commission_amount(1000, "TIERED", percent_bps=1000)


class TestSplitAmount:

    def test_remainder_goes_to_first_part(self):
        assert split_amount(100, 3) == [34, 33, 33]

    @pytest.mark.parametrize("total,parts", [(0, 4), (1, 3), (333, 2), (10000, 3), (999_999, 7)])
    def test_parts_sum_to_total(self, total, parts):
        splits = split_amount(total, parts)
        assert len(splits) == parts
        assert sum(splits) == total
        assert max(splits) - min(splits) <= parts

    def test_single_part(self):
        assert split_amount(1234, 1) == [1234]

    def test_zero_parts_rejected(self):
        with pytest.raises(ValueError):
            split_amount(100, 0)


class TestRateSelection:

    def test_no_plan_uses_program_default(self):
        rate = select_rate(None, make_event(), ProgramSettings())
        assert rate.source == "program_default"
        assert rate.amount_for(5000) == 500

    def test_plan_rate(self):
        plan = make_plan()
        rate = select_rate(plan, make_event(), ProgramSettings())
        assert rate.source == "plan"
        assert rate.plan_id == plan.id
        assert rate.amount_for(10000) == 1500

    def test_recurring_rate_for_recurring_payment(self):
        plan = make_plan(recurring_percent_bps=500)
        rate = select_rate(plan, make_event(is_recurring=True), ProgramSettings())
        assert rate.source == "plan_recurring"
        assert rate.amount_for(10000) == 500

    def test_product_rule_wins_over_plan(self):
        rule = make_rule(product_id="SEMA-3M")
        plan = make_plan(rules=[rule])
        rate = select_rate(plan, make_event(product_sku="SEMA-3M"), ProgramSettings())
        assert rate.source == "product_rule"
        assert rate.rule_id == rule.id
        assert rate.amount_for(10000) == 2500

    def test_product_rule_beats_bundle_rule(self):
        bundle_rule = make_rule(product_bundle_id="WEIGHT-LOSS", priority=100)
        product_rule = make_rule(product_id="SEMA-3M", priority=0)
        match = find_matching_rule([bundle_rule, product_rule], "SEMA-3M", "WEIGHT-LOSS")
        assert match is product_rule

    def test_highest_priority_and_active_only(self):
        low = make_rule(product_id="SEMA-3M", priority=1, flat_amount_cents=1000)
        high = make_rule(product_id="SEMA-3M", priority=5, flat_amount_cents=3000)
        inactive = make_rule(product_id="SEMA-3M", priority=10, is_active=False)
        assert find_matching_rule([low, inactive, high], "SEMA-3M", None) is high

    def test_no_matching_rule(self):
        assert find_matching_rule([make_rule(product_id="OTHER")], "SEMA-3M", None) is None


class TestPlanSkipReason:

    def test_first_payment_only_plan_skips_renewals(self):
        plan = make_plan(applies_to=PlanAppliesTo.FIRST_PAYMENT_ONLY.value)
        assert plan_skip_reason(plan, make_event(is_first_payment=False)) == "Plan pays on first payment only"
        assert plan_skip_reason(plan, make_event(is_first_payment=True)) is None

    def test_recurring_disabled(self):
        plan = make_plan(recurring_enabled=False)
        assert plan_skip_reason(plan, make_event(is_recurring=True)) == "Plan does not pay on recurring payments"

    def test_no_plan_never_skips(self):
        assert plan_skip_reason(None, make_event(is_recurring=True)) is None

    def test_recurring_window_ended(self):
        plan = make_plan(recurring_months=12)
        event = make_event(is_recurring=True, recurring_month=13)
        assert plan_skip_reason(plan, event) == "Recurring commission window ended"
        assert plan_skip_reason(plan, make_event(is_recurring=True, recurring_month=12)) is None


def make_tier(level, **overrides):
    tier = {
        "id": uuid.uuid4(),
        "name": f"Level {level}",
        "level": level,
        "min_conversions": 0,
        "min_revenue_cents": 0,
        "percent_bps": None,
        "flat_amount_cents": None,
        "bonus_cents": 0,
    }
    tier.update(overrides)
    return SimpleNamespace(**tier)


def make_promotion(**overrides):
    now = datetime.now(timezone.utc)
    promotion = {
        "id": uuid.uuid4(),
        "name": "Launch week",
        "starts_at": now - timedelta(days=1),
        "ends_at": now + timedelta(days=6),
        "bonus_percent_bps": 0,
        "bonus_flat_cents": 500,
        "min_order_cents": None,
        "max_uses": None,
        "uses_count": 0,
        "affiliate_ids": None,
        "ref_codes": None,
        "is_active": True,
    }
    promotion.update(overrides)
    return SimpleNamespace(**promotion)


class TestSelectTier:

    def test_highest_qualifying_level(self):
        tiers = [
            make_tier(1, min_conversions=10),
            make_tier(2, min_conversions=25),
            make_tier(3, min_conversions=100),
        ]
        assert select_tier(tiers, 30, 0).level == 2

    def test_both_minimums_required(self):
        tiers = [make_tier(1, min_conversions=10), make_tier(2, min_conversions=25, min_revenue_cents=500000)]
        assert select_tier(tiers, 40, 100000).level == 1
        assert select_tier(tiers, 40, 500000).level == 2

    def test_no_qualifying_tier(self):
        assert select_tier([make_tier(1, min_conversions=10)], 3, 0) is None
        assert select_tier([], 1000, 10**9) is None

    def test_tier_rate_replaces_plan_rate(self):
        tier = make_tier(1, percent_bps=2500)
        rate = select_rate(make_plan(percent_bps=1500), make_event(), ProgramSettings(), tier=tier)
        assert (rate.percent_bps, rate.source) == (2500, "tier")

    def test_tier_without_rate_keeps_plan_rate(self):
        tier = make_tier(1, bonus_cents=300)
        rate = select_rate(make_plan(percent_bps=1500), make_event(), ProgramSettings(), tier=tier)
        assert (rate.percent_bps, rate.source) == (1500, "plan")

    def test_product_rule_beats_tier(self):
        plan = make_plan(rules=[make_rule(product_id="SEMA-3M")])
        tier = make_tier(1, percent_bps=2500)
        rate = select_rate(plan, make_event(product_sku="SEMA-3M"), ProgramSettings(), tier=tier)
        assert rate.source == "product_rule"


class TestActivePromotions:
    now = datetime.now(timezone.utc)
    affiliate_id = uuid.uuid4()

    def applicable(self, promotion, **kwargs):
        kwargs.setdefault("order_amount_cents", 10000)
        return active_promotions([promotion], self.now, self.affiliate_id, **kwargs)

    def test_open_promotion_applies(self):
        assert len(self.applicable(make_promotion())) == 1

    @pytest.mark.parametrize("overrides", [
        {"is_active": False},
        {"starts_at": datetime.now(timezone.utc) + timedelta(days=1)},
        {"ends_at": datetime.now(timezone.utc) - timedelta(days=1)},
        {"max_uses": 10, "uses_count": 10},
        {"min_order_cents": 20000},
        {"affiliate_ids": [str(uuid.uuid4())]},
    ])
    def test_excluded(self, overrides):
        assert self.applicable(make_promotion(**overrides)) == []

    def test_affiliate_targeting(self):
        promotion = make_promotion(affiliate_ids=[str(self.affiliate_id)])
        assert len(self.applicable(promotion)) == 1

    def test_ref_code_targeting(self):
        promotion = make_promotion(ref_codes=["JANE2026"])
        assert len(self.applicable(promotion, ref_code="jane2026")) == 1
        assert self.applicable(promotion, ref_code="JOHN2026") == []
        # Conversions without a ref code are not narrowed
        assert len(self.applicable(promotion)) == 1


class TestRecurringMultiplier:

    @pytest.mark.parametrize("month, months, decay, expected", [
        (1, None, None, Decimal(1)),
        (13, None, None, Decimal(1)),
        (13, 12, None, Decimal(0)),
        (12, 12, 50, Decimal(1)),
        (13, None, 50, Decimal("0.5")),
        (25, 24, 50, Decimal(0)),
    ])
    def test_window_and_decay(self, month, months, decay, expected):
        assert recurring_multiplier(month, months, decay) == expected

    def test_only_recurring_payments_are_scaled(self):
        plan = make_plan(recurring_months=12)
        assert plan_multiplier(plan, make_event(recurring_month=20)) == 1
        assert plan_multiplier(plan, make_event(is_recurring=True)) == 1
        assert plan_multiplier(plan, make_event(is_recurring=True, recurring_month=20)) == 0


class TestCalculateBreakdown:

    def test_bonuses_and_multiplier(self):
        rate = select_rate(make_plan(percent_bps=1000), make_event(), ProgramSettings())
        breakdown = calculate_breakdown(
            rate,
            10000,
            tier=make_tier(1, name="Gold", bonus_cents=250),
            promotions=[make_promotion(bonus_percent_bps=500, bonus_flat_cents=100)],
            multiplier=Decimal("0.5"),
        )
        # (1000 base + 250 tier + 500 + 100 promotion) * 0.5
        assert breakdown.base_cents == 1000
        assert breakdown.promotion_bonus_cents == 600
        assert breakdown.total_cents == 925
        assert breakdown.as_extra_data()["tier_name"] == "Gold"

    def test_plain_rate(self):
        rate = select_rate(make_plan(percent_bps=1500), make_event(), ProgramSettings())
        breakdown = calculate_breakdown(rate, 12345)
        assert breakdown.total_cents == 1852
        assert breakdown.promotion_ids == []


def test_conversion_requires_timezone():
    with pytest.raises(ValueError):
        make_event(occurred_at=datetime.now() - timedelta(minutes=1))
