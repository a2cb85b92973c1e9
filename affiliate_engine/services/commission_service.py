"""
Commission Calculator

Turns an attributed conversion into PENDING ledger entries.

Rate precedence:
1. Active product rule of the affiliate's plan (product first, then bundle,
   highest priority first)
2. The affiliate's tier rate, when the plan has tiers enabled
3. The plan rate (recurring rate for recurring payments when configured)
4. The clinic's program default commission

Tier bonuses and active promotion bonuses are added to the base amount,
and the total is scaled by the plan's recurring multiplier.

process_conversion() is the single entry point for billing events. It
never raises: every outcome, including unexpected errors, is reported in
the returned CommissionResult.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.config import settings
from affiliate_engine.core.security import hash_ip_address
from affiliate_engine.core.utils import ensure_utc, round_half_up
from affiliate_engine.models.affiliate import Affiliate
from affiliate_engine.models.commission import (
    AffiliateCommissionEvent,
    CommissionEventStatus,
    CommissionPlan,
    CommissionPromotion,
    CommissionTier,
    CommissionType,
    PlanAppliesTo,
    ProductCommissionRule,
)
from affiliate_engine.models.fraud import AffiliateFraudAlert
from affiliate_engine.schemas.commission import CommissionResult, ConversionEvent
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.attribution_service import AttributionService
from affiliate_engine.services.fraud_service import FraudDecision, FraudDecisionType, FraudService
from affiliate_engine.services.program_settings_service import ProgramSettingsService

logger = logging.getLogger(__name__)


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def calculate_commission_amount(
    order_amount_cents: int,
    commission_type: str,
    percent_bps: Optional[int] = None,
    flat_amount_cents: Optional[int] = None,
) -> int:
    """
    Commission in cents for one conversion.

    PERCENT: round_half_up(order_amount_cents * percent_bps / 10000)
    FLAT:    flat_amount_cents, independent of the order amount
    """
    if order_amount_cents < 0:
        raise ValueError("order_amount_cents must be non-negative")

    if commission_type == CommissionType.PERCENT:
        bps = percent_bps or 0
        if not 0 <= bps <= 10000:
            raise ValueError("percent_bps must be between 0 and 10000")
        return round_half_up(Decimal(order_amount_cents) * Decimal(bps) / Decimal(10000))

    if commission_type == CommissionType.FLAT:
        flat = flat_amount_cents or 0
        if flat < 0:
            raise ValueError("flat_amount_cents must be non-negative")
        return flat

    raise ValueError(f"Unknown commission type: {commission_type}")


def split_amount(total: int, parts: int) -> List[int]:
    """
    Split an integer amount into equal parts that sum exactly to total.

    Leftover units go to the first part (the earliest touch).
    """
    if parts < 1:
        raise ValueError("parts must be at least 1")
    base = total // parts
    remainder = total - base * parts
    return [base + remainder] + [base] * (parts - 1)


@dataclass
class RateSelection:
    commission_type: str
    percent_bps: Optional[int]
    flat_amount_cents: Optional[int]
    plan_id: Optional[uuid.UUID] = None
    rule_id: Optional[uuid.UUID] = None
    source: str = "program_default"

    def amount_for(self, order_amount_cents: int) -> int:
        return calculate_commission_amount(
            order_amount_cents, self.commission_type, self.percent_bps, self.flat_amount_cents
        )


def find_matching_rule(
    rules: Sequence[ProductCommissionRule],
    product_sku: Optional[str],
    product_bundle_id: Optional[str],
) -> Optional[ProductCommissionRule]:
    """Product rules win over bundle rules; within each, highest priority first."""
    active = sorted((r for r in rules if r.is_active), key=lambda r: (-r.priority, r.created_at))
    if product_sku:
        for rule in active:
            if rule.product_id and rule.product_id == product_sku:
                return rule
    if product_bundle_id:
        for rule in active:
            if rule.product_bundle_id and rule.product_bundle_id == product_bundle_id:
                return rule
    return None


def select_rate(
    plan: Optional[CommissionPlan],
    event: ConversionEvent,
    program: ProgramSettings,
    tier: Optional[CommissionTier] = None,
) -> RateSelection:
    if plan is None:
        return RateSelection(
            commission_type=CommissionType(program.default_commission_type).value,
            percent_bps=program.default_percent_bps,
            flat_amount_cents=program.default_flat_amount_cents,
        )

    rule = find_matching_rule(plan.rules, event.product_sku, event.product_bundle_id)
    if rule is not None:
        return RateSelection(
            commission_type=rule.bonus_type,
            percent_bps=rule.percent_bps,
            flat_amount_cents=rule.flat_amount_cents,
            plan_id=plan.id,
            rule_id=rule.id,
            source="product_rule",
        )

    percent_bps = plan.percent_bps
    flat_amount_cents = plan.flat_amount_cents
    source = "plan"
    if event.is_recurring:
        if plan.commission_type == CommissionType.PERCENT and plan.recurring_percent_bps is not None:
            percent_bps, source = plan.recurring_percent_bps, "plan_recurring"
        elif plan.commission_type == CommissionType.FLAT and plan.recurring_flat_amount_cents is not None:
            flat_amount_cents, source = plan.recurring_flat_amount_cents, "plan_recurring"

    if tier is not None:
        if plan.commission_type == CommissionType.PERCENT and tier.percent_bps is not None:
            percent_bps, source = tier.percent_bps, "tier"
        elif plan.commission_type == CommissionType.FLAT and tier.flat_amount_cents is not None:
            flat_amount_cents, source = tier.flat_amount_cents, "tier"

    return RateSelection(
        commission_type=plan.commission_type,
        percent_bps=percent_bps,
        flat_amount_cents=flat_amount_cents,
        plan_id=plan.id,
        source=source,
    )


def select_tier(
    tiers: Sequence[CommissionTier],
    lifetime_conversions: int,
    lifetime_revenue_cents: int,
) -> Optional[CommissionTier]:
    """Highest level whose conversion and revenue minimums are both met."""
    for tier in sorted(tiers, key=lambda t: t.level, reverse=True):
        if lifetime_conversions >= tier.min_conversions and lifetime_revenue_cents >= tier.min_revenue_cents:
            return tier
    return None


def active_promotions(
    promotions: Sequence[CommissionPromotion],
    now: datetime,
    affiliate_id: uuid.UUID,
    ref_code: Optional[str] = None,
    order_amount_cents: int = 0,
) -> List[CommissionPromotion]:
    applicable = []
    for promo in promotions:
        if not promo.is_active:
            continue
        if not ensure_utc(promo.starts_at) <= now <= ensure_utc(promo.ends_at):
            continue
        if promo.max_uses is not None and promo.uses_count >= promo.max_uses:
            continue
        if promo.min_order_cents and order_amount_cents < promo.min_order_cents:
            continue
        if promo.affiliate_ids is not None and str(affiliate_id) not in {str(a) for a in promo.affiliate_ids}:
            continue
        # Ref-code targeting only narrows conversions that carry a code
        if promo.ref_codes is not None and ref_code and ref_code.upper() not in promo.ref_codes:
            continue
        applicable.append(promo)
    return applicable


def recurring_multiplier(
    recurring_month: int,
    recurring_months: Optional[int],
    recurring_decay_pct: Optional[int],
) -> Decimal:
    """
    Share of the commission paid on a recurring payment.

    0 after the recurring window, recurring_decay_pct after month 12,
    otherwise the full amount.
    """
    if recurring_months is not None and recurring_month > recurring_months:
        return Decimal(0)
    if recurring_decay_pct is not None and recurring_month > 12:
        return Decimal(recurring_decay_pct) / Decimal(100)
    return Decimal(1)


def plan_multiplier(plan: Optional[CommissionPlan], event: ConversionEvent) -> Decimal:
    if plan is None or not event.is_recurring or not plan.recurring_enabled or not event.recurring_month:
        return Decimal(1)
    return recurring_multiplier(event.recurring_month, plan.recurring_months, plan.recurring_decay_pct)


@dataclass
class CommissionBreakdown:
    base_cents: int
    tier_bonus_cents: int = 0
    promotion_bonus_cents: int = 0
    multiplier: Decimal = Decimal(1)
    tier_name: Optional[str] = None
    promotion_ids: List[uuid.UUID] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        subtotal = self.base_cents + self.tier_bonus_cents + self.promotion_bonus_cents
        return round_half_up(Decimal(subtotal) * self.multiplier)

    def as_extra_data(self) -> dict:
        return {
            "base_cents": self.base_cents,
            "tier_bonus_cents": self.tier_bonus_cents,
            "promotion_bonus_cents": self.promotion_bonus_cents,
            "recurring_multiplier": str(self.multiplier),
            "tier_name": self.tier_name,
            "promotion_ids": [str(p) for p in self.promotion_ids],
        }


def calculate_breakdown(
    rate: RateSelection,
    order_amount_cents: int,
    tier: Optional[CommissionTier] = None,
    promotions: Sequence[CommissionPromotion] = (),
    multiplier: Decimal = Decimal(1),
) -> CommissionBreakdown:
    """Base commission plus tier and promotion bonuses, scaled by the recurring multiplier."""
    promotion_bonus = 0
    for promo in promotions:
        promotion_bonus += calculate_commission_amount(
            order_amount_cents, CommissionType.PERCENT.value, percent_bps=promo.bonus_percent_bps
        )
        promotion_bonus += promo.bonus_flat_cents
    return CommissionBreakdown(
        base_cents=rate.amount_for(order_amount_cents),
        tier_bonus_cents=tier.bonus_cents if tier else 0,
        promotion_bonus_cents=promotion_bonus,
        multiplier=multiplier,
        tier_name=tier.name if tier else None,
        promotion_ids=[p.id for p in promotions],
    )


def plan_skip_reason(plan: Optional[CommissionPlan], event: ConversionEvent) -> Optional[str]:
    if plan is None:
        return None
    if plan.applies_to == PlanAppliesTo.FIRST_PAYMENT_ONLY and not event.is_first_payment:
        return "Plan pays on first payment only"
    if event.is_recurring and not plan.recurring_enabled:
        return "Plan does not pay on recurring payments"
    if plan_multiplier(plan, event) == 0:
        return "Recurring commission window ended"
    return None


# =============================================================================
# SERVICE
# =============================================================================

class CommissionService:

    def __init__(self, db: AsyncSession, fraud_service: Optional[FraudService] = None):
        self.db = db
        self.fraud_service = fraud_service or FraudService(db)

    async def resolve_plan(self, affiliate: Affiliate) -> Optional[CommissionPlan]:
        """Assigned active plan, else the clinic's active default plan."""
        if affiliate.commission_plan_id:
            result = await self.db.execute(
                select(CommissionPlan).where(
                    CommissionPlan.id == affiliate.commission_plan_id,
                    CommissionPlan.clinic_id == affiliate.clinic_id,
                    CommissionPlan.is_active.is_(True),
                )
            )
            plan = result.scalar_one_or_none()
            if plan is not None:
                return plan

        result = await self.db.execute(
            select(CommissionPlan)
            .where(
                CommissionPlan.clinic_id == affiliate.clinic_id,
                CommissionPlan.is_default.is_(True),
                CommissionPlan.is_active.is_(True),
            )
            .order_by(CommissionPlan.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_existing_events(self, clinic_id: uuid.UUID, source_event_id: str) -> List[AffiliateCommissionEvent]:
        result = await self.db.execute(
            select(AffiliateCommissionEvent)
            .where(
                AffiliateCommissionEvent.clinic_id == clinic_id,
                AffiliateCommissionEvent.source_event_id == source_event_id,
                AffiliateCommissionEvent.is_adjustment.is_(False),
            )
            .order_by(AffiliateCommissionEvent.split_index)
        )
        return list(result.scalars().all())

    async def was_blocked(self, clinic_id: uuid.UUID, source_event_id: str) -> bool:
        """A BLOCK decision is final for its source event, whatever later signals say."""
        result = await self.db.execute(
            select(AffiliateFraudAlert.id).where(
                AffiliateFraudAlert.clinic_id == clinic_id,
                AffiliateFraudAlert.source_event_id == source_event_id,
                AffiliateFraudAlert.decision == FraudDecisionType.BLOCK.value,
            ).limit(1)
        )
        return result.first() is not None

    @staticmethod
    def _already_processed(events: Sequence[AffiliateCommissionEvent]) -> CommissionResult:
        return CommissionResult(
            success=True,
            skipped=True,
            skip_reason="Already processed",
            commission_event_ids=[e.id for e in events],
            commission_amount_cents=sum(e.commission_amount_cents for e in events),
        )

    async def process_conversion(self, event: ConversionEvent) -> CommissionResult:
        """
        Create commission events for a successful payment.

        Owns its transaction: commits on success, rolls back on failure.
        A duplicate source_event_id returns the existing events instead of
        creating new ones, including when two deliveries race.
        """
        try:
            return await self._process_conversion(event)
        except IntegrityError:
            await self.db.rollback()
            existing = await self.find_existing_events(event.clinic_id, event.source_event_id)
            if existing:
                logger.info(f"Concurrent delivery of {event.source_event_id} absorbed")
                return self._already_processed(existing)
            logger.error(f"Integrity error processing conversion {event.source_event_id}", exc_info=True)
            return CommissionResult(success=False, error="Integrity error while writing commission")
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Commission processing failed for {event.source_event_id}: {e}", exc_info=True)
            return CommissionResult(success=False, error=str(e))

    async def _process_conversion(self, event: ConversionEvent) -> CommissionResult:
        now = datetime.now(timezone.utc)

        existing = await self.find_existing_events(event.clinic_id, event.source_event_id)
        if existing:
            return self._already_processed(existing)
        if await self.was_blocked(event.clinic_id, event.source_event_id):
            return CommissionResult(
                success=True,
                skipped=True,
                skip_reason="Already processed",
                fraud_decision=FraudDecisionType.BLOCK.value,
            )

        program = await ProgramSettingsService(self.db).get_settings(event.clinic_id)

        attribution = await AttributionService(self.db).resolve(event, program, mark_converted=True)
        if attribution is None:
            return CommissionResult(success=True, skipped=True, skip_reason="No affiliate attribution")

        affiliate_ids = {t.affiliate_id for t in attribution.touches}
        result = await self.db.execute(select(Affiliate).where(Affiliate.id.in_(affiliate_ids)))
        affiliates: Dict[uuid.UUID, Affiliate] = {
            a.id: a for a in result.scalars().all()
            if a.is_active and a.clinic_id == event.clinic_id
        }

        touches = [t for t in attribution.touches if t.affiliate_id in affiliates]
        if not touches:
            await self.db.commit()
            return CommissionResult(success=True, skipped=True, skip_reason="Affiliate not active")

        # The earliest credited touch sets the rate so the LINEAR total
        # matches what a single-touch model would pay.
        primary_affiliate = affiliates[touches[0].affiliate_id]
        plan = await self.resolve_plan(primary_affiliate)

        skip_reason = plan_skip_reason(plan, event)
        if skip_reason:
            await self.db.commit()
            return CommissionResult(success=True, skipped=True, skip_reason=skip_reason)

        tier = None
        if plan is not None and plan.tier_enabled:
            tier = select_tier(
                plan.tiers, primary_affiliate.lifetime_conversions, primary_affiliate.lifetime_revenue_cents
            )
        promotions = []
        if plan is not None:
            promotions = active_promotions(
                plan.promotions, now, primary_affiliate.id, touches[0].ref_code, event.amount_cents
            )

        rate = select_rate(plan, event, program, tier=tier)
        breakdown = calculate_breakdown(
            rate, event.amount_cents, tier=tier, promotions=promotions, multiplier=plan_multiplier(plan, event)
        )
        total_commission = breakdown.total_cents
        if total_commission <= 0:
            await self.db.commit()
            return CommissionResult(success=True, skipped=True, skip_reason="Zero commission")

        # Fraud gate, once per credited affiliate
        ip_hash = hash_ip_address(event.ip_address) if event.ip_address else touches[0].ip_address_hash
        decisions: Dict[uuid.UUID, FraudDecision] = {}
        for affiliate_id in dict.fromkeys(t.affiliate_id for t in touches):
            decisions[affiliate_id] = await self.fraud_service.evaluate(
                affiliate_id,
                program,
                ip_address=event.ip_address,
                ip_hash=ip_hash,
                current_touch_ids=[t.id for t in touches],
                now=now,
                affiliate_email=affiliates[affiliate_id].email,
                patient_email=event.patient_email,
            )

        commission_splits = split_amount(total_commission, len(touches))
        order_splits = split_amount(event.amount_cents, len(touches))
        weight_splits = split_amount(10000, len(touches))
        hold_until = now + timedelta(days=program.hold_days)
        occurred_at = ensure_utc(event.occurred_at)

        created: List[AffiliateCommissionEvent] = []
        first_event_for: Dict[uuid.UUID, AffiliateCommissionEvent] = {}
        totals: Dict[uuid.UUID, Dict[str, int]] = {}

        for index, touch in enumerate(touches):
            decision = decisions[touch.affiliate_id]
            if decision.decision == FraudDecisionType.BLOCK:
                continue

            flagged = decision.decision == FraudDecisionType.HOLD
            commission_event = AffiliateCommissionEvent(
                clinic_id=event.clinic_id,
                affiliate_id=touch.affiliate_id,
                source_event_id=event.source_event_id,
                source_object_id=event.source_object_id,
                split_index=index,
                ref_code_id=touch.ref_code_id,
                touch_id=touch.id,
                commission_plan_id=rate.plan_id,
                product_rule_id=rate.rule_id,
                attribution_model=attribution.model,
                attribution_weight_bps=weight_splits[index],
                order_amount_cents=order_splits[index],
                commission_amount_cents=commission_splits[index],
                commission_type=rate.commission_type,
                percent_bps=rate.percent_bps if rate.commission_type == CommissionType.PERCENT else None,
                is_first_payment=event.is_first_payment,
                is_recurring=event.is_recurring,
                status=CommissionEventStatus.PENDING.value,
                occurred_at=occurred_at,
                hold_until=hold_until + timedelta(days=settings.FRAUD_HOLD_EXTENSION_DAYS) if flagged else hold_until,
                is_risk_flagged=flagged,
                risk_reasons=decision.reasons or None,
                extra_data={
                    "rate_source": rate.source,
                    "attribution_confidence": attribution.confidence,
                    "matched_by": attribution.matched_by,
                    "product_sku": event.product_sku,
                    "product_category": event.product_category,
                    **breakdown.as_extra_data(),
                },
            )
            self.db.add(commission_event)
            created.append(commission_event)
            first_event_for.setdefault(touch.affiliate_id, commission_event)

            agg = totals.setdefault(touch.affiliate_id, {"revenue": 0, "commission": 0})
            agg["revenue"] += order_splits[index]
            agg["commission"] += commission_splits[index]

        await self.db.flush()

        for affiliate_id, agg in totals.items():
            await self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == affiliate_id)
                .values(
                    lifetime_conversions=Affiliate.lifetime_conversions + 1,
                    lifetime_revenue_cents=Affiliate.lifetime_revenue_cents + agg["revenue"],
                    lifetime_commission_cents=Affiliate.lifetime_commission_cents + agg["commission"],
                )
            )

        if created and breakdown.promotion_ids:
            await self.db.execute(
                update(CommissionPromotion)
                .where(CommissionPromotion.id.in_(breakdown.promotion_ids))
                .values(uses_count=CommissionPromotion.uses_count + 1)
            )

        for affiliate_id, decision in decisions.items():
            if decision.is_allowed:
                continue
            linked_event = first_event_for.get(affiliate_id)
            await self.fraud_service.record_alerts(
                decision,
                clinic_id=event.clinic_id,
                affiliate_id=affiliate_id,
                commission_event_id=linked_event.id if linked_event else None,
                touch_id=next(t.id for t in touches if t.affiliate_id == affiliate_id),
                source_event_id=event.source_event_id,
            )

        await self.db.commit()

        worst = self._worst_decision(decisions.values())
        if not created:
            logger.warning(f"Conversion {event.source_event_id} blocked by fraud checks")
            return CommissionResult(
                success=True,
                skipped=True,
                skip_reason="Blocked by fraud checks",
                fraud_decision=worst,
            )

        amount = sum(e.commission_amount_cents for e in created)
        logger.info(
            f"Created {len(created)} commission event(s) for {event.source_event_id}: "
            f"{amount} cents, model={attribution.model}, fraud={worst}"
        )
        return CommissionResult(
            success=True,
            commission_event_ids=[e.id for e in created],
            commission_amount_cents=amount,
            fraud_decision=worst,
        )

    @staticmethod
    def _worst_decision(decisions) -> str:
        order = [FraudDecisionType.ALLOW, FraudDecisionType.HOLD, FraudDecisionType.BLOCK]
        worst = FraudDecisionType.ALLOW
        for d in decisions:
            if order.index(d.decision) > order.index(worst):
                worst = d.decision
        return worst.value
