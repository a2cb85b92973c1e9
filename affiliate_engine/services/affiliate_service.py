"""
Affiliate administration and the affiliate portal.

Covers affiliate CRUD with ref codes, commission plans with product
rules, tiers and promotions, and the earnings summary shown to a signed-in affiliate.
"""
import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.core.exceptions import ConflictError, InvalidConfigurationError, NotFoundError
from affiliate_engine.core.utils import ensure_utc
from affiliate_engine.models.affiliate import Affiliate, AffiliateRefCode
from affiliate_engine.models.commission import (
    AffiliateCommissionEvent,
    CommissionEventStatus,
    CommissionPlan,
    CommissionPromotion,
    CommissionTier,
    CommissionType,
    ProductCommissionRule,
)
from affiliate_engine.models.payout import AffiliatePayout, PayoutStatus
from affiliate_engine.schemas.affiliate import AffiliateCreate, AffiliateUpdate, EarningsSummary
from affiliate_engine.schemas.commission import (
    CommissionEventResponse,
    CommissionPlanCreate,
    CommissionPlanUpdate,
    CommissionPromotionCreate,
    CommissionPromotionUpdate,
    CommissionTierCreate,
    ProductCommissionRuleCreate,
    validate_rate,
)
from affiliate_engine.schemas.payout import PayoutResponse
from affiliate_engine.services.program_settings_service import ProgramSettingsService
from affiliate_engine.services.ref_code_service import RefCodeService

logger = logging.getLogger(__name__)


class AffiliateService:

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # Affiliates
    # ========================================================================

    async def get_affiliate(self, clinic_id: uuid.UUID, affiliate_id: uuid.UUID) -> Affiliate:
        result = await self.db.execute(
            select(Affiliate).where(Affiliate.id == affiliate_id, Affiliate.clinic_id == clinic_id)
        )
        affiliate = result.scalar_one_or_none()
        if affiliate is None:
            raise NotFoundError("Affiliate not found")
        return affiliate

    async def get_affiliate_for_user(self, clinic_id: uuid.UUID, user_id: uuid.UUID) -> Affiliate:
        result = await self.db.execute(
            select(Affiliate).where(Affiliate.clinic_id == clinic_id, Affiliate.user_id == user_id)
        )
        affiliate = result.scalar_one_or_none()
        if affiliate is None:
            raise NotFoundError("No affiliate account for this user")
        return affiliate

    async def list_affiliates(
        self,
        clinic_id: uuid.UUID,
        status: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Affiliate], int]:
        filters = [Affiliate.clinic_id == clinic_id]
        if status:
            filters.append(Affiliate.status == status)
        if search:
            filters.append(Affiliate.display_name.ilike(f"%{search}%"))

        total = (await self.db.execute(select(func.count(Affiliate.id)).where(*filters))).scalar() or 0
        result = await self.db.execute(
            select(Affiliate).where(*filters).order_by(Affiliate.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total

    async def _check_plan(self, clinic_id: uuid.UUID, plan_id: Optional[uuid.UUID]) -> None:
        if plan_id is None:
            return
        await self.get_plan(clinic_id, plan_id)

    async def create_affiliate(self, clinic_id: uuid.UUID, data: AffiliateCreate) -> Affiliate:
        """Create an affiliate together with its first ref code (generated when not given)."""
        await self._check_plan(clinic_id, data.commission_plan_id)

        existing = await self.db.execute(
            select(Affiliate.id).where(Affiliate.clinic_id == clinic_id, Affiliate.user_id == data.user_id)
        )
        if existing.first() is not None:
            raise ConflictError(
                "User is already an affiliate of this clinic",
                error_code="DUPLICATE_AFFILIATE",
                details={"user_id": str(data.user_id)},
            )

        affiliate = Affiliate(
            clinic_id=clinic_id,
            user_id=data.user_id,
            display_name=data.display_name,
            email=data.email,
            commission_plan_id=data.commission_plan_id,
            payout_method_type=data.payout_method_type.value if data.payout_method_type else None,
            payout_method_reference=data.payout_method_reference,
        )
        self.db.add(affiliate)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("User is already an affiliate of this clinic", error_code="DUPLICATE_AFFILIATE")

        await RefCodeService(self.db).create_ref_code(affiliate, data.ref_code)
        logger.info(f"Affiliate {affiliate.display_name} ({affiliate.id}) created for clinic {clinic_id}")
        return affiliate

    async def update_affiliate(
        self,
        clinic_id: uuid.UUID,
        affiliate_id: uuid.UUID,
        data: AffiliateUpdate,
    ) -> Affiliate:
        affiliate = await self.get_affiliate(clinic_id, affiliate_id)
        changes = data.model_dump(exclude_unset=True)
        if "commission_plan_id" in changes:
            await self._check_plan(clinic_id, changes["commission_plan_id"])

        for field, value in changes.items():
            if hasattr(value, "value"):
                value = value.value
            setattr(affiliate, field, value)
        await self.db.flush()

        if "status" in changes:
            logger.info(f"Affiliate {affiliate.id} status set to {affiliate.status}")
        return affiliate

    async def list_ref_codes(self, clinic_id: uuid.UUID, affiliate_id: uuid.UUID) -> List[AffiliateRefCode]:
        await self.get_affiliate(clinic_id, affiliate_id)
        result = await self.db.execute(
            select(AffiliateRefCode)
            .where(AffiliateRefCode.affiliate_id == affiliate_id)
            .order_by(AffiliateRefCode.created_at)
        )
        return list(result.scalars().all())

    # ========================================================================
    # Commission plans
    # ========================================================================

    async def get_plan(self, clinic_id: uuid.UUID, plan_id: uuid.UUID) -> CommissionPlan:
        result = await self.db.execute(
            select(CommissionPlan).where(CommissionPlan.id == plan_id, CommissionPlan.clinic_id == clinic_id)
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            raise NotFoundError("Commission plan not found")
        return plan

    async def list_plans(self, clinic_id: uuid.UUID, active_only: bool = False) -> List[CommissionPlan]:
        query = select(CommissionPlan).where(CommissionPlan.clinic_id == clinic_id)
        if active_only:
            query = query.where(CommissionPlan.is_active.is_(True))
        result = await self.db.execute(query.order_by(CommissionPlan.created_at))
        return list(result.scalars().all())

    async def _clear_default(self, clinic_id: uuid.UUID, keep_id: Optional[uuid.UUID] = None) -> None:
        query = update(CommissionPlan).where(
            CommissionPlan.clinic_id == clinic_id,
            CommissionPlan.is_default.is_(True),
        )
        if keep_id is not None:
            query = query.where(CommissionPlan.id != keep_id)
        await self.db.execute(query.values(is_default=False).execution_options(synchronize_session="fetch"))

    async def create_plan(self, clinic_id: uuid.UUID, data: CommissionPlanCreate) -> CommissionPlan:
        if data.is_default:
            await self._clear_default(clinic_id)

        plan = CommissionPlan(clinic_id=clinic_id, **data.model_dump(mode="json"))
        self.db.add(plan)
        await self.db.flush()
        await self.db.refresh(plan, attribute_names=["rules", "tiers", "promotions"])
        logger.info(f"Commission plan '{plan.name}' created for clinic {clinic_id}")
        return plan

    async def update_plan(
        self,
        clinic_id: uuid.UUID,
        plan_id: uuid.UUID,
        data: CommissionPlanUpdate,
    ) -> CommissionPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        changes = data.model_dump(exclude_unset=True, mode="json")

        commission_type = changes.get("commission_type", plan.commission_type)
        if commission_type != plan.commission_type:
            # Switching type drops the old type's amount unless it was sent explicitly
            stale = "flat_amount_cents" if commission_type == CommissionType.PERCENT else "percent_bps"
            changes.setdefault(stale, None)
        try:
            validate_rate(
                commission_type,
                changes.get("percent_bps", plan.percent_bps),
                changes.get("flat_amount_cents", plan.flat_amount_cents),
            )
        except ValueError as e:
            raise InvalidConfigurationError(str(e), error_code="INVALID_COMMISSION_PLAN")

        if changes.get("is_default"):
            await self._clear_default(clinic_id, keep_id=plan.id)

        for field, value in changes.items():
            setattr(plan, field, value)
        await self.db.flush()
        return plan

    async def add_rule(
        self,
        clinic_id: uuid.UUID,
        plan_id: uuid.UUID,
        data: ProductCommissionRuleCreate,
    ) -> ProductCommissionRule:
        plan = await self.get_plan(clinic_id, plan_id)
        rule = ProductCommissionRule(plan_id=plan.id, **data.model_dump(mode="json"))
        self.db.add(rule)
        await self.db.flush()
        await self.db.refresh(plan, attribute_names=["rules"])
        return rule

    async def set_rule_active(
        self,
        clinic_id: uuid.UUID,
        plan_id: uuid.UUID,
        rule_id: uuid.UUID,
        is_active: bool,
    ) -> ProductCommissionRule:
        plan = await self.get_plan(clinic_id, plan_id)
        rule = next((r for r in plan.rules if r.id == rule_id), None)
        if rule is None:
            raise NotFoundError("Product rule not found")
        rule.is_active = is_active
        await self.db.flush()
        return rule

    async def add_tier(
        self,
        clinic_id: uuid.UUID,
        plan_id: uuid.UUID,
        data: CommissionTierCreate,
    ) -> CommissionTier:
        plan = await self.get_plan(clinic_id, plan_id)
        if any(t.level == data.level or t.name == data.name for t in plan.tiers):
            raise ConflictError(
                f"Plan already has a tier named '{data.name}' or at level {data.level}",
                error_code="DUPLICATE_TIER",
            )
        tier = CommissionTier(plan_id=plan.id, **data.model_dump(mode="json"))
        self.db.add(tier)
        await self.db.flush()
        await self.db.refresh(plan, attribute_names=["tiers"])
        logger.info(f"Tier '{tier.name}' (level {tier.level}) added to plan {plan.id}")
        return tier

    async def add_promotion(
        self,
        clinic_id: uuid.UUID,
        plan_id: uuid.UUID,
        data: CommissionPromotionCreate,
    ) -> CommissionPromotion:
        plan = await self.get_plan(clinic_id, plan_id)
        values = data.model_dump(exclude={"starts_at", "ends_at"}, mode="json")
        promotion = CommissionPromotion(
            plan_id=plan.id,
            starts_at=data.starts_at,
            ends_at=data.ends_at,
            **values,
        )
        self.db.add(promotion)
        await self.db.flush()
        await self.db.refresh(plan, attribute_names=["promotions"])
        logger.info(f"Promotion '{promotion.name}' added to plan {plan.id}")
        return promotion

    async def update_promotion(
        self,
        clinic_id: uuid.UUID,
        plan_id: uuid.UUID,
        promotion_id: uuid.UUID,
        data: CommissionPromotionUpdate,
    ) -> CommissionPromotion:
        plan = await self.get_plan(clinic_id, plan_id)
        promotion = next((p for p in plan.promotions if p.id == promotion_id), None)
        if promotion is None:
            raise NotFoundError("Promotion not found")

        changes = data.model_dump(exclude_unset=True)
        if changes.get("ends_at") is not None and changes["ends_at"] <= ensure_utc(promotion.starts_at):
            raise InvalidConfigurationError("ends_at must be after starts_at", error_code="INVALID_PROMOTION")
        for field, value in changes.items():
            setattr(promotion, field, value)
        await self.db.flush()
        return promotion

    # ========================================================================
    # Affiliate portal
    # ========================================================================

    async def get_earnings_summary(self, affiliate: Affiliate, recent_limit: int = 10) -> EarningsSummary:
        """
        Balances for the affiliate portal.

        pending:    PENDING commission (inside hold or under review)
        available:  APPROVED commission not yet in a payout
        processing: net amount of PROCESSING payouts
        paid:       net amount of COMPLETED payouts
        """
        program = await ProgramSettingsService(self.db).get_settings(affiliate.clinic_id)

        pending = await self.db.execute(
            select(func.coalesce(func.sum(AffiliateCommissionEvent.commission_amount_cents), 0)).where(
                AffiliateCommissionEvent.affiliate_id == affiliate.id,
                AffiliateCommissionEvent.status == CommissionEventStatus.PENDING.value,
            )
        )
        available = await self.db.execute(
            select(func.coalesce(func.sum(AffiliateCommissionEvent.commission_amount_cents), 0)).where(
                AffiliateCommissionEvent.affiliate_id == affiliate.id,
                AffiliateCommissionEvent.status == CommissionEventStatus.APPROVED.value,
                AffiliateCommissionEvent.payout_id.is_(None),
            )
        )
        payouts = await self.db.execute(
            select(AffiliatePayout.status, func.coalesce(func.sum(AffiliatePayout.net_amount_cents), 0))
            .where(AffiliatePayout.affiliate_id == affiliate.id)
            .group_by(AffiliatePayout.status)
        )
        payout_totals = {status: int(amount) for status, amount in payouts.all()}

        recent_events = await self.db.execute(
            select(AffiliateCommissionEvent)
            .where(AffiliateCommissionEvent.affiliate_id == affiliate.id)
            .order_by(AffiliateCommissionEvent.occurred_at.desc())
            .limit(recent_limit)
        )
        recent_payouts = await self.db.execute(
            select(AffiliatePayout)
            .where(AffiliatePayout.affiliate_id == affiliate.id)
            .order_by(AffiliatePayout.processed_at.desc())
            .limit(recent_limit)
        )

        return EarningsSummary(
            affiliate_id=affiliate.id,
            display_name=affiliate.display_name,
            pending_balance_cents=int(pending.scalar()),
            available_balance_cents=int(available.scalar()),
            processing_payout_cents=payout_totals.get(PayoutStatus.PROCESSING.value, 0),
            lifetime_paid_cents=payout_totals.get(PayoutStatus.COMPLETED.value, 0),
            lifetime_commission_cents=affiliate.lifetime_commission_cents,
            lifetime_revenue_cents=affiliate.lifetime_revenue_cents,
            lifetime_conversions=affiliate.lifetime_conversions,
            minimum_payout_cents=program.minimum_payout_cents,
            payout_frequency=program.payout_frequency,
            recent_commissions=[CommissionEventResponse.model_validate(e) for e in recent_events.scalars().all()],
            recent_payouts=[PayoutResponse.model_validate(p) for p in recent_payouts.scalars().all()],
        )
