"""
Clinic admin endpoints for affiliates, ref codes, commission plans
(with rules, tiers and promotions) and program settings.

Static paths are declared before /{affiliate_id} so they are not captured
by the affiliate id route.
"""
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from affiliate_engine.api.deps import DB, AdminUser, to_http_exception
from affiliate_engine.core.exceptions import AffiliateEngineError
from affiliate_engine.models.affiliate import AffiliateStatus
from affiliate_engine.schemas.affiliate import (
    AffiliateCreate, AffiliateListResponse, AffiliateResponse, AffiliateUpdate,
    RefCodeCreate, RefCodeResponse, RefCodeUpdate,
)
from affiliate_engine.schemas.commission import (
    CommissionPlanCreate, CommissionPlanListResponse, CommissionPlanResponse, CommissionPlanUpdate,
    CommissionPromotionCreate, CommissionPromotionResponse, CommissionPromotionUpdate,
    CommissionTierCreate, CommissionTierResponse,
    ProductCommissionRuleCreate, ProductCommissionRuleResponse,
)
from affiliate_engine.schemas.program_settings import ProgramSettings, ProgramSettingsUpdate
from affiliate_engine.services.affiliate_service import AffiliateService
from affiliate_engine.services.program_settings_service import ProgramSettingsService
from affiliate_engine.services.ref_code_service import RefCodeService

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== Program Settings ====================

@router.get("/settings", response_model=ProgramSettings)
async def get_program_settings(db: DB, admin: AdminUser):
    """Effective settings: clinic overrides merged over the defaults."""
    return await ProgramSettingsService(db).get_settings(admin.clinic_id)


@router.put("/settings", response_model=ProgramSettings)
async def update_program_settings(payload: ProgramSettingsUpdate, db: DB, admin: AdminUser):
    """Partial update. Only keys present in the body are stored as overrides."""
    try:
        effective = await ProgramSettingsService(db).update_settings(
            admin.clinic_id, payload, updated_by=admin.user_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    await db.commit()
    return effective


# ==================== Commission Plans ====================

@router.get("/plans", response_model=CommissionPlanListResponse)
async def list_commission_plans(
    db: DB,
    admin: AdminUser,
    active_only: bool = False,
):
    plans = await AffiliateService(db).list_plans(admin.clinic_id, active_only=active_only)
    return CommissionPlanListResponse(
        items=[CommissionPlanResponse.model_validate(p) for p in plans],
        total=len(plans),
    )


@router.post("/plans", response_model=CommissionPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_commission_plan(payload: CommissionPlanCreate, db: DB, admin: AdminUser):
    plan = await AffiliateService(db).create_plan(admin.clinic_id, payload)
    await db.commit()
    await db.refresh(plan)
    return plan


@router.get("/plans/{plan_id}", response_model=CommissionPlanResponse)
async def get_commission_plan(plan_id: UUID, db: DB, admin: AdminUser):
    try:
        return await AffiliateService(db).get_plan(admin.clinic_id, plan_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)


@router.patch("/plans/{plan_id}", response_model=CommissionPlanResponse)
async def update_commission_plan(
    plan_id: UUID,
    payload: CommissionPlanUpdate,
    db: DB,
    admin: AdminUser,
):
    try:
        plan = await AffiliateService(db).update_plan(admin.clinic_id, plan_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    await db.refresh(plan)
    return plan


@router.post(
    "/plans/{plan_id}/rules",
    response_model=ProductCommissionRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_product_rule(
    plan_id: UUID,
    payload: ProductCommissionRuleCreate,
    db: DB,
    admin: AdminUser,
):
    """Add a product or bundle override to a plan."""
    try:
        rule = await AffiliateService(db).add_rule(admin.clinic_id, plan_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return rule


@router.patch("/plans/{plan_id}/rules/{rule_id}", response_model=ProductCommissionRuleResponse)
async def set_product_rule_active(
    plan_id: UUID,
    rule_id: UUID,
    db: DB,
    admin: AdminUser,
    is_active: bool = Query(...),
):
    try:
        rule = await AffiliateService(db).set_rule_active(admin.clinic_id, plan_id, rule_id, is_active)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return rule


@router.post(
    "/plans/{plan_id}/tiers",
    response_model=CommissionTierResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_commission_tier(
    plan_id: UUID,
    payload: CommissionTierCreate,
    db: DB,
    admin: AdminUser,
):
    """Add a performance tier; applies only while the plan has tier_enabled."""
    try:
        tier = await AffiliateService(db).add_tier(admin.clinic_id, plan_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return tier


@router.post(
    "/plans/{plan_id}/promotions",
    response_model=CommissionPromotionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_commission_promotion(
    plan_id: UUID,
    payload: CommissionPromotionCreate,
    db: DB,
    admin: AdminUser,
):
    try:
        promotion = await AffiliateService(db).add_promotion(admin.clinic_id, plan_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    await db.refresh(promotion)
    return promotion


@router.patch("/plans/{plan_id}/promotions/{promotion_id}", response_model=CommissionPromotionResponse)
async def update_commission_promotion(
    plan_id: UUID,
    promotion_id: UUID,
    payload: CommissionPromotionUpdate,
    db: DB,
    admin: AdminUser,
):
    try:
        promotion = await AffiliateService(db).update_promotion(admin.clinic_id, plan_id, promotion_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    await db.refresh(promotion)
    return promotion


# ==================== Ref Codes ====================

@router.patch("/ref-codes/{ref_code_id}", response_model=RefCodeResponse)
async def update_ref_code(
    ref_code_id: UUID,
    payload: RefCodeUpdate,
    db: DB,
    admin: AdminUser,
):
    """Activate or deactivate a ref code. Codes are never deleted."""
    try:
        ref_code = await RefCodeService(db).set_active(admin.clinic_id, ref_code_id, payload.is_active)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return ref_code


# ==================== Affiliates ====================

@router.get("", response_model=AffiliateListResponse)
async def list_affiliates(
    db: DB,
    admin: AdminUser,
    status: Optional[AffiliateStatus] = None,
    search: Optional[str] = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    items, total = await AffiliateService(db).list_affiliates(
        admin.clinic_id,
        status=status.value if status else None,
        search=search,
        skip=skip,
        limit=limit,
    )
    return AffiliateListResponse(
        items=[AffiliateResponse.model_validate(a) for a in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("", response_model=AffiliateResponse, status_code=status.HTTP_201_CREATED)
async def create_affiliate(payload: AffiliateCreate, db: DB, admin: AdminUser):
    """Register a platform user as an affiliate and issue their first ref code."""
    try:
        affiliate = await AffiliateService(db).create_affiliate(admin.clinic_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return affiliate


@router.get("/{affiliate_id}", response_model=AffiliateResponse)
async def get_affiliate(affiliate_id: UUID, db: DB, admin: AdminUser):
    try:
        return await AffiliateService(db).get_affiliate(admin.clinic_id, affiliate_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)


@router.patch("/{affiliate_id}", response_model=AffiliateResponse)
async def update_affiliate(
    affiliate_id: UUID,
    payload: AffiliateUpdate,
    db: DB,
    admin: AdminUser,
):
    try:
        affiliate = await AffiliateService(db).update_affiliate(admin.clinic_id, affiliate_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return affiliate


@router.get("/{affiliate_id}/ref-codes", response_model=List[RefCodeResponse])
async def list_ref_codes(affiliate_id: UUID, db: DB, admin: AdminUser):
    try:
        return await AffiliateService(db).list_ref_codes(admin.clinic_id, affiliate_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)


@router.post(
    "/{affiliate_id}/ref-codes",
    response_model=RefCodeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_ref_code(
    affiliate_id: UUID,
    payload: RefCodeCreate,
    db: DB,
    admin: AdminUser,
):
    service = AffiliateService(db)
    try:
        affiliate = await service.get_affiliate(admin.clinic_id, affiliate_id)
        ref_code = await RefCodeService(db).create_ref_code(
            affiliate, code=payload.ref_code, description=payload.description
        )
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return ref_code
