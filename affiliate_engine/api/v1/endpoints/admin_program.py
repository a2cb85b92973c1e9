"""Clinic admin endpoints for the commission ledger, fraud review, payouts, leaderboard and competitions."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from affiliate_engine.api.deps import DB, AdminUser, to_http_exception
from affiliate_engine.core.exceptions import AffiliateEngineError
from affiliate_engine.models.commission import CommissionEventStatus
from affiliate_engine.models.competition import CompetitionStatus
from affiliate_engine.models.fraud import FraudAlertStatus
from affiliate_engine.models.payout import PayoutStatus
from affiliate_engine.schemas.commission import (
    CommissionEventListResponse, CommissionEventResponse, CommissionReverseRequest,
    CommissionStatsResponse, ReversalResult,
)
from affiliate_engine.schemas.competition import (
    CompetitionCreate, CompetitionListResponse, CompetitionResponse, CompetitionStandingsResponse,
    CompetitionUpdate, EnrollRequest, LeaderboardMetric, LeaderboardPeriod, LeaderboardResponse,
)
from affiliate_engine.schemas.fraud import FraudAlertListResponse, FraudAlertResolveRequest, FraudAlertResponse
from affiliate_engine.schemas.payout import (
    PayoutCompleteRequest, PayoutFailRequest, PayoutListResponse, PayoutResponse,
)
from affiliate_engine.services.commission_ledger import CommissionLedgerService
from affiliate_engine.services.competition_service import CompetitionService
from affiliate_engine.services.fraud_service import FraudService
from affiliate_engine.services.leaderboard_service import LeaderboardService
from affiliate_engine.services.payout_service import PayoutService

router = APIRouter()


# ==================== Commission Ledger ====================

@router.get("/commissions", response_model=CommissionEventListResponse)
async def list_commissions(
    db: DB,
    admin: AdminUser,
    affiliate_id: Optional[UUID] = None,
    status: Optional[CommissionEventStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List commission events for the admin's clinic, newest first."""
    items, total = await CommissionLedgerService(db).list_events(
        admin.clinic_id,
        affiliate_id=affiliate_id,
        status=status.value if status else None,
        skip=skip,
        limit=limit,
    )
    return CommissionEventListResponse(
        items=[CommissionEventResponse.model_validate(e) for e in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/commissions/stats", response_model=CommissionStatsResponse)
async def get_commission_stats(
    db: DB,
    admin: AdminUser,
    affiliate_id: Optional[UUID] = None,
):
    return await CommissionLedgerService(db).get_stats(admin.clinic_id, affiliate_id=affiliate_id)


@router.post("/commissions/{event_id}/approve", response_model=CommissionEventResponse)
async def approve_commission(event_id: UUID, db: DB, admin: AdminUser):
    """Approve a PENDING event early, including risk-flagged ones."""
    try:
        event = await CommissionLedgerService(db).approve_event(admin.clinic_id, event_id, approved_by=admin.user_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return event


@router.post("/commissions/{event_id}/reverse", response_model=ReversalResult)
async def reverse_commission(
    event_id: UUID,
    payload: CommissionReverseRequest,
    db: DB,
    admin: AdminUser,
):
    """Reverse an event. Paid events get a negative adjustment instead."""
    try:
        result = await CommissionLedgerService(db).reverse_event(
            admin.clinic_id, event_id, payload.reason, reversed_by=admin.user_id
        )
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return result


# ==================== Fraud Review ====================

@router.get("/fraud-alerts", response_model=FraudAlertListResponse)
async def list_fraud_alerts(
    db: DB,
    admin: AdminUser,
    status: Optional[FraudAlertStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    items, total = await FraudService(db).list_alerts(
        admin.clinic_id,
        status=status.value if status else None,
        skip=skip,
        limit=limit,
    )
    return FraudAlertListResponse(
        items=[FraudAlertResponse.model_validate(a) for a in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("/fraud-alerts/{alert_id}/resolve", response_model=FraudAlertResponse)
async def resolve_fraud_alert(
    alert_id: UUID,
    payload: FraudAlertResolveRequest,
    db: DB,
    admin: AdminUser,
):
    try:
        alert = await FraudService(db).resolve_alert(
            admin.clinic_id,
            alert_id,
            payload.status,
            resolved_by=admin.user_id,
            notes=payload.notes,
        )
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return alert


# ==================== Payouts ====================

@router.get("/payouts", response_model=PayoutListResponse)
async def list_payouts(
    db: DB,
    admin: AdminUser,
    affiliate_id: Optional[UUID] = None,
    status: Optional[PayoutStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    items, total = await PayoutService(db).list_payouts(
        admin.clinic_id,
        affiliate_id=affiliate_id,
        status=status.value if status else None,
        skip=skip,
        limit=limit,
    )
    return PayoutListResponse(
        items=[PayoutResponse.model_validate(p) for p in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("/payouts/{payout_id}/complete", response_model=PayoutResponse)
async def complete_payout(
    payout_id: UUID,
    payload: PayoutCompleteRequest,
    db: DB,
    admin: AdminUser,
):
    """Confirm a manually sent payout. Linked events become PAID."""
    try:
        payout = await PayoutService(db).complete_payout(
            admin.clinic_id, payout_id, external_reference=payload.external_reference
        )
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return payout


@router.post("/payouts/{payout_id}/fail", response_model=PayoutResponse)
async def fail_payout(
    payout_id: UUID,
    payload: PayoutFailRequest,
    db: DB,
    admin: AdminUser,
):
    """Mark a payout failed. Linked events return to the available balance."""
    try:
        payout = await PayoutService(db).fail_payout(admin.clinic_id, payout_id, payload.reason)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return payout


# ==================== Leaderboard ====================

@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    db: DB,
    admin: AdminUser,
    metric: LeaderboardMetric = LeaderboardMetric.REVENUE,
    period: LeaderboardPeriod = LeaderboardPeriod.LAST_30_DAYS,
    limit: int = Query(10, ge=1, le=100),
):
    try:
        return await LeaderboardService(db).get_leaderboard(admin.clinic_id, metric=metric, period=period, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# ==================== Competitions ====================

@router.get("/competitions", response_model=CompetitionListResponse)
async def list_competitions(
    db: DB,
    admin: AdminUser,
    status: Optional[CompetitionStatus] = None,
):
    items, total = await CompetitionService(db).list_competitions(admin.clinic_id, status=status)
    return CompetitionListResponse(
        items=[CompetitionResponse.model_validate(c) for c in items],
        total=total,
    )


@router.post("/competitions", response_model=CompetitionResponse, status_code=status.HTTP_201_CREATED)
async def create_competition(payload: CompetitionCreate, db: DB, admin: AdminUser):
    competition = await CompetitionService(db).create_competition(admin.clinic_id, payload)
    await db.commit()
    return competition


@router.get("/competitions/{competition_id}", response_model=CompetitionResponse)
async def get_competition(competition_id: UUID, db: DB, admin: AdminUser):
    try:
        return await CompetitionService(db).get_competition(admin.clinic_id, competition_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)


@router.patch("/competitions/{competition_id}", response_model=CompetitionResponse)
async def update_competition(
    competition_id: UUID,
    payload: CompetitionUpdate,
    db: DB,
    admin: AdminUser,
):
    try:
        competition = await CompetitionService(db).update_competition(admin.clinic_id, competition_id, payload)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return competition


@router.post("/competitions/{competition_id}/cancel", response_model=CompetitionResponse)
async def cancel_competition(competition_id: UUID, db: DB, admin: AdminUser):
    try:
        competition = await CompetitionService(db).cancel_competition(admin.clinic_id, competition_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return competition


@router.get("/competitions/{competition_id}/standings", response_model=CompetitionStandingsResponse)
async def get_competition_standings(competition_id: UUID, db: DB, admin: AdminUser):
    try:
        return await CompetitionService(db).get_standings(admin.clinic_id, competition_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)


@router.post("/competitions/{competition_id}/enroll", status_code=status.HTTP_201_CREATED)
async def enroll_in_competition(
    competition_id: UUID,
    payload: EnrollRequest,
    db: DB,
    admin: AdminUser,
):
    try:
        entry = await CompetitionService(db).enroll(admin.clinic_id, competition_id, payload.affiliate_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    await db.commit()
    return {"competition_id": competition_id, "affiliate_id": entry.affiliate_id, "rank": entry.rank}
