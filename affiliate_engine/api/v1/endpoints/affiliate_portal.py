"""Endpoints for the signed-in affiliate."""
from fastapi import APIRouter, Query

from affiliate_engine.api.deps import DB, AffiliateUser, to_http_exception
from affiliate_engine.core.exceptions import AffiliateEngineError
from affiliate_engine.schemas.affiliate import EarningsSummary
from affiliate_engine.services.affiliate_service import AffiliateService

router = APIRouter()


@router.get("/me/earnings", response_model=EarningsSummary)
async def get_my_earnings(
    db: DB,
    principal: AffiliateUser,
    recent: int = Query(10, ge=1, le=50),
):
    """Balances plus recent commission and payout history."""
    service = AffiliateService(db)
    try:
        affiliate = await service.get_affiliate_for_user(principal.clinic_id, principal.user_id)
    except AffiliateEngineError as e:
        raise to_http_exception(e)
    return await service.get_earnings_summary(affiliate, recent_limit=recent)
