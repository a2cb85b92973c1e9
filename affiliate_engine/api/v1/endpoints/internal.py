"""
Service-to-service endpoints called by the billing and intake services.

Authenticated with the X-Webhook-Secret header. Conversion and refund
processing always answer 200 with a result body; failures are reported in
the body so the caller's retry policy can decide.
"""
import logging

from fastapi import APIRouter, Depends

from affiliate_engine.api.deps import DB, require_webhook_secret
from affiliate_engine.schemas.affiliate import IntakeAttributionRequest, IntakeAttributionResponse
from affiliate_engine.schemas.commission import CommissionResult, ConversionEvent, RefundEvent, ReversalResult
from affiliate_engine.services.attribution_service import AttributionService
from affiliate_engine.services.commission_ledger import CommissionLedgerService
from affiliate_engine.services.commission_service import CommissionService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_webhook_secret)])


@router.post("/conversions", response_model=CommissionResult)
async def process_conversion(event: ConversionEvent, db: DB):
    """Create commission for a successful payment. Safe to retry with the same source_event_id."""
    return await CommissionService(db).process_conversion(event)


@router.post("/refunds", response_model=ReversalResult)
async def process_refund(refund: RefundEvent, db: DB):
    """Claw back commission for a refunded or charged-back payment."""
    return await CommissionLedgerService(db).reverse_for_refund(refund)


@router.post("/intake-attribution", response_model=IntakeAttributionResponse)
async def attribute_from_intake(request: IntakeAttributionRequest, db: DB):
    """Link a patient to an affiliate from a promo code entered during intake."""
    touch, skip_reason = await AttributionService(db).attribute_from_intake(
        clinic_id=request.clinic_id,
        patient_id=request.patient_id,
        promo_code=request.promo_code,
        source=request.source,
    )
    if touch is None:
        return IntakeAttributionResponse(success=False, skip_reason=skip_reason)

    await db.commit()
    return IntakeAttributionResponse(success=True, touch_id=touch.id, affiliate_id=touch.affiliate_id)
