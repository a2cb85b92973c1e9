"""
Public affiliate tracking endpoints (no authentication).

Responses never reveal why a ref code is not valid: unknown, inactive,
suspended and ambiguous codes all look the same to the caller.
"""
import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from affiliate_engine.api.deps import DB, get_client_ip
from affiliate_engine.core.security import hash_ip_address
from affiliate_engine.schemas.affiliate import PublicRefCodeResponse, TouchAcceptedResponse, TouchCreate
from affiliate_engine.services.cache_service import RateLimiter, get_touch_rate_limiter
from affiliate_engine.services.ref_code_service import RefCodeService
from affiliate_engine.services.touch_service import TouchService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/ref/{code}", response_model=PublicRefCodeResponse)
async def resolve_ref_code(
    code: str,
    request: Request,
    db: DB,
    clinic_id: Optional[UUID] = None,
):
    """Resolve a ref code for a landing page. Clinic context comes from clinic_id or the Host header."""
    return await RefCodeService(db).resolve_public(
        code,
        clinic_id=clinic_id,
        clinic_domain=None if clinic_id else request.headers.get("host"),
    )


@router.post("/touch", response_model=TouchAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def record_touch(
    payload: TouchCreate,
    request: Request,
    db: DB,
    limiter: Annotated[RateLimiter, Depends(get_touch_rate_limiter)],
):
    """Record a click or impression for a ref code."""
    ip_address = get_client_ip(request)
    identity = hash_ip_address(ip_address) if ip_address else "unknown"
    if not await limiter.hit("touch", identity):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many requests")

    touch, cookie_id = await TouchService(db).record_touch(
        payload,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
        clinic_domain=None if payload.clinic_id else request.headers.get("host"),
    )
    if touch is not None:
        await db.commit()

    return TouchAcceptedResponse(success=True, cookie_id=cookie_id)
