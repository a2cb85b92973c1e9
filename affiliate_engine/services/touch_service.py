"""
Touch Recorder

Persists one AffiliateTouch per qualifying visit. Recording a touch never
establishes attribution; the attribution resolver decides that later.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.config import settings
from affiliate_engine.core.security import hash_ip_address
from affiliate_engine.models.touch import AffiliateTouch
from affiliate_engine.schemas.affiliate import TouchCreate
from affiliate_engine.services.program_settings_service import ProgramSettingsService
from affiliate_engine.services.ref_code_service import RefCodeService

logger = logging.getLogger(__name__)


class TouchService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_touch(
        self,
        payload: TouchCreate,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        clinic_domain: Optional[str] = None,
    ) -> tuple[Optional[AffiliateTouch], str]:
        """
        Record a visit against a ref code.

        Returns:
            (touch or None when the ref code is not valid, cookie id to set on the visitor)
        """
        cookie_id = payload.cookie_id or uuid.uuid4().hex

        resolved = await RefCodeService(self.db).resolve(
            payload.ref_code,
            clinic_id=payload.clinic_id,
            clinic_domain=clinic_domain,
        )
        if resolved is None:
            return None, cookie_id

        program = await ProgramSettingsService(self.db).get_settings(resolved.clinic.id)

        if program.enable_fingerprinting and payload.visitor_fingerprint:
            fingerprint = payload.visitor_fingerprint
        else:
            fingerprint = f"cookie:{cookie_id}"

        sub_ids = payload.sub_ids[:settings.MAX_SUB_IDS] if program.enable_sub_ids else []
        sub_ids = sub_ids + [None] * (5 - len(sub_ids))

        touch = AffiliateTouch(
            clinic_id=resolved.clinic.id,
            affiliate_id=resolved.affiliate.id,
            ref_code_id=resolved.ref_code.id,
            ref_code=resolved.ref_code.ref_code,
            touch_type=payload.touch_type.value,
            visitor_fingerprint=fingerprint,
            cookie_id=cookie_id,
            ip_address_hash=hash_ip_address(ip_address) if ip_address else None,
            user_agent=user_agent[:1000] if user_agent else None,
            landing_page=payload.landing_page,
            referrer_url=payload.referrer_url,
            utm_source=payload.utm_source,
            utm_medium=payload.utm_medium,
            utm_campaign=payload.utm_campaign,
            utm_content=payload.utm_content,
            utm_term=payload.utm_term,
            sub_id1=sub_ids[0],
            sub_id2=sub_ids[1],
            sub_id3=sub_ids[2],
            sub_id4=sub_ids[3],
            sub_id5=sub_ids[4],
        )
        self.db.add(touch)
        await self.db.flush()

        logger.debug(f"Touch {touch.id} recorded for ref code {touch.ref_code}")
        return touch, cookie_id
