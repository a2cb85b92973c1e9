"""
Attribution Resolver

Selects which touch (or touches) earn credit for a conversion.

Models:
- FIRST_CLICK: earliest in-window touch not yet converted
- LAST_CLICK: most recent in-window touch
- LINEAR: every in-window touch, equal weight

New patients (first successful payment) use the clinic's
new_patient_model, everyone else the returning_patient_model.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.core.utils import ensure_utc
from affiliate_engine.models.commission import AttributionModel
from affiliate_engine.models.touch import AffiliateTouch, TouchType, ANONYMIZED_FINGERPRINT
from affiliate_engine.schemas.commission import ConversionEvent
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.ref_code_service import RefCodeService

logger = logging.getLogger(__name__)


@dataclass
class AttributionResult:
    """Touches credited for one conversion, ordered oldest first."""
    model: str
    touches: List[AffiliateTouch]
    confidence: str = "low"
    matched_by: List[str] = field(default_factory=list)

    @property
    def primary_touch(self) -> AffiliateTouch:
        return self.touches[0]

    @property
    def affiliate_id(self) -> uuid.UUID:
        return self.primary_touch.affiliate_id


def select_touches(candidates: Sequence[AffiliateTouch], model: str) -> List[AffiliateTouch]:
    """
    Apply an attribution model to in-window candidates sorted oldest first.

    Candidates already converted by the same patient are kept; touches
    converted by anyone else never reach this function.
    """
    if not candidates:
        return []
    if model == AttributionModel.FIRST_CLICK:
        return [candidates[0]]
    if model == AttributionModel.LAST_CLICK:
        return [candidates[-1]]
    if model == AttributionModel.LINEAR:
        return list(candidates)
    raise ValueError(f"Unknown attribution model: {model}")


def model_for_conversion(program: ProgramSettings, is_first_payment: bool) -> str:
    model = program.new_patient_model if is_first_payment else program.returning_patient_model
    return AttributionModel(model).value


class AttributionService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_candidate_touches(
        self,
        clinic_id: uuid.UUID,
        patient_id: uuid.UUID,
        occurred_at: datetime,
        window_days: int,
        visitor_fingerprint: Optional[str] = None,
        cookie_id: Optional[str] = None,
    ) -> List[AffiliateTouch]:
        """In-window touches for this visitor/patient, oldest first."""
        occurred_at = ensure_utc(occurred_at)
        window_start = occurred_at - timedelta(days=window_days)

        identity = [AffiliateTouch.converted_patient_id == patient_id]
        if visitor_fingerprint and visitor_fingerprint != ANONYMIZED_FINGERPRINT:
            identity.append(AffiliateTouch.visitor_fingerprint == visitor_fingerprint)
        if cookie_id:
            identity.append(AffiliateTouch.cookie_id == cookie_id)

        result = await self.db.execute(
            select(AffiliateTouch)
            .where(
                AffiliateTouch.clinic_id == clinic_id,
                AffiliateTouch.created_at >= window_start,
                AffiliateTouch.created_at <= occurred_at,
                or_(*identity),
                or_(
                    AffiliateTouch.converted_patient_id.is_(None),
                    AffiliateTouch.converted_patient_id == patient_id,
                ),
            )
            .order_by(AffiliateTouch.created_at.asc(), AffiliateTouch.id.asc())
        )
        return list(result.scalars().all())

    async def resolve(
        self,
        event: ConversionEvent,
        program: ProgramSettings,
        mark_converted: bool = True,
    ) -> Optional[AttributionResult]:
        """
        Resolve attribution for a conversion.

        When mark_converted is set, the selected touches are stamped with
        converted_at in the caller's transaction.
        """
        model = model_for_conversion(program, event.is_first_payment)
        candidates = await self.find_candidate_touches(
            clinic_id=event.clinic_id,
            patient_id=event.patient_id,
            occurred_at=event.occurred_at,
            window_days=program.cookie_window_days,
            visitor_fingerprint=event.visitor_fingerprint if program.enable_fingerprinting else None,
            cookie_id=event.cookie_id,
        )
        selected = select_touches(candidates, model)
        if not selected:
            return None

        primary = selected[0]
        matched_by = []
        if primary.converted_patient_id == event.patient_id:
            matched_by.append("patient")
        if event.visitor_fingerprint and primary.visitor_fingerprint == event.visitor_fingerprint:
            matched_by.append("fingerprint")
        if event.cookie_id and primary.cookie_id == event.cookie_id:
            matched_by.append("cookie")

        if "patient" in matched_by or "fingerprint" in matched_by:
            confidence = "high"
        elif "cookie" in matched_by:
            confidence = "medium"
        else:
            confidence = "low"

        if mark_converted:
            await self.mark_converted([t.id for t in selected], event.patient_id, ensure_utc(event.occurred_at))

        return AttributionResult(model=model, touches=selected, confidence=confidence, matched_by=matched_by)

    async def mark_converted(
        self,
        touch_ids: Sequence[uuid.UUID],
        patient_id: uuid.UUID,
        converted_at: datetime,
    ) -> int:
        """Stamp touches as converted. Already-converted touches are left untouched."""
        if not touch_ids:
            return 0
        result = await self.db.execute(
            update(AffiliateTouch)
            .where(
                AffiliateTouch.id.in_(list(touch_ids)),
                AffiliateTouch.converted_at.is_(None),
            )
            .values(converted_at=converted_at, converted_patient_id=patient_id)
        )
        return result.rowcount or 0

    async def attribute_from_intake(
        self,
        clinic_id: uuid.UUID,
        patient_id: uuid.UUID,
        promo_code: str,
        source: str = "intake_form",
    ) -> tuple[Optional[AffiliateTouch], Optional[str]]:
        """
        Link a patient to an affiliate from a code entered during intake.

        First attribution wins: a patient already linked to a touch is
        never re-attributed.

        Returns:
            (postback touch, None) on success or (None, skip reason)
        """
        existing = await self.db.execute(
            select(AffiliateTouch.id).where(
                and_(
                    AffiliateTouch.clinic_id == clinic_id,
                    AffiliateTouch.converted_patient_id == patient_id,
                )
            ).limit(1)
        )
        if existing.first() is not None:
            return None, "Patient already attributed"

        resolved = await RefCodeService(self.db).resolve(promo_code, clinic_id=clinic_id)
        if resolved is None:
            return None, "Invalid ref code"

        now = datetime.now(timezone.utc)
        touch = AffiliateTouch(
            clinic_id=clinic_id,
            affiliate_id=resolved.affiliate.id,
            ref_code_id=resolved.ref_code.id,
            ref_code=resolved.ref_code.ref_code,
            touch_type=TouchType.POSTBACK.value,
            visitor_fingerprint=f"patient:{patient_id}",
            utm_source=source[:255],
            converted_patient_id=patient_id,
            converted_at=now,
            created_at=now,
        )
        self.db.add(touch)
        await self.db.flush()

        logger.info(f"Patient {patient_id} attributed to affiliate {resolved.affiliate.id} from {source}")
        return touch, None
