"""
Payout Batcher

Groups APPROVED, unlinked commission events per affiliate into one payout
per payout period and hands each payout to the payment rail.

Flow per affiliate:
1. lock the affiliate's approved unlinked events
2. create a PROCESSING payout keyed by (affiliate_id, period_key)
3. link the events and commit
4. call the payment rail outside the transaction
5. COMPLETED -> events PAID; FAILED -> events unlinked for the next cycle
"""
import logging
import time
import uuid
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.config import settings
from affiliate_engine.core.exceptions import NotFoundError, PaymentRailError
from affiliate_engine.models.affiliate import Affiliate, AffiliateStatus, PayoutMethodType
from affiliate_engine.models.clinic import Clinic
from affiliate_engine.models.commission import AffiliateCommissionEvent, CommissionEventStatus
from affiliate_engine.models.payout import AffiliatePayout, PayoutFrequency, PayoutStatus
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.commission_state_machine import validate_payout_transition
from affiliate_engine.services.payment_rail import PaymentRail, get_payment_rail
from affiliate_engine.services.program_settings_service import ProgramSettingsService

logger = logging.getLogger(__name__)


# =============================================================================
# PERIODS
# =============================================================================

def is_payout_day(frequency: str, day: date) -> bool:
    """WEEKLY: Mondays. BIWEEKLY: Mondays of even ISO weeks. MONTHLY: the 1st."""
    frequency = PayoutFrequency(frequency)
    if frequency == PayoutFrequency.MONTHLY:
        return day.day == 1
    if day.weekday() != 0:
        return False
    if frequency == PayoutFrequency.BIWEEKLY:
        return day.isocalendar()[1] % 2 == 0
    return True


def period_key_for(frequency: str, day: date) -> str:
    """Key of the payout period containing ``day``, e.g. 2026-10, 2026-W42, 2026-BW21."""
    frequency = PayoutFrequency(frequency)
    if frequency == PayoutFrequency.MONTHLY:
        return f"{day.year:04d}-{day.month:02d}"
    iso_year, iso_week, _ = day.isocalendar()
    if frequency == PayoutFrequency.BIWEEKLY:
        return f"{iso_year:04d}-BW{iso_week // 2:02d}"
    return f"{iso_year:04d}-W{iso_week:02d}"


def period_bounds(frequency: str, day: date) -> Tuple[datetime, datetime]:
    """UTC [start, end) of the payout period containing ``day``."""
    frequency = PayoutFrequency(frequency)
    if frequency == PayoutFrequency.MONTHLY:
        start = day.replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
    else:
        start = day - timedelta(days=day.weekday())
        if frequency == PayoutFrequency.BIWEEKLY and start.isocalendar()[1] % 2 == 1:
            start -= timedelta(days=7)
        end = start + timedelta(days=14 if frequency == PayoutFrequency.BIWEEKLY else 7)
    return (
        datetime.combine(start, dt_time.min, tzinfo=timezone.utc),
        datetime.combine(end, dt_time.min, tzinfo=timezone.utc),
    )


def payout_fee_cents(method_type: str) -> int:
    if method_type == PayoutMethodType.BANK_WIRE:
        return settings.BANK_WIRE_FEE_CENTS
    return 0


# =============================================================================
# SERVICE
# =============================================================================

class PayoutService:

    def __init__(self, db: AsyncSession, rail: Optional[PaymentRail] = None):
        self.db = db
        self.rail = rail or get_payment_rail()

    async def run_batch(
        self,
        now: Optional[datetime] = None,
        force: bool = False,
        clinic_id: Optional[uuid.UUID] = None,
        time_budget_seconds: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> Dict:
        """
        Settle every eligible affiliate of every (or one) active clinic.

        Clinics whose payout day is not today are skipped unless ``force``.
        """
        now = now or datetime.now(timezone.utc)
        limit = limit or settings.PAYOUT_BATCH_LIMIT
        started = time.monotonic()
        stats = {
            "clinics_processed": 0,
            "clinics_skipped": 0,
            "payouts_created": 0,
            "completed": 0,
            "processing": 0,
            "failed": 0,
            "total_net_cents": 0,
            "timed_out": False,
        }

        query = select(Clinic.id).where(Clinic.is_active.is_(True))
        if clinic_id:
            query = query.where(Clinic.id == clinic_id)
        clinic_ids = [row[0] for row in (await self.db.execute(query)).all()]

        for cid in clinic_ids:
            program = await ProgramSettingsService(self.db).get_settings(cid)
            if not force and not is_payout_day(program.payout_frequency, now.date()):
                stats["clinics_skipped"] += 1
                continue
            stats["clinics_processed"] += 1

            for affiliate_id in await self.eligible_affiliate_ids(cid, program.minimum_payout_cents):
                if stats["payouts_created"] >= limit:
                    break
                if time_budget_seconds is not None and time.monotonic() - started > time_budget_seconds:
                    stats["timed_out"] = True
                    break

                payout = await self.create_payout(affiliate_id, program, now)
                if payout is None:
                    continue
                stats["payouts_created"] += 1
                stats["total_net_cents"] += payout.net_amount_cents

                payout = await self.submit_to_rail(payout)
                if payout.status == PayoutStatus.COMPLETED.value:
                    stats["completed"] += 1
                elif payout.status == PayoutStatus.FAILED.value:
                    stats["failed"] += 1
                else:
                    stats["processing"] += 1

            if stats["timed_out"]:
                break

        logger.info(
            f"Payout batch: {stats['payouts_created']} payouts, {stats['completed']} completed, "
            f"{stats['processing']} processing, {stats['failed']} failed"
        )
        return stats

    async def eligible_affiliate_ids(self, clinic_id: uuid.UUID, minimum_payout_cents: int) -> List[uuid.UUID]:
        total = func.sum(AffiliateCommissionEvent.commission_amount_cents)
        result = await self.db.execute(
            select(AffiliateCommissionEvent.affiliate_id)
            .join(Affiliate, Affiliate.id == AffiliateCommissionEvent.affiliate_id)
            .where(
                AffiliateCommissionEvent.clinic_id == clinic_id,
                AffiliateCommissionEvent.status == CommissionEventStatus.APPROVED.value,
                AffiliateCommissionEvent.payout_id.is_(None),
                Affiliate.status == AffiliateStatus.ACTIVE.value,
                Affiliate.payout_method_type.is_not(None),
            )
            .group_by(AffiliateCommissionEvent.affiliate_id)
            .having(total >= max(minimum_payout_cents, 1))
            .order_by(total.desc())
        )
        return [row[0] for row in result.all()]

    async def create_payout(
        self,
        affiliate_id: uuid.UUID,
        program: ProgramSettings,
        now: datetime,
    ) -> Optional[AffiliatePayout]:
        """
        Create a PROCESSING payout and link the affiliate's approved events.

        Commits. Returns None when the affiliate is not eligible or already
        has a payout for this period.
        """
        affiliate = await self.db.get(Affiliate, affiliate_id)
        if affiliate is None or not affiliate.is_active or not affiliate.payout_method_type:
            return None

        period_key = period_key_for(program.payout_frequency, now.date())
        existing = await self.db.execute(
            select(AffiliatePayout.id).where(
                AffiliatePayout.affiliate_id == affiliate_id,
                AffiliatePayout.period_key == period_key,
            )
        )
        if existing.first() is not None:
            logger.info(f"Affiliate {affiliate_id} already has a payout for {period_key}")
            return None

        result = await self.db.execute(
            select(AffiliateCommissionEvent.id, AffiliateCommissionEvent.commission_amount_cents)
            .where(
                AffiliateCommissionEvent.affiliate_id == affiliate_id,
                AffiliateCommissionEvent.status == CommissionEventStatus.APPROVED.value,
                AffiliateCommissionEvent.payout_id.is_(None),
            )
            .with_for_update(skip_locked=True)
        )
        rows = result.all()
        gross = sum(amount for _, amount in rows)
        if not rows or gross < max(program.minimum_payout_cents, 1):
            await self.db.rollback()
            return None

        fee = payout_fee_cents(affiliate.payout_method_type)
        if gross - fee <= 0:
            await self.db.rollback()
            logger.info(f"Affiliate {affiliate_id} balance {gross} does not cover the {fee} cent fee")
            return None

        period_start, period_end = period_bounds(program.payout_frequency, now.date())
        payout = AffiliatePayout(
            clinic_id=affiliate.clinic_id,
            affiliate_id=affiliate_id,
            period_key=period_key,
            period_start=period_start,
            period_end=period_end,
            gross_amount_cents=gross,
            fee_cents=fee,
            net_amount_cents=gross - fee,
            event_count=len(rows),
            method_type=affiliate.payout_method_type,
            method_reference=affiliate.payout_method_reference,
            status=PayoutStatus.PROCESSING.value,
            processed_at=now,
        )
        try:
            self.db.add(payout)
            await self.db.flush()

            await self.db.execute(
                update(AffiliateCommissionEvent)
                .where(
                    AffiliateCommissionEvent.id.in_([event_id for event_id, _ in rows]),
                    AffiliateCommissionEvent.status == CommissionEventStatus.APPROVED.value,
                    AffiliateCommissionEvent.payout_id.is_(None),
                )
                .values(payout_id=payout.id)
                .execution_options(synchronize_session=False)
            )

            # Gross is re-read from what was actually linked
            linked = await self.db.execute(
                select(
                    func.count(AffiliateCommissionEvent.id),
                    func.coalesce(func.sum(AffiliateCommissionEvent.commission_amount_cents), 0),
                ).where(AffiliateCommissionEvent.payout_id == payout.id)
            )
            count, linked_gross = linked.one()
            payout.event_count = count
            payout.gross_amount_cents = int(linked_gross)
            payout.net_amount_cents = int(linked_gross) - fee

            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Payout for affiliate {affiliate_id} period {period_key} created concurrently")
            return None

        logger.info(
            f"Payout {payout.id} created for affiliate {affiliate_id}: "
            f"gross={payout.gross_amount_cents} fee={fee} events={payout.event_count}"
        )
        return payout

    async def submit_to_rail(self, payout: AffiliatePayout) -> AffiliatePayout:
        """Hand a PROCESSING payout to the rail and apply the outcome."""
        try:
            outcome = await self.rail.send(payout)
        except PaymentRailError as e:
            logger.warning(f"Payout {payout.id} failed on rail {self.rail.name}: {e.message}")
            return await self.fail_payout(payout.clinic_id, payout.id, e.message, commit=True)

        if outcome.status == PayoutStatus.COMPLETED.value:
            return await self.complete_payout(payout.clinic_id, payout.id, outcome.external_reference, commit=True)
        if outcome.status == PayoutStatus.FAILED.value:
            return await self.fail_payout(
                payout.clinic_id, payout.id, outcome.failure_reason or "Rejected by payment rail", commit=True
            )

        if outcome.external_reference:
            payout.external_reference = outcome.external_reference
            await self.db.commit()
        return payout

    async def get_payout(self, clinic_id: uuid.UUID, payout_id: uuid.UUID) -> AffiliatePayout:
        result = await self.db.execute(
            select(AffiliatePayout).where(
                AffiliatePayout.id == payout_id,
                AffiliatePayout.clinic_id == clinic_id,
            )
        )
        payout = result.scalar_one_or_none()
        if payout is None:
            raise NotFoundError("Payout not found")
        return payout

    async def complete_payout(
        self,
        clinic_id: uuid.UUID,
        payout_id: uuid.UUID,
        external_reference: Optional[str] = None,
        commit: bool = False,
    ) -> AffiliatePayout:
        """PROCESSING -> COMPLETED; linked events APPROVED -> PAID."""
        payout = await self.get_payout(clinic_id, payout_id)
        validate_payout_transition(payout.status, PayoutStatus.COMPLETED.value)

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(AffiliatePayout)
            .where(AffiliatePayout.id == payout.id, AffiliatePayout.status == PayoutStatus.PROCESSING.value)
            .values(
                status=PayoutStatus.COMPLETED.value,
                completed_at=now,
                external_reference=external_reference or payout.external_reference,
            )
        )
        if not result.rowcount:
            await self.db.refresh(payout)
            validate_payout_transition(payout.status, PayoutStatus.COMPLETED.value)

        await self.db.execute(
            update(AffiliateCommissionEvent)
            .where(
                AffiliateCommissionEvent.payout_id == payout.id,
                AffiliateCommissionEvent.status == CommissionEventStatus.APPROVED.value,
            )
            .values(status=CommissionEventStatus.PAID.value, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()
        await self.db.refresh(payout)

        logger.info(f"Payout {payout.id} completed ({payout.net_amount_cents} cents)")
        return payout

    async def fail_payout(
        self,
        clinic_id: uuid.UUID,
        payout_id: uuid.UUID,
        reason: str,
        commit: bool = False,
    ) -> AffiliatePayout:
        """PROCESSING -> FAILED; linked events unlinked and left APPROVED."""
        payout = await self.get_payout(clinic_id, payout_id)
        validate_payout_transition(payout.status, PayoutStatus.FAILED.value)

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(AffiliatePayout)
            .where(AffiliatePayout.id == payout.id, AffiliatePayout.status == PayoutStatus.PROCESSING.value)
            .values(status=PayoutStatus.FAILED.value, failed_at=now, failure_reason=reason)
        )
        if not result.rowcount:
            await self.db.refresh(payout)
            validate_payout_transition(payout.status, PayoutStatus.FAILED.value)

        unlinked = await self.db.execute(
            update(AffiliateCommissionEvent)
            .where(
                AffiliateCommissionEvent.payout_id == payout.id,
                AffiliateCommissionEvent.status == CommissionEventStatus.APPROVED.value,
            )
            .values(payout_id=None)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()
        await self.db.refresh(payout)

        logger.warning(f"Payout {payout.id} failed, {unlinked.rowcount} event(s) released: {reason}")
        return payout

    async def list_payouts(
        self,
        clinic_id: uuid.UUID,
        affiliate_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[AffiliatePayout], int]:
        filters = [AffiliatePayout.clinic_id == clinic_id]
        if affiliate_id:
            filters.append(AffiliatePayout.affiliate_id == affiliate_id)
        if status:
            filters.append(AffiliatePayout.status == status)

        total = (await self.db.execute(select(func.count(AffiliatePayout.id)).where(*filters))).scalar() or 0
        result = await self.db.execute(
            select(AffiliatePayout)
            .where(*filters)
            .order_by(AffiliatePayout.processed_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total
