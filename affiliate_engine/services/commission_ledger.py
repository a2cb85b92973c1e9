"""
Commission ledger lifecycle: approval, reversal, clawback and reporting.

Status writes are conditional UPDATEs guarded by the expected current
status, so concurrent jobs and webhooks can never move an event backwards
or reverse an event that was settled in the meantime.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.config import settings
from affiliate_engine.core.exceptions import AffiliateEngineError, NotFoundError
from affiliate_engine.models.affiliate import Affiliate
from affiliate_engine.models.commission import AffiliateCommissionEvent, CommissionEventStatus
from affiliate_engine.schemas.commission import (
    CommissionStatsResponse,
    CommissionStatusTotals,
    RefundEvent,
    ReversalResult,
)
from affiliate_engine.services.commission_state_machine import validate_transition
from affiliate_engine.services.program_settings_service import ProgramSettingsService

logger = logging.getLogger(__name__)


class CommissionLedgerService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_event(self, clinic_id: uuid.UUID, event_id: uuid.UUID) -> AffiliateCommissionEvent:
        result = await self.db.execute(
            select(AffiliateCommissionEvent).where(
                AffiliateCommissionEvent.id == event_id,
                AffiliateCommissionEvent.clinic_id == clinic_id,
            )
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise NotFoundError("Commission event not found")
        return event

    # ========================================================================
    # Approval
    # ========================================================================

    async def approve_matured(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
    ) -> Dict:
        """
        Approve PENDING events whose hold period has passed.

        Risk-flagged events are left for manual review. Commits after every
        batch so a timeout keeps the work already done.
        """
        now = now or datetime.now(timezone.utc)
        batch_size = batch_size or settings.APPROVAL_BATCH_SIZE
        max_batches = max_batches or settings.APPROVAL_MAX_BATCHES
        started = time.monotonic()

        approved = 0
        batches = 0
        timed_out = False

        while batches < max_batches:
            if time_budget_seconds is not None and time.monotonic() - started > time_budget_seconds:
                timed_out = True
                break

            result = await self.db.execute(
                select(AffiliateCommissionEvent.id)
                .where(
                    AffiliateCommissionEvent.status == CommissionEventStatus.PENDING.value,
                    AffiliateCommissionEvent.hold_until <= now,
                    AffiliateCommissionEvent.is_risk_flagged.is_(False),
                )
                .order_by(AffiliateCommissionEvent.hold_until.asc())
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            ids = [row[0] for row in result.all()]
            if not ids:
                break

            updated = await self.db.execute(
                update(AffiliateCommissionEvent)
                .where(
                    AffiliateCommissionEvent.id.in_(ids),
                    AffiliateCommissionEvent.status == CommissionEventStatus.PENDING.value,
                )
                .values(status=CommissionEventStatus.APPROVED.value, approved_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

            approved += updated.rowcount or 0
            batches += 1
            if len(ids) < batch_size:
                break

        if approved:
            logger.info(f"Approved {approved} matured commission event(s) in {batches} batch(es)")
        return {"approved": approved, "batches": batches, "timed_out": timed_out}

    async def approve_event(
        self,
        clinic_id: uuid.UUID,
        event_id: uuid.UUID,
        approved_by: Optional[uuid.UUID] = None,
    ) -> AffiliateCommissionEvent:
        """Manual approval; the only way a risk-flagged event becomes payable."""
        event = await self.get_event(clinic_id, event_id)
        validate_transition(event.status, CommissionEventStatus.APPROVED.value)

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(AffiliateCommissionEvent)
            .where(
                AffiliateCommissionEvent.id == event.id,
                AffiliateCommissionEvent.status == CommissionEventStatus.PENDING.value,
            )
            .values(status=CommissionEventStatus.APPROVED.value, approved_at=now, approved_by=approved_by)
        )
        if not result.rowcount:
            await self.db.refresh(event)
            validate_transition(event.status, CommissionEventStatus.APPROVED.value)

        await self.db.refresh(event)
        logger.info(f"Commission event {event.id} approved by {approved_by}")
        return event

    # ========================================================================
    # Reversal / clawback
    # ========================================================================

    async def _reverse_one(
        self,
        event: AffiliateCommissionEvent,
        reason: str,
        adjustment_source_id: str,
        now: datetime,
        result: ReversalResult,
    ) -> bool:
        """
        Reverse a single event in place, or write a negative adjustment when
        it is settled or locked into an in-flight payout.

        Returns True when the ledger changed.
        """
        if event.status == CommissionEventStatus.REVERSED.value:
            return False

        if event.status != CommissionEventStatus.PAID.value and event.payout_id is None:
            updated = await self.db.execute(
                update(AffiliateCommissionEvent)
                .where(
                    AffiliateCommissionEvent.id == event.id,
                    AffiliateCommissionEvent.status.in_(
                        [CommissionEventStatus.PENDING.value, CommissionEventStatus.APPROVED.value]
                    ),
                    AffiliateCommissionEvent.payout_id.is_(None),
                )
                .values(
                    status=CommissionEventStatus.REVERSED.value,
                    reversed_at=now,
                    reversal_reason=reason[:500],
                )
            )
            if updated.rowcount:
                result.reversed_event_ids.append(event.id)
                result.reversed_amount_cents += event.commission_amount_cents
                return True
            # Lost a race with payout linking or another reversal
            await self.db.refresh(event)
            if event.status == CommissionEventStatus.REVERSED.value:
                return False

        existing = await self.db.execute(
            select(AffiliateCommissionEvent.id).where(
                AffiliateCommissionEvent.adjusts_event_id == event.id,
                AffiliateCommissionEvent.is_adjustment.is_(True),
            ).limit(1)
        )
        if existing.first() is not None:
            return False

        adjustment = AffiliateCommissionEvent(
            clinic_id=event.clinic_id,
            affiliate_id=event.affiliate_id,
            source_event_id=adjustment_source_id,
            source_object_id=event.source_object_id,
            split_index=event.split_index,
            ref_code_id=event.ref_code_id,
            touch_id=event.touch_id,
            commission_plan_id=event.commission_plan_id,
            attribution_model=event.attribution_model,
            attribution_weight_bps=event.attribution_weight_bps,
            order_amount_cents=-event.order_amount_cents,
            commission_amount_cents=-event.commission_amount_cents,
            commission_type=event.commission_type,
            percent_bps=event.percent_bps,
            is_first_payment=event.is_first_payment,
            is_recurring=event.is_recurring,
            status=CommissionEventStatus.APPROVED.value,
            occurred_at=now,
            approved_at=now,
            reversal_reason=reason[:500],
            is_adjustment=True,
            adjusts_event_id=event.id,
            extra_data={"adjusted_status": event.status, "adjusted_payout_id": str(event.payout_id) if event.payout_id else None},
        )
        self.db.add(adjustment)
        await self.db.flush()
        result.adjustment_event_ids.append(adjustment.id)
        result.reversed_amount_cents += event.commission_amount_cents
        return True

    async def _decrement_lifetime(self, events: List[AffiliateCommissionEvent]) -> None:
        per_affiliate: Dict[uuid.UUID, Dict[str, int]] = {}
        for e in events:
            agg = per_affiliate.setdefault(e.affiliate_id, {"revenue": 0, "commission": 0})
            agg["revenue"] += e.order_amount_cents
            agg["commission"] += e.commission_amount_cents

        for affiliate_id, agg in per_affiliate.items():
            await self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == affiliate_id)
                .values(
                    lifetime_conversions=case(
                        (Affiliate.lifetime_conversions > 0, Affiliate.lifetime_conversions - 1),
                        else_=0,
                    ),
                    lifetime_revenue_cents=Affiliate.lifetime_revenue_cents - agg["revenue"],
                    lifetime_commission_cents=Affiliate.lifetime_commission_cents - agg["commission"],
                )
            )

    async def reverse_for_refund(self, refund: RefundEvent) -> ReversalResult:
        """
        Claw back every commission event of a refunded conversion.

        Owns its transaction. Replaying the same refund is a no-op.
        """
        program = await ProgramSettingsService(self.db).get_settings(refund.clinic_id)
        if not program.clawback_enabled:
            return ReversalResult(success=True, skipped=True, skip_reason="Clawback disabled")

        query = await self.db.execute(
            select(AffiliateCommissionEvent)
            .where(
                AffiliateCommissionEvent.clinic_id == refund.clinic_id,
                AffiliateCommissionEvent.source_event_id == refund.original_source_event_id,
                AffiliateCommissionEvent.is_adjustment.is_(False),
            )
            .order_by(AffiliateCommissionEvent.split_index)
        )
        events = list(query.scalars().all())
        if not events:
            return ReversalResult(success=True, skipped=True, skip_reason="No commission for source event")

        now = datetime.now(timezone.utc)
        result = ReversalResult(success=True)
        changed = []
        try:
            for event in events:
                if await self._reverse_one(event, refund.reason, refund.source_event_id, now, result):
                    changed.append(event)
            if changed:
                await self._decrement_lifetime(changed)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Refund {refund.source_event_id} already applied by a concurrent delivery")
            return ReversalResult(success=True, skipped=True, skip_reason="Already processed")

        if not changed:
            return ReversalResult(success=True, skipped=True, skip_reason="Already processed")

        logger.info(
            f"Refund {refund.source_event_id} clawed back {result.reversed_amount_cents} cents "
            f"({len(result.reversed_event_ids)} reversed, {len(result.adjustment_event_ids)} adjusted)"
        )
        return result

    async def reverse_event(
        self,
        clinic_id: uuid.UUID,
        event_id: uuid.UUID,
        reason: str,
        reversed_by: Optional[uuid.UUID] = None,
    ) -> ReversalResult:
        """Admin reversal of a single event."""
        event = await self.get_event(clinic_id, event_id)
        if event.is_adjustment:
            raise AffiliateEngineError("Adjustment events cannot be reversed", error_code="ADJUSTMENT_IMMUTABLE")
        if event.status == CommissionEventStatus.REVERSED.value:
            validate_transition(event.status, CommissionEventStatus.REVERSED.value)

        now = datetime.now(timezone.utc)
        result = ReversalResult(success=True)
        if await self._reverse_one(event, reason, f"manual-reversal:{event.id}", now, result):
            await self._decrement_lifetime([event])
            logger.info(f"Commission event {event.id} reversed by {reversed_by}: {reason}")
        else:
            result.skipped = True
            result.skip_reason = "Already reversed"
        return result

    # ========================================================================
    # Reporting
    # ========================================================================

    async def list_events(
        self,
        clinic_id: uuid.UUID,
        affiliate_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[AffiliateCommissionEvent], int]:
        filters = [AffiliateCommissionEvent.clinic_id == clinic_id]
        if affiliate_id:
            filters.append(AffiliateCommissionEvent.affiliate_id == affiliate_id)
        if status:
            filters.append(AffiliateCommissionEvent.status == status)

        total = (
            await self.db.execute(select(func.count(AffiliateCommissionEvent.id)).where(*filters))
        ).scalar() or 0
        result = await self.db.execute(
            select(AffiliateCommissionEvent)
            .where(*filters)
            .order_by(AffiliateCommissionEvent.occurred_at.desc(), AffiliateCommissionEvent.split_index)
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_stats(
        self,
        clinic_id: uuid.UUID,
        affiliate_id: Optional[uuid.UUID] = None,
    ) -> CommissionStatsResponse:
        filters = [AffiliateCommissionEvent.clinic_id == clinic_id]
        if affiliate_id:
            filters.append(AffiliateCommissionEvent.affiliate_id == affiliate_id)

        result = await self.db.execute(
            select(
                AffiliateCommissionEvent.status,
                func.count(AffiliateCommissionEvent.id),
                func.coalesce(func.sum(AffiliateCommissionEvent.commission_amount_cents), 0),
            )
            .where(*filters)
            .group_by(AffiliateCommissionEvent.status)
        )

        by_status = {s: CommissionStatusTotals() for s in CommissionEventStatus}
        for status, count, amount in result.all():
            by_status[CommissionEventStatus(status)] = CommissionStatusTotals(count=count, amount_cents=int(amount))

        return CommissionStatsResponse(
            by_status=by_status,
            total_count=sum(t.count for t in by_status.values()),
            total_amount_cents=sum(t.amount_cents for t in by_status.values()),
        )
