"""
Competition Ranking Engine

Competitions rank enrolled affiliates by one metric inside a date window.

- status comes from derive_competition_status() everywhere it is shown
  or stored
- values are recomputed from touches and commission events in the window
- ranks are persisted whenever any value changes: descending value, ties
  broken by the earlier entry
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.core.exceptions import AffiliateEngineError, NotFoundError
from affiliate_engine.core.utils import ensure_utc, format_cents
from affiliate_engine.models.affiliate import Affiliate, AffiliateStatus
from affiliate_engine.models.competition import (
    AffiliateCompetition,
    AffiliateCompetitionEntry,
    CompetitionMetric,
    CompetitionStatus,
)
from affiliate_engine.schemas.competition import (
    CompetitionCreate,
    CompetitionResponse,
    CompetitionStanding,
    CompetitionStandingsResponse,
    CompetitionUpdate,
)
from affiliate_engine.services.leaderboard_service import MetricTotals, affiliate_metric_totals

logger = logging.getLogger(__name__)


def derive_competition_status(
    start_date: datetime,
    end_date: datetime,
    now: datetime,
    is_cancelled: bool = False,
) -> CompetitionStatus:
    """SCHEDULED before start, ACTIVE through end, COMPLETED after. Cancellation wins."""
    if is_cancelled:
        return CompetitionStatus.CANCELLED
    now = ensure_utc(now)
    if now < ensure_utc(start_date):
        return CompetitionStatus.SCHEDULED
    if now <= ensure_utc(end_date):
        return CompetitionStatus.ACTIVE
    return CompetitionStatus.COMPLETED


def competition_value(totals: MetricTotals, metric: str) -> int:
    metric = CompetitionMetric(metric)
    if metric == CompetitionMetric.CLICKS:
        return totals.clicks
    if metric == CompetitionMetric.CONVERSIONS:
        return totals.conversions
    if metric == CompetitionMetric.REVENUE:
        return totals.revenue_cents
    if metric == CompetitionMetric.NEW_CUSTOMERS:
        return totals.new_customers
    return totals.conversion_rate_bps


def format_competition_value(value: int, metric: str) -> str:
    metric = CompetitionMetric(metric)
    if metric == CompetitionMetric.REVENUE:
        return format_cents(value)
    if metric == CompetitionMetric.CONVERSION_RATE:
        return f"{value / 100:.2f}%"
    return f"{value:,}"


def rank_entries(entries: List[AffiliateCompetitionEntry]) -> List[AffiliateCompetitionEntry]:
    """Assign 1-based ranks in place and return entries in rank order."""
    ordered = sorted(
        entries,
        key=lambda e: (-e.current_value, ensure_utc(e.created_at), str(e.id)),
    )
    for position, entry in enumerate(ordered, start=1):
        entry.rank = position
    return ordered


class CompetitionService:

    def __init__(self, db: AsyncSession):
        self.db = db

    def _sync_status(self, competition: AffiliateCompetition, now: Optional[datetime] = None) -> bool:
        status = derive_competition_status(
            competition.start_date,
            competition.end_date,
            now or datetime.now(timezone.utc),
            competition.is_cancelled,
        ).value
        if competition.status != status:
            competition.status = status
            return True
        return False

    async def get_competition(self, clinic_id: uuid.UUID, competition_id: uuid.UUID) -> AffiliateCompetition:
        result = await self.db.execute(
            select(AffiliateCompetition).where(
                AffiliateCompetition.id == competition_id,
                AffiliateCompetition.clinic_id == clinic_id,
            )
        )
        competition = result.scalar_one_or_none()
        if competition is None:
            raise NotFoundError("Competition not found")
        self._sync_status(competition)
        return competition

    async def list_competitions(
        self,
        clinic_id: uuid.UUID,
        status: Optional[CompetitionStatus] = None,
    ) -> Tuple[List[AffiliateCompetition], int]:
        result = await self.db.execute(
            select(AffiliateCompetition)
            .where(AffiliateCompetition.clinic_id == clinic_id)
            .order_by(AffiliateCompetition.start_date.desc())
        )
        competitions = list(result.scalars().all())
        if any([self._sync_status(c) for c in competitions]):
            await self.db.flush()

        if status is not None:
            competitions = [c for c in competitions if c.status == CompetitionStatus(status).value]
        return competitions, len(competitions)

    async def create_competition(
        self,
        clinic_id: uuid.UUID,
        data: CompetitionCreate,
    ) -> AffiliateCompetition:
        competition = AffiliateCompetition(
            clinic_id=clinic_id,
            name=data.name,
            description=data.description,
            metric=CompetitionMetric(data.metric).value,
            start_date=data.start_date,
            end_date=data.end_date,
            prize_description=data.prize_description,
            prize_value_cents=data.prize_value_cents,
            auto_enroll_all=data.auto_enroll_all,
        )
        self._sync_status(competition)
        self.db.add(competition)
        await self.db.flush()

        if competition.auto_enroll_all:
            await self.auto_enroll(competition)

        logger.info(f"Competition '{competition.name}' created for clinic {clinic_id} ({competition.status})")
        return competition

    async def update_competition(
        self,
        clinic_id: uuid.UUID,
        competition_id: uuid.UUID,
        data: CompetitionUpdate,
    ) -> AffiliateCompetition:
        competition = await self.get_competition(clinic_id, competition_id)
        if competition.status in (CompetitionStatus.COMPLETED.value, CompetitionStatus.CANCELLED.value):
            raise AffiliateEngineError(
                f"Cannot edit a {competition.status.lower()} competition",
                error_code="COMPETITION_CLOSED",
            )

        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(competition, field, value)

        if ensure_utc(competition.end_date) <= ensure_utc(competition.start_date):
            raise AffiliateEngineError("end_date must be after start_date", error_code="INVALID_WINDOW")

        self._sync_status(competition)
        await self.db.flush()
        return competition

    async def cancel_competition(self, clinic_id: uuid.UUID, competition_id: uuid.UUID) -> AffiliateCompetition:
        competition = await self.get_competition(clinic_id, competition_id)
        if competition.status == CompetitionStatus.COMPLETED.value:
            raise AffiliateEngineError("Cannot cancel a completed competition", error_code="COMPETITION_CLOSED")
        competition.is_cancelled = True
        self._sync_status(competition)
        await self.db.flush()
        logger.info(f"Competition {competition.id} cancelled")
        return competition

    # ========================================================================
    # Entries
    # ========================================================================

    async def _entries(self, competition_id: uuid.UUID) -> List[AffiliateCompetitionEntry]:
        result = await self.db.execute(
            select(AffiliateCompetitionEntry).where(AffiliateCompetitionEntry.competition_id == competition_id)
        )
        return list(result.scalars().all())

    async def auto_enroll(self, competition: AffiliateCompetition) -> int:
        """Add zero-valued entries for every active affiliate not yet enrolled."""
        enrolled = select(AffiliateCompetitionEntry.affiliate_id).where(
            AffiliateCompetitionEntry.competition_id == competition.id
        )
        result = await self.db.execute(
            select(Affiliate.id)
            .where(
                Affiliate.clinic_id == competition.clinic_id,
                Affiliate.status == AffiliateStatus.ACTIVE.value,
                Affiliate.id.not_in(enrolled),
            )
            .order_by(Affiliate.created_at)
        )
        added = 0
        for (affiliate_id,) in result.all():
            self.db.add(AffiliateCompetitionEntry(competition_id=competition.id, affiliate_id=affiliate_id))
            added += 1
        if added:
            await self.db.flush()
            await self.rerank(competition.id)
        return added

    async def enroll(
        self,
        clinic_id: uuid.UUID,
        competition_id: uuid.UUID,
        affiliate_id: uuid.UUID,
    ) -> AffiliateCompetitionEntry:
        competition = await self.get_competition(clinic_id, competition_id)
        if competition.status in (CompetitionStatus.COMPLETED.value, CompetitionStatus.CANCELLED.value):
            raise AffiliateEngineError("Competition is closed for enrollment", error_code="COMPETITION_CLOSED")

        affiliate = await self.db.get(Affiliate, affiliate_id)
        if affiliate is None or affiliate.clinic_id != clinic_id:
            raise NotFoundError("Affiliate not found")

        result = await self.db.execute(
            select(AffiliateCompetitionEntry).where(
                AffiliateCompetitionEntry.competition_id == competition.id,
                AffiliateCompetitionEntry.affiliate_id == affiliate_id,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is not None:
            return entry

        entry = AffiliateCompetitionEntry(competition_id=competition.id, affiliate_id=affiliate_id)
        self.db.add(entry)
        await self.db.flush()
        await self.rerank(competition.id)
        return entry

    async def rerank(self, competition_id: uuid.UUID) -> List[AffiliateCompetitionEntry]:
        ordered = rank_entries(await self._entries(competition_id))
        await self.db.flush()
        return ordered

    async def refresh_standings(self, competition: AffiliateCompetition, now: Optional[datetime] = None) -> int:
        """Recompute every entry's value from window data. Returns the number of changed entries."""
        now = now or datetime.now(timezone.utc)
        self._sync_status(competition, now)

        if competition.auto_enroll_all and competition.status == CompetitionStatus.ACTIVE.value:
            await self.auto_enroll(competition)

        entries = await self._entries(competition.id)
        if not entries:
            return 0

        window_end = min(ensure_utc(competition.end_date), ensure_utc(now))
        totals = await affiliate_metric_totals(
            self.db,
            competition.clinic_id,
            start=ensure_utc(competition.start_date),
            end=window_end,
            affiliate_ids=[e.affiliate_id for e in entries],
        )

        changed = 0
        for entry in entries:
            value = competition_value(totals.get(entry.affiliate_id, MetricTotals()), competition.metric)
            if entry.current_value != value:
                entry.current_value = value
                changed += 1

        if changed or any(e.rank is None for e in entries):
            rank_entries(entries)
        await self.db.flush()
        return changed

    async def refresh_all(self, now: Optional[datetime] = None) -> Dict:
        """
        Refresh standings of every competition that is running or has just
        finished. Finished competitions get one final refresh, after which
        their persisted status is COMPLETED and they are left alone.
        """
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(AffiliateCompetition).where(
                AffiliateCompetition.is_cancelled.is_(False),
                AffiliateCompetition.status.in_(
                    [CompetitionStatus.SCHEDULED.value, CompetitionStatus.ACTIVE.value]
                ),
            )
        )
        refreshed = 0
        entries_changed = 0
        for competition in result.scalars().all():
            if derive_competition_status(competition.start_date, competition.end_date, now) == CompetitionStatus.SCHEDULED:
                continue
            entries_changed += await self.refresh_standings(competition, now)
            refreshed += 1

        return {"competitions_refreshed": refreshed, "entries_changed": entries_changed}

    async def get_standings(self, clinic_id: uuid.UUID, competition_id: uuid.UUID) -> CompetitionStandingsResponse:
        competition = await self.get_competition(clinic_id, competition_id)

        result = await self.db.execute(
            select(AffiliateCompetitionEntry, Affiliate.display_name)
            .join(Affiliate, Affiliate.id == AffiliateCompetitionEntry.affiliate_id)
            .where(AffiliateCompetitionEntry.competition_id == competition.id)
            .order_by(
                func.coalesce(AffiliateCompetitionEntry.rank, 1_000_000),
                AffiliateCompetitionEntry.created_at,
            )
        )
        standings = [
            CompetitionStanding(
                rank=entry.rank,
                affiliate_id=entry.affiliate_id,
                display_name=display_name,
                current_value=entry.current_value,
                formatted_value=format_competition_value(entry.current_value, competition.metric),
            )
            for entry, display_name in result.all()
        ]
        return CompetitionStandingsResponse(
            competition=CompetitionResponse.model_validate(competition),
            standings=standings,
        )
