"""
Affiliate performance aggregation and the ad-hoc leaderboard.

affiliate_metric_totals() is shared with the competition engine so both
count clicks, conversions and revenue the same way.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

from sqlalchemy import exists, select, func
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.core.utils import format_cents, percent_of
from affiliate_engine.models.affiliate import Affiliate
from affiliate_engine.models.commission import AffiliateCommissionEvent, CommissionEventStatus
from affiliate_engine.models.touch import AffiliateTouch, TouchType
from affiliate_engine.schemas.competition import (
    LeaderboardEntry,
    LeaderboardMetric,
    LeaderboardPeriod,
    LeaderboardResponse,
)

logger = logging.getLogger(__name__)


@dataclass
class MetricTotals:
    clicks: int = 0
    conversions: int = 0
    revenue_cents: int = 0
    new_customers: int = 0

    @property
    def conversion_rate_bps(self) -> int:
        if not self.clicks:
            return 0
        return self.conversions * 10000 // self.clicks


def period_start(period: LeaderboardPeriod, now: datetime) -> Optional[datetime]:
    period = LeaderboardPeriod(period)
    if period == LeaderboardPeriod.LAST_7_DAYS:
        return now - timedelta(days=7)
    if period == LeaderboardPeriod.LAST_30_DAYS:
        return now - timedelta(days=30)
    if period == LeaderboardPeriod.LAST_90_DAYS:
        return now - timedelta(days=90)
    if period == LeaderboardPeriod.YEAR_TO_DATE:
        return datetime(now.year, 1, 1, tzinfo=timezone.utc)
    return None


async def affiliate_metric_totals(
    db: AsyncSession,
    clinic_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    affiliate_ids: Optional[Iterable[uuid.UUID]] = None,
) -> Dict[uuid.UUID, MetricTotals]:
    """
    Per-affiliate totals inside [start, end].

    Conversions count distinct source events that are neither reversed
    nor offset by a clawback adjustment; adjustment rows never count.
    """
    ids = list(affiliate_ids) if affiliate_ids is not None else None
    totals: Dict[uuid.UUID, MetricTotals] = {}

    touch_filters = [
        AffiliateTouch.clinic_id == clinic_id,
        AffiliateTouch.touch_type == TouchType.CLICK.value,
    ]
    if start is not None:
        touch_filters.append(AffiliateTouch.created_at >= start)
    if end is not None:
        touch_filters.append(AffiliateTouch.created_at <= end)
    if ids is not None:
        touch_filters.append(AffiliateTouch.affiliate_id.in_(ids))

    clicks = await db.execute(
        select(AffiliateTouch.affiliate_id, func.count(AffiliateTouch.id))
        .where(*touch_filters)
        .group_by(AffiliateTouch.affiliate_id)
    )
    for affiliate_id, count in clicks.all():
        totals.setdefault(affiliate_id, MetricTotals()).clicks = count

    clawback = aliased(AffiliateCommissionEvent)
    event_filters = [
        AffiliateCommissionEvent.clinic_id == clinic_id,
        AffiliateCommissionEvent.is_adjustment.is_(False),
        AffiliateCommissionEvent.status != CommissionEventStatus.REVERSED.value,
        ~exists().where(
            clawback.adjusts_event_id == AffiliateCommissionEvent.id,
            clawback.is_adjustment.is_(True),
        ),
    ]
    if start is not None:
        event_filters.append(AffiliateCommissionEvent.occurred_at >= start)
    if end is not None:
        event_filters.append(AffiliateCommissionEvent.occurred_at <= end)
    if ids is not None:
        event_filters.append(AffiliateCommissionEvent.affiliate_id.in_(ids))

    events = await db.execute(
        select(
            AffiliateCommissionEvent.affiliate_id,
            func.count(func.distinct(AffiliateCommissionEvent.source_event_id)),
            func.coalesce(func.sum(AffiliateCommissionEvent.order_amount_cents), 0),
        )
        .where(*event_filters)
        .group_by(AffiliateCommissionEvent.affiliate_id)
    )
    for affiliate_id, conversions, revenue in events.all():
        entry = totals.setdefault(affiliate_id, MetricTotals())
        entry.conversions = conversions
        entry.revenue_cents = int(revenue)

    first_payments = await db.execute(
        select(
            AffiliateCommissionEvent.affiliate_id,
            func.count(func.distinct(AffiliateCommissionEvent.source_event_id)),
        )
        .where(*event_filters, AffiliateCommissionEvent.is_first_payment.is_(True))
        .group_by(AffiliateCommissionEvent.affiliate_id)
    )
    for affiliate_id, count in first_payments.all():
        totals.setdefault(affiliate_id, MetricTotals()).new_customers = count

    return totals


def metric_value(totals: MetricTotals, metric: LeaderboardMetric) -> float:
    metric = LeaderboardMetric(metric)
    if metric == LeaderboardMetric.CLICKS:
        return totals.clicks
    if metric == LeaderboardMetric.CONVERSIONS:
        return totals.conversions
    if metric == LeaderboardMetric.REVENUE:
        return totals.revenue_cents
    return totals.conversion_rate_bps / 100


def format_metric(value: float, metric: LeaderboardMetric) -> str:
    metric = LeaderboardMetric(metric)
    if metric == LeaderboardMetric.REVENUE:
        return format_cents(int(value))
    if metric == LeaderboardMetric.CONVERSION_RATE:
        return f"{value:.2f}%"
    return f"{int(value):,}"


class LeaderboardService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_leaderboard(
        self,
        clinic_id: uuid.UUID,
        metric: LeaderboardMetric = LeaderboardMetric.REVENUE,
        period: LeaderboardPeriod = LeaderboardPeriod.LAST_30_DAYS,
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> LeaderboardResponse:
        """
        Rank affiliates by a metric over a trailing period.

        Affiliates with a zero value are left off the board. Ties are
        broken by display name.
        """
        if not 1 <= limit <= 100:
            raise ValueError("limit must be between 1 and 100")

        now = now or datetime.now(timezone.utc)
        totals = await affiliate_metric_totals(self.db, clinic_id, start=period_start(period, now), end=now)

        values = {aid: metric_value(t, metric) for aid, t in totals.items()}
        values = {aid: v for aid, v in values.items() if v > 0}
        if not values:
            return LeaderboardResponse(metric=metric, period=period, total=0, entries=[])

        result = await self.db.execute(
            select(Affiliate.id, Affiliate.display_name).where(
                Affiliate.clinic_id == clinic_id,
                Affiliate.id.in_(list(values)),
            )
        )
        names = dict(result.all())

        ranked = sorted(
            (aid for aid in values if aid in names),
            key=lambda aid: (-values[aid], names[aid]),
        )
        grand_total = sum(values[aid] for aid in ranked)

        entries = [
            LeaderboardEntry(
                rank=position,
                affiliate_id=aid,
                display_name=names[aid],
                value=values[aid],
                formatted_value=format_metric(values[aid], metric),
                percent_of_total=percent_of(values[aid], grand_total),
            )
            for position, aid in enumerate(ranked[:limit], start=1)
        ]
        return LeaderboardResponse(metric=metric, period=period, total=grand_total, entries=entries)
