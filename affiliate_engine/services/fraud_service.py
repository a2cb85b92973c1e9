"""
Fraud Evaluator

Gates commission creation with an ALLOW / HOLD / BLOCK decision built
from velocity counts, duplicate-IP counts, IP intelligence flags,
self-referral signals and the affiliate's refund rate.

Policy (first match wins):
1. fraud checks disabled                -> ALLOW
2. Tor exit node and block_tor          -> BLOCK
3. proxy/VPN and block_proxy_vpn        -> BLOCK
4. patient email is the affiliate's     -> BLOCK (enable_self_referral_check)
5. any review finding                   -> HOLD (auto_hold_on_high_risk) else BLOCK
   (daily or per-IP cap, repeated own-IP touches, refund rate)
6. otherwise                            -> ALLOW
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Sequence

from sqlalchemy import case, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from affiliate_engine.config import settings
from affiliate_engine.core.exceptions import NotFoundError
from affiliate_engine.models.commission import AffiliateCommissionEvent, CommissionEventStatus
from affiliate_engine.models.fraud import (
    AffiliateFraudAlert,
    FraudAlertType,
    FraudAlertSeverity,
    FraudAlertStatus,
)
from affiliate_engine.models.touch import AffiliateTouch
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.ip_intel_service import IpIntelligenceClient, IpSignal

logger = logging.getLogger(__name__)


class FraudDecisionType(str, Enum):
    ALLOW = "ALLOW"
    HOLD = "HOLD"
    BLOCK = "BLOCK"


@dataclass
class FraudSignals:
    """Counts include the conversion being evaluated."""
    conversions_today: int = 1
    conversions_from_ip: int = 0
    ip: IpSignal = field(default_factory=IpSignal.no_signal)
    email_match: bool = False
    touches_from_ip: int = 0
    orders_in_window: int = 0
    refunds_in_window: int = 0

    @property
    def refund_rate_pct(self) -> float:
        if not self.orders_in_window:
            return 0.0
        return self.refunds_in_window * 100 / self.orders_in_window


@dataclass
class FraudFinding:
    alert_type: str
    severity: str
    description: str
    evidence: dict


@dataclass
class FraudDecision:
    decision: FraudDecisionType
    reasons: List[str] = field(default_factory=list)
    findings: List[FraudFinding] = field(default_factory=list)
    risk_score: int = 0

    @property
    def is_allowed(self) -> bool:
        return self.decision == FraudDecisionType.ALLOW


FINDING_REASONS = {
    FraudAlertType.VELOCITY_SPIKE.value: "daily_conversion_limit",
    FraudAlertType.DUPLICATE_IP.value: "ip_conversion_limit",
    FraudAlertType.SELF_REFERRAL.value: "self_referral_ip",
    FraudAlertType.REFUND_ABUSE.value: "refund_rate",
}

def evaluate_policy(signals: FraudSignals, program: ProgramSettings) -> FraudDecision:
    """Pure policy function; no I/O."""
    if not program.fraud_enabled:
        return FraudDecision(FraudDecisionType.ALLOW)

    if signals.ip.is_tor and program.block_tor:
        return FraudDecision(
            FraudDecisionType.BLOCK,
            reasons=["tor_exit_node"],
            findings=[FraudFinding(
                FraudAlertType.SUSPICIOUS_PATTERN.value,
                FraudAlertSeverity.CRITICAL.value,
                "Conversion from a Tor exit node",
                {"is_tor": True},
            )],
            risk_score=90,
        )

    if (signals.ip.is_proxy or signals.ip.is_vpn) and program.block_proxy_vpn:
        return FraudDecision(
            FraudDecisionType.BLOCK,
            reasons=["proxy_or_vpn"],
            findings=[FraudFinding(
                FraudAlertType.SUSPICIOUS_PATTERN.value,
                FraudAlertSeverity.HIGH.value,
                "Conversion through a proxy or VPN",
                {"is_proxy": signals.ip.is_proxy, "is_vpn": signals.ip.is_vpn},
            )],
            risk_score=70,
        )

    if program.enable_self_referral_check and signals.email_match:
        return FraudDecision(
            FraudDecisionType.BLOCK,
            reasons=["self_referral"],
            findings=[FraudFinding(
                FraudAlertType.SELF_REFERRAL.value,
                FraudAlertSeverity.CRITICAL.value,
                "Patient email matches the affiliate's own email",
                {"email_match": True},
            )],
            risk_score=95,
        )

    findings = []
    if signals.conversions_today > program.max_conversions_per_day:
        findings.append(FraudFinding(
            FraudAlertType.VELOCITY_SPIKE.value,
            FraudAlertSeverity.HIGH.value,
            f"{signals.conversions_today} conversions in 24h exceeds limit of {program.max_conversions_per_day}",
            {"conversions_today": signals.conversions_today, "limit": program.max_conversions_per_day},
        ))
    if signals.conversions_from_ip > program.max_conversions_per_ip:
        findings.append(FraudFinding(
            FraudAlertType.DUPLICATE_IP.value,
            FraudAlertSeverity.MEDIUM.value,
            f"{signals.conversions_from_ip} conversions from one IP exceeds limit of {program.max_conversions_per_ip}",
            {"conversions_from_ip": signals.conversions_from_ip, "limit": program.max_conversions_per_ip},
        ))
    if (
        program.enable_self_referral_check
        and signals.touches_from_ip > settings.FRAUD_SELF_REFERRAL_TOUCH_THRESHOLD
    ):
        findings.append(FraudFinding(
            FraudAlertType.SELF_REFERRAL.value,
            FraudAlertSeverity.HIGH.value,
            f"{signals.touches_from_ip} affiliate clicks from the converting IP",
            {"touches_from_ip": signals.touches_from_ip, "limit": settings.FRAUD_SELF_REFERRAL_TOUCH_THRESHOLD},
        ))
    if (
        signals.refunds_in_window >= program.min_refunds_for_alert
        and signals.refund_rate_pct > program.max_refund_rate_pct
    ):
        rate = round(signals.refund_rate_pct, 1)
        severe = signals.refund_rate_pct > program.max_refund_rate_pct * 2
        findings.append(FraudFinding(
            FraudAlertType.REFUND_ABUSE.value,
            FraudAlertSeverity.HIGH.value if severe else FraudAlertSeverity.MEDIUM.value,
            f"Refund rate {rate}% exceeds limit of {program.max_refund_rate_pct}%",
            {
                "refunds": signals.refunds_in_window,
                "orders": signals.orders_in_window,
                "refund_rate_pct": rate,
                "limit_pct": program.max_refund_rate_pct,
            },
        ))

    if findings:
        reasons = [FINDING_REASONS[f.alert_type] for f in findings]
        decision = FraudDecisionType.HOLD if program.auto_hold_on_high_risk else FraudDecisionType.BLOCK
        return FraudDecision(decision, reasons=reasons, findings=findings, risk_score=60)

    return FraudDecision(FraudDecisionType.ALLOW)


def emails_match(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()

class FraudService:

    def __init__(self, db: AsyncSession, ip_client: Optional[IpIntelligenceClient] = None):
        self.db = db
        self.ip_client = ip_client or IpIntelligenceClient()

    async def count_conversions_today(self, affiliate_id: uuid.UUID, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count(func.distinct(AffiliateCommissionEvent.source_event_id))).where(
                AffiliateCommissionEvent.affiliate_id == affiliate_id,
                AffiliateCommissionEvent.is_adjustment.is_(False),
                AffiliateCommissionEvent.status != CommissionEventStatus.REVERSED.value,
                AffiliateCommissionEvent.occurred_at >= now - timedelta(days=1),
            )
        )
        return result.scalar() or 0

    async def count_conversions_from_ip(
        self,
        affiliate_id: uuid.UUID,
        ip_hash: str,
        now: datetime,
        exclude_touch_ids: Sequence[uuid.UUID] = (),
    ) -> int:
        query = select(func.count(AffiliateTouch.id)).where(
            AffiliateTouch.affiliate_id == affiliate_id,
            AffiliateTouch.ip_address_hash == ip_hash,
            AffiliateTouch.converted_at.is_not(None),
            AffiliateTouch.converted_at >= now - timedelta(days=settings.FRAUD_IP_LOOKBACK_DAYS),
        )
        if exclude_touch_ids:
            query = query.where(AffiliateTouch.id.not_in(list(exclude_touch_ids)))
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def count_touches_from_ip(self, affiliate_id: uuid.UUID, ip_hash: str, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count(AffiliateTouch.id)).where(
                AffiliateTouch.affiliate_id == affiliate_id,
                AffiliateTouch.ip_address_hash == ip_hash,
                AffiliateTouch.created_at >= now - timedelta(days=settings.FRAUD_IP_LOOKBACK_DAYS),
            )
        )
        return result.scalar() or 0

    async def refund_counts(self, affiliate_id: uuid.UUID, now: datetime) -> tuple[int, int]:
        """(orders, refunded orders) for the affiliate over the refund lookback window."""
        refunded = case(
            (AffiliateCommissionEvent.status == CommissionEventStatus.REVERSED.value,
             AffiliateCommissionEvent.source_event_id),
        )
        result = await self.db.execute(
            select(
                func.count(func.distinct(AffiliateCommissionEvent.source_event_id)),
                func.count(func.distinct(refunded)),
            ).where(
                AffiliateCommissionEvent.affiliate_id == affiliate_id,
                AffiliateCommissionEvent.is_adjustment.is_(False),
                AffiliateCommissionEvent.occurred_at >= now - timedelta(days=settings.FRAUD_REFUND_LOOKBACK_DAYS),
            )
        )
        orders, refunds = result.one()
        return orders or 0, refunds or 0

    async def evaluate(
        self,
        affiliate_id: uuid.UUID,
        program: ProgramSettings,
        ip_address: Optional[str] = None,
        ip_hash: Optional[str] = None,
        current_touch_ids: Sequence[uuid.UUID] = (),
        now: Optional[datetime] = None,
        affiliate_email: Optional[str] = None,
        patient_email: Optional[str] = None,
    ) -> FraudDecision:
        """
        Evaluate a conversion before any commission event is written.

        IP intelligence failures are treated as no signal.
        """
        if not program.fraud_enabled:
            return FraudDecision(FraudDecisionType.ALLOW)

        now = now or datetime.now(timezone.utc)
        signals = FraudSignals()
        signals.conversions_today = await self.count_conversions_today(affiliate_id, now) + 1
        if ip_hash:
            signals.conversions_from_ip = await self.count_conversions_from_ip(
                affiliate_id, ip_hash, now, exclude_touch_ids=current_touch_ids
            ) + 1
        signals.ip = await self.ip_client.analyze(ip_address)
        if program.enable_self_referral_check:
            signals.email_match = emails_match(affiliate_email, patient_email)
            if ip_hash:
                signals.touches_from_ip = await self.count_touches_from_ip(affiliate_id, ip_hash, now)
        signals.orders_in_window, signals.refunds_in_window = await self.refund_counts(affiliate_id, now)

        decision = evaluate_policy(signals, program)
        if not decision.is_allowed:
            logger.warning(
                f"Fraud {decision.decision.value} for affiliate {affiliate_id}: {', '.join(decision.reasons)}"
            )
        return decision

    async def record_alerts(
        self,
        decision: FraudDecision,
        clinic_id: uuid.UUID,
        affiliate_id: uuid.UUID,
        commission_event_id: Optional[uuid.UUID] = None,
        touch_id: Optional[uuid.UUID] = None,
        source_event_id: Optional[str] = None,
    ) -> List[AffiliateFraudAlert]:
        alerts = []
        for finding in decision.findings:
            alert = AffiliateFraudAlert(
                clinic_id=clinic_id,
                affiliate_id=affiliate_id,
                commission_event_id=commission_event_id,
                touch_id=touch_id,
                source_event_id=source_event_id,
                alert_type=finding.alert_type,
                severity=finding.severity,
                decision=decision.decision.value,
                risk_score=decision.risk_score,
                description=finding.description,
                evidence=finding.evidence,
            )
            self.db.add(alert)
            alerts.append(alert)
        if alerts:
            await self.db.flush()
        return alerts

    # ========================================================================
    # Review queue
    # ========================================================================

    async def list_alerts(
        self,
        clinic_id: uuid.UUID,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[List[AffiliateFraudAlert], int]:
        filters = [AffiliateFraudAlert.clinic_id == clinic_id]
        if status:
            filters.append(AffiliateFraudAlert.status == status)

        total = (await self.db.execute(select(func.count(AffiliateFraudAlert.id)).where(*filters))).scalar() or 0
        result = await self.db.execute(
            select(AffiliateFraudAlert)
            .where(*filters)
            .order_by(AffiliateFraudAlert.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def resolve_alert(
        self,
        clinic_id: uuid.UUID,
        alert_id: uuid.UUID,
        status: FraudAlertStatus,
        resolved_by: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
    ) -> AffiliateFraudAlert:
        if status == FraudAlertStatus.OPEN:
            raise ValueError("Resolution status cannot be OPEN")

        result = await self.db.execute(
            select(AffiliateFraudAlert).where(
                AffiliateFraudAlert.id == alert_id,
                AffiliateFraudAlert.clinic_id == clinic_id,
            )
        )
        alert = result.scalar_one_or_none()
        if alert is None:
            raise NotFoundError("Fraud alert not found")

        alert.status = status.value
        alert.resolved_at = datetime.now(timezone.utc)
        alert.resolved_by = resolved_by
        alert.resolution_notes = notes
        await self.db.flush()
        logger.info(f"Fraud alert {alert_id} resolved as {status.value}")
        return alert
