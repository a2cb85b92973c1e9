"""Fraud policy decisions, fraud signal queries, IP intelligence parsing and the review queue."""
import uuid

import httpx
import pytest

from affiliate_engine.core.exceptions import NotFoundError
from affiliate_engine.models.fraud import AffiliateFraudAlert, FraudAlertStatus
from affiliate_engine.schemas.program_settings import ProgramSettings
from affiliate_engine.services.cache_service import CacheService, InMemoryCache
from affiliate_engine.services.fraud_service import (
    FraudDecisionType,
    FraudService,
    FraudSignals,
    emails_match,
    evaluate_policy,
)
from affiliate_engine.services.ip_intel_service import IpIntelligenceClient, IpSignal


class TestEvaluatePolicy:

    def test_clean_conversion_allowed(self):
        decision = evaluate_policy(FraudSignals(conversions_today=3, conversions_from_ip=1), ProgramSettings())
        assert decision.decision == FraudDecisionType.ALLOW
        assert decision.is_allowed

    def test_daily_cap_exceeded_holds(self):
        decision = evaluate_policy(FraudSignals(conversions_today=60), ProgramSettings())
        assert decision.decision == FraudDecisionType.HOLD
        assert decision.reasons == ["daily_conversion_limit"]
        assert decision.findings[0].evidence == {"conversions_today": 60, "limit": 50}

    def test_cap_exceeded_blocks_without_auto_hold(self):
        program = ProgramSettings(auto_hold_on_high_risk=False)
        decision = evaluate_policy(FraudSignals(conversions_today=60), program)
        assert decision.decision == FraudDecisionType.BLOCK

    def test_exactly_at_cap_is_allowed(self):
        decision = evaluate_policy(FraudSignals(conversions_today=50), ProgramSettings())
        assert decision.is_allowed

    def test_ip_cap(self):
        decision = evaluate_policy(FraudSignals(conversions_from_ip=4), ProgramSettings())
        assert decision.decision == FraudDecisionType.HOLD
        assert decision.reasons == ["ip_conversion_limit"]

    def test_both_caps_report_both_reasons(self):
        decision = evaluate_policy(FraudSignals(conversions_today=51, conversions_from_ip=9), ProgramSettings())
        assert decision.reasons == ["daily_conversion_limit", "ip_conversion_limit"]
        assert len(decision.findings) == 2

    def test_tor_blocks(self):
        signals = FraudSignals(ip=IpSignal(is_tor=True, available=True))
        decision = evaluate_policy(signals, ProgramSettings())
        assert decision.decision == FraudDecisionType.BLOCK
        assert decision.reasons == ["tor_exit_node"]

    def test_tor_allowed_when_not_blocked(self):
        signals = FraudSignals(ip=IpSignal(is_tor=True, available=True))
        assert evaluate_policy(signals, ProgramSettings(block_tor=False)).is_allowed

    def test_vpn_only_blocked_when_configured(self):
        signals = FraudSignals(ip=IpSignal(is_vpn=True, available=True))
        assert evaluate_policy(signals, ProgramSettings()).is_allowed
        assert evaluate_policy(signals, ProgramSettings(block_proxy_vpn=True)).decision == FraudDecisionType.BLOCK

    def test_disabled_fraud_checks_allow_everything(self):
        signals = FraudSignals(conversions_today=500, ip=IpSignal(is_tor=True, available=True))
        assert evaluate_policy(signals, ProgramSettings(fraud_enabled=False)).is_allowed

    def test_own_email_blocks(self):
        decision = evaluate_policy(FraudSignals(email_match=True), ProgramSettings())
        assert decision.decision == FraudDecisionType.BLOCK
        assert decision.reasons == ["self_referral"]
        assert decision.findings[0].severity == "CRITICAL"

    def test_own_email_allowed_when_check_disabled(self):
        program = ProgramSettings(enable_self_referral_check=False)
        assert evaluate_policy(FraudSignals(email_match=True, touches_from_ip=50), program).is_allowed

    def test_repeated_own_ip_clicks_hold(self):
        decision = evaluate_policy(FraudSignals(touches_from_ip=11), ProgramSettings())
        assert decision.decision == FraudDecisionType.HOLD
        assert decision.reasons == ["self_referral_ip"]
        assert evaluate_policy(FraudSignals(touches_from_ip=10), ProgramSettings()).is_allowed

    def test_refund_rate_above_limit(self):
        decision = evaluate_policy(FraudSignals(orders_in_window=20, refunds_in_window=5), ProgramSettings())
        assert decision.decision == FraudDecisionType.HOLD
        assert decision.reasons == ["refund_rate"]
        assert decision.findings[0].severity == "MEDIUM"
        assert decision.findings[0].evidence["refund_rate_pct"] == 25.0

    def test_refund_rate_far_above_limit_is_high(self):
        signals = FraudSignals(orders_in_window=10, refunds_in_window=5)
        program = ProgramSettings(auto_hold_on_high_risk=False)
        decision = evaluate_policy(signals, program)
        assert decision.decision == FraudDecisionType.BLOCK
        assert decision.findings[0].severity == "HIGH"

    def test_refund_rate_needs_minimum_refunds(self):
        # 4 of 5 refunded, but below min_refunds_for_alert
        assert evaluate_policy(FraudSignals(orders_in_window=5, refunds_in_window=4), ProgramSettings()).is_allowed

    def test_refund_rate_at_limit_is_allowed(self):
        assert evaluate_policy(FraudSignals(orders_in_window=25, refunds_in_window=5), ProgramSettings()).is_allowed


def test_emails_match():
    assert emails_match("Jane@Example.com ", "jane@example.com")
    assert not emails_match("jane@example.com", "john@example.com")
    assert not emails_match(None, "jane@example.com")
    assert not emails_match("", "")


async def test_refund_counts(db, seed, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    await seed.commission(jane, 500, occurred_at=days_ago(10))
    await seed.commission(jane, 500, status="REVERSED", occurred_at=days_ago(20))
    # LINEAR split of one order counts once
    await seed.commission(jane, 250, status="REVERSED", occurred_at=days_ago(30), source_event_id="pi_split")
    await seed.commission(
        jane, 250, status="REVERSED", occurred_at=days_ago(30), source_event_id="pi_split", split_index=1
    )
    # Outside the lookback window and adjustment rows are ignored
    await seed.commission(jane, 500, status="REVERSED", occurred_at=days_ago(120))
    await seed.commission(jane, -500, is_adjustment=True, occurred_at=days_ago(5))
    await db.commit()

    orders, refunds = await FraudService(db).refund_counts(jane.id, days_ago(0))

    assert (orders, refunds) == (3, 2)


async def test_touches_from_ip(db, seed, days_ago):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    code = await seed.ref_code(jane, "JANE2026")
    for i in range(3):
        await seed.touch(code, created_at=days_ago(i + 1), fingerprint=f"fp-{i}", ip_address_hash="hash-a")
    await seed.touch(code, created_at=days_ago(45), ip_address_hash="hash-a")
    await seed.touch(code, created_at=days_ago(1), ip_address_hash="hash-b")
    await db.commit()

    assert await FraudService(db).count_touches_from_ip(jane.id, "hash-a", days_ago(0)) == 3


class TestIpIntelligenceClient:

    @staticmethod
    def client(handler, base_url="http://ipintel.test"):
        return IpIntelligenceClient(
            base_url=base_url,
            cache=CacheService(InMemoryCache(), namespace="test"),
            transport=httpx.MockTransport(handler),
        )

    async def test_disabled_without_url(self):
        def handler(request):
            raise AssertionError("no request expected")

        signal = await self.client(handler, base_url="").analyze("198.51.100.7")
        assert signal == IpSignal.no_signal()

    async def test_flat_payload(self):
        def handler(request):
            return httpx.Response(200, json={"is_vpn": True, "is_datacenter": True, "risk_score": 75})

        signal = await self.client(handler).analyze("198.51.100.7")
        assert signal.available
        assert signal.is_vpn and signal.is_datacenter
        assert not signal.is_tor
        assert signal.risk_score == 75

    async def test_result_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"security": {"tor": True}})

        client = self.client(handler)
        assert (await client.analyze("198.51.100.7")).is_tor
        assert (await client.analyze("198.51.100.7")).is_tor
        assert calls == ["/198.51.100.7"]

    async def test_provider_error_fails_open(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        signal = await self.client(handler).analyze("198.51.100.7")
        assert not signal.available
        assert not signal.is_tor

    async def test_garbage_payload_fails_open(self):
        def handler(request):
            return httpx.Response(200, text="not json")

        signal = await self.client(handler).analyze("198.51.100.7")
        assert signal == IpSignal.no_signal()


async def test_resolve_alert(db, seed):
    clinic = await seed.clinic()
    jane = await seed.affiliate(clinic)
    alert = AffiliateFraudAlert(
        clinic_id=clinic.id,
        affiliate_id=jane.id,
        alert_type="VELOCITY_SPIKE",
        severity="HIGH",
        decision="HOLD",
        description="51 conversions in 24h exceeds limit of 50",
    )
    db.add(alert)
    await db.commit()

    service = FraudService(db)
    alerts, total = await service.list_alerts(clinic.id, status="OPEN")
    assert total == 1

    reviewer = uuid.uuid4()
    resolved = await service.resolve_alert(
        clinic.id, alert.id, FraudAlertStatus.FALSE_POSITIVE, resolved_by=reviewer, notes="Clinic event day"
    )
    await db.commit()
    assert resolved.status == "FALSE_POSITIVE"
    assert resolved.resolved_by == reviewer

    _, open_total = await service.list_alerts(clinic.id, status="OPEN")
    assert open_total == 0

    with pytest.raises(ValueError):
        await service.resolve_alert(clinic.id, alert.id, FraudAlertStatus.OPEN)

    with pytest.raises(NotFoundError):
        await service.resolve_alert(uuid.uuid4(), alert.id, FraudAlertStatus.DISMISSED)
