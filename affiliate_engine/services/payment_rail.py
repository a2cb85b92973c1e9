"""
Payment rails that move payout money to affiliates.

ManualRail records the payout for off-platform settlement (an admin marks
it completed later). HttpPayoutRail submits the transfer to an external
payouts API and reports the transfer id back.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from affiliate_engine.config import settings
from affiliate_engine.core.exceptions import PaymentRailError
from affiliate_engine.models.payout import AffiliatePayout, PayoutStatus

logger = logging.getLogger(__name__)


@dataclass
class RailResult:
    status: str
    external_reference: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentRail(ABC):
    """Abstract payment rail."""

    name: str = "abstract"

    @abstractmethod
    async def send(self, payout: AffiliatePayout) -> RailResult:
        """
        Submit a payout.

        Raises:
            PaymentRailError: when the rail rejects or cannot be reached
        """


class ManualRail(PaymentRail):
    name = "manual"

    async def send(self, payout: AffiliatePayout) -> RailResult:
        logger.info(
            f"Payout {payout.id} queued for manual settlement "
            f"({payout.net_amount_cents} cents via {payout.method_type})"
        )
        return RailResult(status=PayoutStatus.PROCESSING.value)


class HttpPayoutRail(PaymentRail):
    """Submits transfers to an HTTP payouts API. The payout id is the idempotency key."""

    name = "http"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PAYOUT_RAIL_URL or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.PAYOUT_RAIL_API_KEY
        self.timeout = timeout or settings.PAYOUT_RAIL_TIMEOUT_SECONDS
        self._transport = transport

    async def send(self, payout: AffiliatePayout) -> RailResult:
        if not self.base_url:
            raise PaymentRailError("Payout rail URL is not configured", retryable=False)

        payload = {
            "payout_id": str(payout.id),
            "affiliate_id": str(payout.affiliate_id),
            "amount_cents": payout.net_amount_cents,
            "currency": payout.currency,
            "method_type": payout.method_type,
            "destination": payout.method_reference,
            "period_key": payout.period_key,
        }
        headers = {"Idempotency-Key": str(payout.id)}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/payouts", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise PaymentRailError(f"Payout rail timed out: {e}", error_code="RAIL_TIMEOUT")
        except httpx.HTTPError as e:
            raise PaymentRailError(f"Payout rail unreachable: {e}", error_code="RAIL_UNAVAILABLE")

        if response.status_code >= 400:
            raise PaymentRailError(
                f"Payout rail rejected transfer: HTTP {response.status_code}",
                retryable=response.status_code >= 500,
                error_code="RAIL_REJECTED",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        status = str(data.get("status", "")).lower()
        if status in ("paid", "completed", "succeeded"):
            return RailResult(PayoutStatus.COMPLETED.value, external_reference=data.get("id"))
        if status in ("failed", "rejected", "canceled"):
            return RailResult(
                PayoutStatus.FAILED.value,
                external_reference=data.get("id"),
                failure_reason=data.get("failure_reason") or status,
            )
        return RailResult(PayoutStatus.PROCESSING.value, external_reference=data.get("id"))


def get_payment_rail() -> PaymentRail:
    if settings.PAYOUT_RAIL == "http":
        return HttpPayoutRail()
    return ManualRail()
