"""
IP intelligence client (proxy / VPN / Tor detection).

Lookups fail open: any network error, timeout or unexpected payload is
treated as "no signal" so fraud evaluation never blocks conversions on
provider outages. Results are cached per IP hash.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import httpx

from affiliate_engine.config import settings
from affiliate_engine.core.security import hash_ip_address
from affiliate_engine.services.cache_service import CacheService, get_cache

logger = logging.getLogger(__name__)


@dataclass
class IpSignal:
    is_proxy: bool = False
    is_vpn: bool = False
    is_tor: bool = False
    is_datacenter: bool = False
    risk_score: int = 0
    available: bool = False

    @classmethod
    def no_signal(cls) -> "IpSignal":
        return cls()


class IpIntelligenceClient:
    """HTTP client for the configured IP intelligence provider."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        cache: Optional[CacheService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.IP_INTEL_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.IP_INTEL_API_KEY
        self.timeout = timeout or settings.IP_INTEL_TIMEOUT_SECONDS
        self.cache = cache or get_cache()
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def analyze(self, ip_address: Optional[str]) -> IpSignal:
        """Look up an IP. Returns IpSignal.no_signal() when disabled or on any failure."""
        if not ip_address or not self.enabled:
            return IpSignal.no_signal()

        cache_key = f"ipintel:{hash_ip_address(ip_address)}"
        cached = await self.cache.get(None, cache_key)
        if cached:
            return IpSignal(**cached)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/{ip_address}",
                    headers={"Authorization": f"Bearer {self.api_key}"} if self.api_key else None,
                )
                response.raise_for_status()
                signal = self._parse(response.json())
        except httpx.HTTPError as e:
            logger.warning(f"IP intelligence lookup failed, continuing without signal: {e}")
            return IpSignal.no_signal()
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"IP intelligence returned an unexpected payload: {e}")
            return IpSignal.no_signal()

        await self.cache.set(None, cache_key, asdict(signal), ttl=settings.IP_INTEL_CACHE_TTL)
        return signal

    @staticmethod
    def _parse(data: dict) -> IpSignal:
        # Providers either nest flags under "security" or return them flat
        security = data.get("security", data)
        return IpSignal(
            is_proxy=bool(security.get("proxy") or security.get("is_proxy")),
            is_vpn=bool(security.get("vpn") or security.get("is_vpn")),
            is_tor=bool(security.get("tor") or security.get("is_tor")),
            is_datacenter=bool(security.get("hosting") or security.get("is_datacenter")),
            risk_score=int(security.get("risk_score") or 0),
            available=True,
        )
