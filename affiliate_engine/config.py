from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # JWT Settings (tokens are issued by the platform auth service, only verified here)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # App Settings
    APP_NAME: str = "Affiliate Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Redis (rate-limit counters, IP intelligence cache)
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_NAMESPACE: str = "affiliate"

    # Shared secrets for machine-to-machine calls
    CRON_SECRET: str = ""  # Sent as X-Cron-Secret by the cron trigger
    WEBHOOK_SECRET: str = ""  # Sent as X-Webhook-Secret by the billing service

    # Touch tracking
    IP_HASH_SALT: str = "affiliate-touch"
    TOUCH_RATE_LIMIT_PER_MINUTE: int = 30
    MAX_SUB_IDS: int = 5

    # IP intelligence provider (proxy / VPN / Tor detection)
    IP_INTEL_API_URL: str = ""  # Empty disables lookups
    IP_INTEL_API_KEY: str = ""
    IP_INTEL_TIMEOUT_SECONDS: float = 3.0
    IP_INTEL_CACHE_TTL: int = 86400  # 24 hours

    # Fraud
    FRAUD_HOLD_EXTENSION_DAYS: int = 30  # Added on top of hold_days for HOLD decisions
    FRAUD_IP_LOOKBACK_DAYS: int = 30
    FRAUD_SELF_REFERRAL_TOUCH_THRESHOLD: int = 10  # Own-IP clicks before a conversion is flagged
    FRAUD_REFUND_LOOKBACK_DAYS: int = 90

    # Payout rail: "manual" or "http"
    PAYOUT_RAIL: str = "manual"
    PAYOUT_RAIL_URL: str = ""
    PAYOUT_RAIL_API_KEY: str = ""
    PAYOUT_RAIL_TIMEOUT_SECONDS: float = 30.0
    PAYOUT_BATCH_LIMIT: int = 500  # Max affiliates settled per run
    PAYOUT_TIME_BUDGET_SECONDS: int = 240
    BANK_WIRE_FEE_CENTS: int = 2500

    # Commission approval
    APPROVAL_BATCH_SIZE: int = 500
    APPROVAL_MAX_BATCHES: int = 20

    # Data retention
    RETENTION_ANONYMIZE_AFTER_DAYS: int = 90
    RETENTION_ARCHIVE_AFTER_DAYS: int = 730
    RETENTION_BATCH_SIZE: int = 1000
    RETENTION_MAX_BATCHES: int = 50
    RETENTION_TIME_BUDGET_SECONDS: int = 240

    # Advisory lock keys (one per scheduled job)
    RETENTION_LOCK_KEY: int = 847_202_401
    PAYOUT_LOCK_KEY: int = 847_202_402
    APPROVAL_LOCK_KEY: int = 847_202_403
    COMPETITION_LOCK_KEY: int = 847_202_404
    JOB_LEASE_TTL_SECONDS: int = 900

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('PAYOUT_RAIL')
    @classmethod
    def validate_payout_rail(cls, v: str) -> str:
        v = v.lower()
        if v not in ("manual", "http"):
            raise ValueError("PAYOUT_RAIL must be 'manual' or 'http'")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
