"""
Shared fixtures for the affiliate engine test suite.

Every test gets its own SQLite database file, a session factory bound to
it, and a Seeder for building clinics, affiliates, touches and ledger rows.
"""
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

# Settings are read at import time
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'affiliate_engine_app.db')}",
)
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("WEBHOOK_SECRET", "webhook-test-secret")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["DEBUG"] = "false"

import httpx
import pytest
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affiliate_engine import models  # noqa: F401
from affiliate_engine.config import settings
from affiliate_engine.api.deps import ROLE_ADMIN, ROLE_AFFILIATE, get_job_session_factory
from affiliate_engine.database import Base, build_engine, get_db
from affiliate_engine.main import app
from affiliate_engine.models.affiliate import Affiliate, AffiliateRefCode, AffiliateStatus, PayoutMethodType
from affiliate_engine.models.clinic import Clinic
from affiliate_engine.models.commission import (
    AffiliateCommissionEvent,
    CommissionEventStatus,
    CommissionPlan,
    CommissionType,
)
from affiliate_engine.models.touch import AffiliateTouch, TouchType
from affiliate_engine.schemas.program_settings import ProgramSettingsUpdate
from affiliate_engine.services.cache_service import CacheService, InMemoryCache, RateLimiter, get_touch_rate_limiter
from affiliate_engine.services.program_settings_service import ProgramSettingsService


CRON_HEADERS = {"X-Cron-Secret": os.environ["CRON_SECRET"]}
WEBHOOK_HEADERS = {"X-Webhook-Secret": os.environ["WEBHOOK_SECRET"]}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Seeder:
    """Builds test records in one session. Methods flush; callers commit."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def clinic(self, name: str = "Sunrise Clinic", domain: str = None, **kwargs) -> Clinic:
        clinic = Clinic(name=name, domain=domain, **kwargs)
        self.session.add(clinic)
        await self.session.flush()
        return clinic

    async def affiliate(
        self,
        clinic: Clinic,
        name: str = "Jane Doe",
        status: str = AffiliateStatus.ACTIVE.value,
        payout_method_type: str = PayoutMethodType.PAYPAL.value,
        **kwargs,
    ) -> Affiliate:
        affiliate = Affiliate(
            clinic_id=clinic.id,
            user_id=kwargs.pop("user_id", uuid.uuid4()),
            display_name=name,
            status=status,
            payout_method_type=payout_method_type,
            payout_method_reference=kwargs.pop("payout_method_reference", f"{name.split()[0].lower()}@example.com"),
            **kwargs,
        )
        self.session.add(affiliate)
        await self.session.flush()
        return affiliate

    async def ref_code(self, affiliate: Affiliate, code: str, is_active: bool = True) -> AffiliateRefCode:
        ref_code = AffiliateRefCode(
            clinic_id=affiliate.clinic_id,
            affiliate_id=affiliate.id,
            ref_code=code.upper(),
            is_active=is_active,
        )
        self.session.add(ref_code)
        await self.session.flush()
        return ref_code

    async def touch(
        self,
        ref_code: AffiliateRefCode,
        created_at: datetime = None,
        fingerprint: str = "fp-visitor-1",
        touch_type: str = TouchType.CLICK.value,
        **kwargs,
    ) -> AffiliateTouch:
        touch = AffiliateTouch(
            clinic_id=ref_code.clinic_id,
            affiliate_id=ref_code.affiliate_id,
            ref_code_id=ref_code.id,
            ref_code=ref_code.ref_code,
            touch_type=touch_type,
            visitor_fingerprint=fingerprint,
            created_at=created_at or utcnow(),
            **kwargs,
        )
        self.session.add(touch)
        await self.session.flush()
        return touch

    async def plan(self, clinic: Clinic, name: str = "Standard", **kwargs) -> CommissionPlan:
        kwargs.setdefault("commission_type", CommissionType.PERCENT.value)
        if kwargs["commission_type"] == CommissionType.PERCENT.value:
            kwargs.setdefault("percent_bps", 1500)
        plan = CommissionPlan(clinic_id=clinic.id, name=name, **kwargs)
        self.session.add(plan)
        await self.session.flush()
        return plan

    async def commission(
        self,
        affiliate: Affiliate,
        commission_cents: int,
        status: str = CommissionEventStatus.APPROVED.value,
        order_cents: int = None,
        occurred_at: datetime = None,
        source_event_id: str = None,
        **kwargs,
    ) -> AffiliateCommissionEvent:
        event = AffiliateCommissionEvent(
            clinic_id=affiliate.clinic_id,
            affiliate_id=affiliate.id,
            source_event_id=source_event_id or f"evt_{uuid.uuid4().hex[:12]}",
            order_amount_cents=order_cents if order_cents is not None else commission_cents * 10,
            commission_amount_cents=commission_cents,
            commission_type=CommissionType.PERCENT.value,
            status=status,
            occurred_at=occurred_at or utcnow(),
            **kwargs,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def program_settings(self, clinic: Clinic, **overrides):
        return await ProgramSettingsService(self.session).update_settings(
            clinic.id, ProgramSettingsUpdate(**overrides)
        )


@pytest.fixture
async def engine(tmp_path):
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'affiliate_engine.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def rate_limiter():
    return RateLimiter(CacheService(InMemoryCache(), namespace="test"), limit=30)


@pytest.fixture
async def client(session_factory, rate_limiter):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_session_factory] = lambda: session_factory
    app.dependency_overrides[get_touch_rate_limiter] = lambda: rate_limiter

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


def auth_headers(user_id: uuid.UUID, clinic_id: uuid.UUID, role: str) -> dict:
    """Bearer header carrying the claims the platform auth service issues."""
    now = utcnow()
    claims = {
        "sub": str(user_id),
        "role": role,
        "clinic_id": str(clinic_id),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=30),
    }
    token = jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    def _headers(clinic: Clinic) -> dict:
        return auth_headers(uuid.uuid4(), clinic.id, ROLE_ADMIN)
    return _headers


@pytest.fixture
def affiliate_headers():
    def _headers(affiliate: Affiliate) -> dict:
        return auth_headers(affiliate.user_id, affiliate.clinic_id, ROLE_AFFILIATE)
    return _headers


@pytest.fixture
def days_ago():
    def _days_ago(days: float) -> datetime:
        return utcnow() - timedelta(days=days)
    return _days_ago
