from fastapi import APIRouter

from affiliate_engine.api.v1.endpoints import (
    # Public tracking and affiliate portal
    public,
    affiliate_portal,
    # Clinic administration
    admin_program,
    admin_affiliates,
    # Service-to-service
    internal,
    # Scheduled jobs
    cron,
)


# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Public Tracking ====================
api_router.include_router(
    public.router,
    prefix="/affiliate",
    tags=["Affiliate Tracking"]
)

# ==================== Affiliate Portal ====================
api_router.include_router(
    affiliate_portal.router,
    prefix="/affiliate",
    tags=["Affiliate Portal"]
)

# ==================== Admin: Ledger, Payouts, Competitions ====================
# Registered before the affiliate routes so /{affiliate_id} does not capture these paths
api_router.include_router(
    admin_program.router,
    prefix="/admin/affiliates",
    tags=["Affiliate Program Admin"]
)

# ==================== Admin: Affiliates, Plans, Settings ====================
api_router.include_router(
    admin_affiliates.router,
    prefix="/admin/affiliates",
    tags=["Affiliates Admin"]
)

# ==================== Internal Events ====================
api_router.include_router(
    internal.router,
    prefix="/internal",
    tags=["Internal"]
)

# ==================== Cron Triggers ====================
api_router.include_router(
    cron.router,
    prefix="/cron",
    tags=["Cron"]
)
