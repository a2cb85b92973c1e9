from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from affiliate_engine.config import settings
from affiliate_engine.api.v1.router import api_router
from affiliate_engine.core.exceptions import AffiliateEngineError
from affiliate_engine.database import async_session_factory, init_db
from affiliate_engine.jobs.scheduler import get_job_status, shutdown_scheduler, start_scheduler


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables when running in DEBUG (migrations own the schema otherwise)
    - Start background scheduler when enabled
    """
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if settings.DEBUG:
        await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    else:
        logger.info("Background scheduler disabled; jobs run through /api/v1/cron")

    yield

    # Shutdown
    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Affiliate Tracking", "description": "Public ref code lookup and touch recording"},
    {"name": "Affiliate Portal", "description": "Earnings for the signed-in affiliate"},
    {"name": "Affiliate Program Admin", "description": "Commission ledger, fraud review, payouts, leaderboard and competitions"},
    {"name": "Affiliates Admin", "description": "Affiliates, ref codes, commission plans and program settings"},
    {"name": "Internal", "description": "Conversion, refund and intake events from other platform services"},
    {"name": "Cron", "description": "Externally triggered scheduled jobs"},
]


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(AffiliateEngineError)
async def affiliate_engine_exception_handler(request: Request, exc: AffiliateEngineError):
    """Service errors that escape an endpoint keep their status code and error code."""
    logger.warning(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": {
                "message": exc.message,
                "error_code": exc.error_code,
                "details": exc.details,
            }
        },
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown",
            "scheduled_jobs": len(get_job_status()),
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
