from dataclasses import dataclass
from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from affiliate_engine.config import settings
from affiliate_engine.core.exceptions import AffiliateEngineError
from affiliate_engine.core.security import verify_access_token, verify_shared_secret
from affiliate_engine.database import async_session_factory, get_db


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()

ROLE_ADMIN = "admin"
ROLE_AFFILIATE = "affiliate"


@dataclass
class Principal:
    """Authenticated caller as described by the platform-issued JWT."""
    user_id: uuid.UUID
    role: str
    clinic_id: uuid.UUID


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Principal:
    """
    Dependency to get the current authenticated caller.
    Validates the JWT and reads the sub, role and clinic_id claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    claims = verify_access_token(credentials.credentials)
    if claims is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    try:
        return Principal(
            user_id=uuid.UUID(str(claims["sub"])),
            role=str(claims.get("role", "")),
            clinic_id=uuid.UUID(str(claims["clinic_id"])),
        )
    except (KeyError, ValueError):
        logger.warning(f"Token is missing a valid sub or clinic_id claim: sub={claims.get('sub')}")
        raise credentials_exception


def require_role(role: str):
    """
    Dependency factory to require a role claim.

    Usage:
        @router.get("/")
        async def list_things(admin: Annotated[Principal, Depends(require_role("admin"))]):
            ...
    """
    async def role_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if principal.role != role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied. Required role: {role}"
            )
        return principal

    return role_dependency


async def require_cron_secret(
    x_cron_secret: Annotated[Optional[str], Header()] = None,
) -> None:
    if not verify_shared_secret(x_cron_secret, settings.CRON_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


async def require_webhook_secret(
    x_webhook_secret: Annotated[Optional[str], Header()] = None,
) -> None:
    if not verify_shared_secret(x_webhook_secret, settings.WEBHOOK_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


def get_client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def get_job_session_factory() -> async_sessionmaker:
    """Session factory handed to jobs triggered over HTTP."""
    return async_session_factory


def to_http_exception(exc: AffiliateEngineError) -> HTTPException:
    """Translate a service error into an HTTPException with a structured detail."""
    return HTTPException(
        status_code=exc.status_code,
        detail={
            "message": exc.message,
            "error_code": exc.error_code,
            "details": exc.details,
        },
    )


# Type aliases for cleaner endpoint signatures
DB = Annotated[AsyncSession, Depends(get_db)]
AdminUser = Annotated[Principal, Depends(require_role(ROLE_ADMIN))]
AffiliateUser = Annotated[Principal, Depends(require_role(ROLE_AFFILIATE))]
