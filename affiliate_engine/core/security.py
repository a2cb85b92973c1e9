import hashlib
import hmac
from typing import Any, Optional

from jose import JWTError, jwt

from affiliate_engine.config import settings


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """Decode and validate a JWT token. Returns None if invalid or expired."""
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError:
        return None


def verify_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify an access token and return its claims.

    Returns:
        Claims dict (``sub``, ``role``, ``clinic_id``) or None if invalid
    """
    payload = decode_token(token)
    if payload is None:
        return None

    if payload.get("type") != "access":
        return None

    if not payload.get("sub"):
        return None

    return payload


def verify_shared_secret(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison for cron/webhook shared secrets. Empty secrets never match."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def hash_ip_address(ip_address: str, salt: Optional[str] = None) -> str:
    """Salted SHA-256 of an IP address; raw IPs are never stored."""
    salt = settings.IP_HASH_SALT if salt is None else salt
    return hashlib.sha256(f"{salt}:{ip_address.strip()}".encode()).hexdigest()
