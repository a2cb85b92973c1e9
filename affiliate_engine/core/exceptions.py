"""Domain exceptions raised by services and translated to HTTP errors at the API layer."""
from typing import Dict, Optional


class AffiliateEngineError(Exception):
    """Base exception for affiliate engine errors."""
    status_code = 400

    def __init__(self, message: str, error_code: str = None, details: Optional[Dict] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AffiliateEngineError):
    """Requested record does not exist (or is not visible to the caller's clinic)."""
    status_code = 404


class ConflictError(AffiliateEngineError):
    """Write conflicts with existing state, e.g. a duplicate ref code."""
    status_code = 409


class InvalidTransitionError(AffiliateEngineError):
    """Status change not allowed by the lifecycle rules."""
    status_code = 400


class PaymentRailError(AffiliateEngineError):
    """Payment rail rejected or failed to accept a transfer."""
    status_code = 502

    def __init__(self, message: str, retryable: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class InvalidConfigurationError(AffiliateEngineError):
    """Requested configuration change would leave a record inconsistent."""
    status_code = 422
