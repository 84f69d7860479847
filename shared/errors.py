"""
Shared error handling for the Subscription Entitlements service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    retryable: bool = False
    details: Dict[str, Any] = {}


class EntitlementError(Exception):
    """Base exception for the entitlements service."""

    retryable = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            retryable=self.retryable,
            details=self.details
        )


class TransportError(EntitlementError):
    """Network, DNS, timeout or upstream 5xx failure talking to the platform."""

    retryable = True

    def __init__(self, message: str = "Platform unreachable", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSPORT_ERROR", message, details)


class CircuitOpenError(TransportError):
    """Raised instead of calling the platform while the circuit breaker is open."""

    def __init__(self, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Circuit breaker '{name}' is open", details)
        self.code = "CIRCUIT_OPEN"


class AuthError(EntitlementError):
    """The platform rejected our credentials. Retrying will not help."""

    def __init__(self, message: str = "Platform authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTH_ERROR", message, details)


class RateLimitedError(EntitlementError):
    """The platform throttled the request; `retry_after` is in seconds."""

    retryable = True

    def __init__(self, retry_after: float, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        details = dict(details or {})
        details.setdefault("retry_after", retry_after)
        super().__init__("RATE_LIMITED", message, details)


class NotFoundError(EntitlementError):
    """Unknown customer. Terminal: the customer has no entitlement."""

    def __init__(self, message: str = "Customer not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class StaleRecordError(EntitlementError):
    """Cached record is past the hard ceiling and could not be refreshed."""

    def __init__(self, customer_id: str, age_seconds: float, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.update({"customer_id": customer_id, "age_seconds": round(age_seconds, 3)})
        super().__init__("STALE_RECORD", f"Entitlement record for {customer_id} is too old to use", details)


class ValidationError(EntitlementError):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class WebhookSignatureError(EntitlementError):
    """Webhook signature missing, malformed or not matching."""

    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__("WEBHOOK_SIGNATURE_INVALID", message, details)


# HTTP status used when an error escapes to the API layer.
HTTP_STATUS_BY_CODE: Dict[str, int] = {
    "AUTH_ERROR": 502,
    "TRANSPORT_ERROR": 503,
    "CIRCUIT_OPEN": 503,
    "RATE_LIMITED": 429,
    "NOT_FOUND": 404,
    "STALE_RECORD": 503,
    "VALIDATION_ERROR": 400,
    "WEBHOOK_SIGNATURE_INVALID": 401,
}


def http_status_for(error: EntitlementError) -> int:
    """Map an error to the status code returned by the HTTP layer."""
    return HTTP_STATUS_BY_CODE.get(error.code, 500)
