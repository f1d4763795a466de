"""
Shared error handling for the GitLab Bridge access gate.
"""

from typing import Dict, Any, Iterable, Optional
from pydantic import BaseModel
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    error: str
    message: str
    details: Dict[str, Any] = {}


def current_trace_id() -> Optional[str]:
    """Return the hex trace id of the active span, if any."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class BridgeException(Exception):
    """Base exception for the access gate."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        self.headers: Dict[str, str] = {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=current_trace_id(),
            error=self.code,
            message=self.message,
            details=self.details
        )


class ExternalServiceError(BridgeException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class InternalGateError(BridgeException):
    """Unexpected failure inside a gate stage."""

    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)


# Authentication

class MissingCredentialsError(BridgeException):
    """No bearer credential was supplied."""

    status_code = 401

    def __init__(self, message: str = "Authentication token required", details: Optional[Dict[str, Any]] = None):
        super().__init__("MISSING_TOKEN", message, details)


class InvalidTokenError(BridgeException):
    """Token failed structural validation."""

    status_code = 401

    def __init__(self, message: str = "Invalid token", details: Optional[Dict[str, Any]] = None, code: str = "INVALID_TOKEN"):
        super().__init__(code, message, details)


class MalformedTokenError(InvalidTokenError):
    """Token could not be parsed."""

    def __init__(self, message: str = "Malformed token", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="MALFORMED_TOKEN")


class ExpiredTokenError(BridgeException):
    """Token expiration instant has passed."""

    status_code = 401

    def __init__(self, message: str = "Token has expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXPIRED_TOKEN", message, details)


class RevokedTokenError(BridgeException):
    """Token was revoked, or its revocation status could not be confirmed."""

    status_code = 401

    def __init__(self, message: str = "Token has been revoked", details: Optional[Dict[str, Any]] = None):
        super().__init__("REVOKED_TOKEN", message, details)


# Authorization

class DangerousScopeError(BridgeException):
    """Token carries scopes that are not allowed for the operation."""

    status_code = 403

    def __init__(self, scopes: Iterable[str], message: str = "Token carries dangerous scopes", details: Optional[Dict[str, Any]] = None):
        self.scopes = frozenset(scopes)
        merged = {"dangerous_scopes": sorted(self.scopes)}
        merged.update(details or {})
        super().__init__("DANGEROUS_SCOPE", message, merged)


class InsufficientScopeError(BridgeException):
    """Token lacks scopes required for the operation."""

    status_code = 403

    def __init__(self, missing_scopes: Iterable[str], message: str = "Insufficient token scopes", details: Optional[Dict[str, Any]] = None):
        self.missing_scopes = frozenset(missing_scopes)
        merged = {"missing_scopes": sorted(self.missing_scopes)}
        merged.update(details or {})
        super().__init__("INSUFFICIENT_SCOPE", message, merged)


class UnknownOperationError(BridgeException):
    """Operation is absent from the scope table. A configuration defect."""

    status_code = 500

    def __init__(self, operation: str, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        merged = {"operation": operation}
        merged.update(details or {})
        super().__init__("UNKNOWN_OPERATION", f"Unknown operation: {operation}", merged)


# Webhooks

class MissingWebhookTokenError(BridgeException):
    """Webhook delivery has no token header."""

    status_code = 401

    def __init__(self, message: str = "Missing webhook token", details: Optional[Dict[str, Any]] = None):
        super().__init__("MISSING_WEBHOOK_TOKEN", message, details)


class InvalidWebhookTokenError(BridgeException):
    """Webhook token does not match the shared secret."""

    status_code = 401

    def __init__(self, message: str = "Invalid webhook token", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_WEBHOOK_TOKEN", message, details)


class InvalidWebhookSignatureError(BridgeException):
    """Webhook body signature is missing or wrong."""

    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_WEBHOOK_SIGNATURE", message, details)


class UnknownWebhookEventError(BridgeException):
    """Webhook event header is not a recognized event type."""

    status_code = 400

    def __init__(self, event: Optional[str], details: Optional[Dict[str, Any]] = None):
        self.event = event
        merged = {"event": event}
        merged.update(details or {})
        super().__init__("UNKNOWN_WEBHOOK_EVENT", f"Unknown webhook event: {event}", merged)


# Rate limiting

class RateLimitExceededError(BridgeException):
    """Caller exhausted its request budget."""

    status_code = 429

    def __init__(self, retry_after: int, message: str = "Too many requests, please try again later.", details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)
        self.headers["Retry-After"] = str(retry_after)

    def to_body(self) -> Dict[str, Any]:
        """Rate-limit rejection body."""
        return {
            "error": self.code,
            "message": self.message,
            "retryAfter": self.retry_after,
        }
