"""
Shared error handling for the request security layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


BLOCKED_MESSAGE = "Request blocked"


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class SecurityLayerException(Exception):
    """Base exception for the security layer."""

    # Blocking errors surface to end users without diagnostic detail.
    blocking = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        if self.blocking:
            return ErrorResponse(code=self.code, message=BLOCKED_MESSAGE)

        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(SecurityLayerException):
    """Malformed or oversized input."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class SecurityThreatDetected(SecurityLayerException):
    """Sanitizer finding promoted to an error by the caller's policy."""

    def __init__(self, severity: str, message: str = "Security threat detected",
                 details: Optional[Dict[str, Any]] = None):
        self.severity = severity
        super().__init__("SECURITY_THREAT_DETECTED", message, {**(details or {}), "severity": severity})


class RateLimitExceeded(SecurityLayerException):
    """Rate limiting errors."""

    blocking = True

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)


class OriginNotAllowed(SecurityLayerException):
    """Request origin is outside the configured allow-list."""

    blocking = True

    def __init__(self, message: str = "Origin not allowed", details: Optional[Dict[str, Any]] = None):
        super().__init__("ORIGIN_NOT_ALLOWED", message, details)


class CSRFError(SecurityLayerException):
    """Base class for CSRF token failures."""

    blocking = True


class CSRFTokenMissing(CSRFError):
    """No CSRF token available for a state-changing request."""

    def __init__(self, message: str = "CSRF token missing", details: Optional[Dict[str, Any]] = None):
        super().__init__("CSRF_TOKEN_MISSING", message, details)


class SignatureMismatch(CSRFError):
    """CSRF token signature does not verify."""

    def __init__(self, message: str = "CSRF token signature mismatch", details: Optional[Dict[str, Any]] = None):
        super().__init__("SIGNATURE_MISMATCH", message, details)


class TokenSessionMismatch(CSRFError):
    """CSRF token was issued to a different session."""

    def __init__(self, message: str = "CSRF token session mismatch", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_SESSION_MISMATCH", message, details)


class TokenExpired(CSRFError):
    """CSRF token is past its expiry."""

    def __init__(self, message: str = "CSRF token expired", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_EXPIRED", message, details)


class TokenRevoked(CSRFError):
    """CSRF token is no longer in the live-token store."""

    def __init__(self, message: str = "CSRF token revoked", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_REVOKED", message, details)


class InvalidOrigin(CSRFError):
    """Origin presented alongside a CSRF token is not trusted."""

    def __init__(self, message: str = "Invalid request origin", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_ORIGIN", message, details)


class ConfigurationError(SecurityLayerException):
    """Invalid or incomplete security configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class HttpError(SecurityLayerException):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = "Upstream request failed",
                 details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        super().__init__("HTTP_ERROR", f"HTTP {status_code}: {message}", {**(details or {}), "status_code": status_code})


class ResponseTooLarge(SecurityLayerException):
    """Response body exceeds the configured cap."""

    def __init__(self, message: str = "Response too large", details: Optional[Dict[str, Any]] = None):
        super().__init__("RESPONSE_TOO_LARGE", message, details)


class InvalidJSON(SecurityLayerException):
    """Response declared JSON but could not be parsed."""

    def __init__(self, message: str = "Invalid JSON response", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_JSON", message, details)


# Error codes reported by token validation, mapped to their exception types.
CSRF_ERRORS = {
    "CSRFTokenMissing": CSRFTokenMissing,
    "SignatureMismatch": SignatureMismatch,
    "TokenSessionMismatch": TokenSessionMismatch,
    "TokenExpired": TokenExpired,
    "TokenRevoked": TokenRevoked,
    "InvalidOrigin": InvalidOrigin,
}


def csrf_error_for(code: str, details: Optional[Dict[str, Any]] = None) -> CSRFError:
    """Build the exception matching a token validation error code."""
    error_cls = CSRF_ERRORS.get(code, SignatureMismatch)
    return error_cls(details=details)
