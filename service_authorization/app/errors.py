"""
Authorization error taxonomy.
"""

from enum import Enum
from typing import Dict, Any, Optional, Tuple

from shared.errors import AccessLayerException


class AuthorizationErrorCode(str, Enum):
    """Error codes produced by the authorization layer."""
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    INSUFFICIENT_PERMISSION = "INSUFFICIENT_PERMISSION"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    INVALID_PERMISSION = "INVALID_PERMISSION"
    PERMISSION_EXPIRED = "PERMISSION_EXPIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    AUDIT_LOG_FAILED = "AUDIT_LOG_FAILED"


# code -> (message, HTTP status)
AUTHORIZATION_ERRORS: Dict[AuthorizationErrorCode, Tuple[str, int]] = {
    AuthorizationErrorCode.UNAUTHORIZED: ("Authentication required", 401),
    AuthorizationErrorCode.FORBIDDEN: ("Access denied", 403),
    AuthorizationErrorCode.INSUFFICIENT_ROLE: ("Insufficient role privileges", 403),
    AuthorizationErrorCode.INSUFFICIENT_PERMISSION: ("Insufficient permissions", 403),
    AuthorizationErrorCode.RESOURCE_NOT_FOUND: ("Resource not found or access denied", 404),
    AuthorizationErrorCode.INVALID_PERMISSION: ("Invalid permission configuration", 400),
    AuthorizationErrorCode.PERMISSION_EXPIRED: ("Permission has expired", 403),
    AuthorizationErrorCode.RATE_LIMIT_EXCEEDED: ("Rate limit exceeded", 429),
    AuthorizationErrorCode.AUDIT_LOG_FAILED: ("Failed to log audit entry", 500),
}


class AuthorizationError(AccessLayerException):
    """Typed authorization failure carrying code, status and details."""

    def __init__(
        self,
        code: AuthorizationErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        default_message, status_code = AUTHORIZATION_ERRORS[code]
        self.error_code = code
        super().__init__(code.value, message or default_message, details, status_code=status_code)


class CacheBackendError(AccessLayerException):
    """A cache backend call failed or exceeded its time budget."""

    def __init__(self, operation: str, message: str, details: Optional[Dict[str, Any]] = None):
        payload = {"operation": operation}
        payload.update(details or {})
        super().__init__("CACHE_BACKEND_ERROR", message, payload, status_code=503)
        self.operation = operation


def create_authorization_error(
    code: AuthorizationErrorCode,
    details: Optional[Dict[str, Any]] = None,
) -> AuthorizationError:
    """Build an AuthorizationError with the canonical message for ``code``."""
    return AuthorizationError(code, details=details)
