"""
CRM Auth Error Classes

Error taxonomy for the login and token refresh lifecycle. Login failures share
one user-facing message; a rejected refresh carries its own re-login prompt.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Marker carried by sessions whose refresh grant was rejected
REFRESH_ERROR_MARKER = "RefreshAccessTokenError"

GENERIC_LOGIN_MESSAGE = "Authentication failed"
REAUTH_MESSAGE = "Your session has expired. Please sign in again."


class CrmAuthError(Exception):
    """Base error class for CRM Auth."""

    retryable = False
    user_message = GENERIC_LOGIN_MESSAGE

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "name": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class InvalidCredentialsError(CrmAuthError):
    """Credentials failed the local shape check; nothing was sent upstream."""

    def __init__(self, message: str = "Invalid credentials format", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_CREDENTIALS", message, 400, details)


class UpstreamUnavailableError(CrmAuthError):
    """Network error, timeout or 5xx from the identity provider."""

    retryable = True

    def __init__(self, message: str, status_code: int = 0, details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_UNAVAILABLE", message, status_code, details)


class AuthenticationFailedError(CrmAuthError):
    """The identity provider explicitly rejected the request (HTTP 4xx)."""

    def __init__(
        self,
        message: str = GENERIC_LOGIN_MESSAGE,
        status_code: int = 401,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__("AUTHENTICATION_FAILED", message, status_code, details)


class MissingAttributeError(CrmAuthError):
    """A lookup succeeded but a required field was absent."""

    def __init__(self, attribute: str, message: Optional[str] = None):
        super().__init__(
            "MISSING_ATTRIBUTE",
            message or f"{attribute} not found for user",
            403,
            {"attribute": attribute},
        )
        self.attribute = attribute


class RefreshFailedError(CrmAuthError):
    """Refresh grant rejected; cached credentials must be purged."""

    user_message = REAUTH_MESSAGE

    def __init__(self, message: str = "Failed to refresh access token", details: Optional[Dict[str, Any]] = None):
        super().__init__(REFRESH_ERROR_MARKER, message, 401, details)


class ConfigurationError(CrmAuthError):
    """Configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, 0, details)


def is_crm_auth_error(error: Any) -> bool:
    """Check if error is a CrmAuthError."""
    return isinstance(error, CrmAuthError)


def is_retryable_error(error: Any) -> bool:
    """Check if error is retryable."""
    if isinstance(error, CrmAuthError):
        return error.retryable
    return False
