"""
CRM Auth Type Definitions

Token, principal and session types shared by the client, the session
manager and the framework integrations.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import REFRESH_ERROR_MARKER, ConfigurationError, UpstreamUnavailableError


# Safety margin subtracted from the issuer-reported token lifetime (seconds)
DEFAULT_EXPIRY_MARGIN = 300

# Upper bound on username and password length
MAX_CREDENTIAL_LENGTH = 255

REQUIRED_ENV_VARS = (
    "SF_CLIENT_ID",
    "SF_CLIENT_SECRET",
    "SF_TOKEN_URL",
    "SF_INSTANCE_URL",
)


def validate_credentials(username: Any, password: Any) -> bool:
    """Minimal shape check applied before any credential leaves the process."""
    if not isinstance(username, str) or not isinstance(password, str):
        return False
    if not username or not password:
        return False
    if len(username) > MAX_CREDENTIAL_LENGTH or len(password) > MAX_CREDENTIAL_LENGTH:
        return False
    if "<" in username or ">" in username:
        return False
    return True


def parse_expires_in(value: Any) -> int:
    """Token lifetime in seconds from a token endpoint reply."""
    seconds = 0
    if not isinstance(value, bool):
        try:
            seconds = int(value)
        except (TypeError, ValueError, OverflowError):
            seconds = 0
    if seconds <= 0:
        raise UpstreamUnavailableError(
            "Invalid expires_in in token response",
            details={"expires_in": repr(value)},
        )
    return seconds


@dataclass
class CrmAuthConfig:
    """Connection settings for the identity provider and the CRM instance."""

    # OAuth2 connected-app credentials
    client_id: str
    client_secret: str
    # Token endpoint accepting password and refresh_token grants
    token_url: str
    # CRM instance base URL (user-info and record endpoints live here)
    instance_url: str
    # REST API version used for the tenant lookup
    api_version: str = "v58.0"
    # Custom user field holding the tenant ("home store") assignment
    tenant_field: str = "ShozokuTenpoID__c"
    # Request timeout in seconds (default: 30)
    timeout: float = 30.0
    # Maximum redirects followed per request (default: 5)
    max_redirects: int = 5
    # Stable client identifier sent with every request
    user_agent: str = "Drink-Order-System/1.0"
    # Retry attempts for idempotent lookups; token grants are never retried
    retry_attempts: int = 0
    # Seconds subtracted from the reported token lifetime (default: 300)
    expiry_margin: int = DEFAULT_EXPIRY_MARGIN
    # Share one renewal among concurrent reads of a refresh token (default: True)
    single_flight_refresh: bool = True
    # Maximum session age in seconds (default: 12 hours)
    session_max_age: int = 12 * 60 * 60
    # Enable debug logging (default: False)
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "CrmAuthConfig":
        """Build configuration from SF_* environment variables."""
        env = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_ENV_VARS if not env.get(name)]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variable(s): {', '.join(missing)}",
                {"missing": missing},
            )

        values: Dict[str, Any] = {
            "client_id": env["SF_CLIENT_ID"],
            "client_secret": env["SF_CLIENT_SECRET"],
            "token_url": env["SF_TOKEN_URL"],
            "instance_url": env["SF_INSTANCE_URL"],
        }
        if env.get("SF_API_VERSION"):
            values["api_version"] = env["SF_API_VERSION"]
        if env.get("SF_TENANT_FIELD"):
            values["tenant_field"] = env["SF_TENANT_FIELD"]
        if env.get("CRM_AUTH_DEBUG"):
            values["debug"] = env["CRM_AUTH_DEBUG"].lower() in ("1", "true", "yes")
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class TokenPair:
    """Issued access/refresh tokens and the pre-emptive expiry timestamp."""

    access_token: str
    refresh_token: str
    expires_at: float

    @classmethod
    def from_grant(
        cls,
        data: Dict[str, Any],
        issued_at: float,
        margin: int = DEFAULT_EXPIRY_MARGIN,
        fallback_refresh_token: str = "",
    ) -> "TokenPair":
        """
        Create from a token endpoint reply, shortening the lifetime by margin.

        Raises:
            UpstreamUnavailableError: ``expires_in`` is missing, non-numeric or not positive
        """
        expires_in = parse_expires_in(data.get("expires_in"))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh_token,
            expires_at=issued_at + expires_in - margin,
        )

    def remaining(self, now: float) -> float:
        """Seconds until this pair must be treated as unusable."""
        return self.expires_at - now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True)
class Principal:
    """Authenticated user as reported by the user-info endpoint."""

    user_id: str
    display_name: str
    email: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Principal":
        return cls(
            user_id=data["user_id"],
            display_name=data.get("name") or "",
            email=data.get("email") or "",
        )


class SessionState(str, Enum):
    """Observable states of the token lifecycle."""
    UNAUTHENTICATED = "unauthenticated"
    FRESH = "fresh"
    NEAR_EXPIRY = "near_expiry"
    REFRESHING = "refreshing"
    ERRORED = "errored"


@dataclass
class SessionRecord:
    """Per-login session: principal, tenant and the current token pair."""

    session_id: str
    username: str
    user_id: str
    display_name: str
    email: str
    token_pair: Optional[TokenPair]
    instance_url: str
    tenant_id: str
    error_flag: Optional[str] = None
    created_at: float = 0.0
    state: SessionState = SessionState.FRESH

    @property
    def access_token(self) -> Optional[str]:
        return self.token_pair.access_token if self.token_pair else None

    @property
    def expires_at(self) -> Optional[float]:
        return self.token_pair.expires_at if self.token_pair else None

    @property
    def is_errored(self) -> bool:
        return self.error_flag is not None

    def as_public_dict(self) -> Dict[str, Any]:
        """Return a redacted view suitable for logging."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "state": self.state.value,
            "expires_at": self.expires_at,
            "error": self.error_flag,
        }


@dataclass
class LoginCredentials:
    """Username/password pair submitted to the password grant."""

    username: str
    password: str = field(repr=False)

    def is_valid(self) -> bool:
        return validate_credentials(self.username, self.password)


__all__ = [
    "DEFAULT_EXPIRY_MARGIN",
    "REFRESH_ERROR_MARKER",
    "CrmAuthConfig",
    "TokenPair",
    "Principal",
    "SessionState",
    "SessionRecord",
    "LoginCredentials",
    "validate_credentials",
    "parse_expires_in",
]
