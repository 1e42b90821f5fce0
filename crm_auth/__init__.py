"""
CRM Auth

OAuth2 token lifecycle for the order-taking UI: password-grant login against
the CRM identity provider, a tamper-evident credential cache, lazy
refresh-on-read with validation before refresh, and a request gate.
"""

from .client import IdentityProviderClient, create_identity_provider_client
from .manager import SessionTokenManager
from .storage import CredentialStore, CachedCredential
from .registry import SessionRegistry
from .singleflight import SingleFlight
from .scheduler import DebouncedScheduler
from .gate import GateVerdict, check, is_authorized
from .projection import SessionView, SessionUser, project, login_error_message
from .types import (
    CrmAuthConfig,
    TokenPair,
    Principal,
    SessionRecord,
    SessionState,
    LoginCredentials,
    DEFAULT_EXPIRY_MARGIN,
    REFRESH_ERROR_MARKER,
    validate_credentials,
)
from .errors import (
    CrmAuthError,
    InvalidCredentialsError,
    UpstreamUnavailableError,
    AuthenticationFailedError,
    MissingAttributeError,
    RefreshFailedError,
    ConfigurationError,
    is_crm_auth_error,
    is_retryable_error,
)

__version__ = "0.1.0"
__all__ = [
    # Core
    "IdentityProviderClient",
    "create_identity_provider_client",
    "SessionTokenManager",
    "CredentialStore",
    "CachedCredential",
    "SessionRegistry",
    "SingleFlight",
    "DebouncedScheduler",
    # Gate / projection
    "GateVerdict",
    "check",
    "is_authorized",
    "SessionView",
    "SessionUser",
    "project",
    "login_error_message",
    # Types
    "CrmAuthConfig",
    "TokenPair",
    "Principal",
    "SessionRecord",
    "SessionState",
    "LoginCredentials",
    "DEFAULT_EXPIRY_MARGIN",
    "REFRESH_ERROR_MARKER",
    "validate_credentials",
    # Errors
    "CrmAuthError",
    "InvalidCredentialsError",
    "UpstreamUnavailableError",
    "AuthenticationFailedError",
    "MissingAttributeError",
    "RefreshFailedError",
    "ConfigurationError",
    "is_crm_auth_error",
    "is_retryable_error",
]
