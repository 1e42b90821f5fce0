"""
CRM Auth Identity Provider Client

Async client for the three remote calls the token lifecycle needs: the
password grant, the refresh grant and the user-info / tenant lookups.

Token-endpoint POSTs are never retried (a refresh token is single-use);
idempotent GET lookups may be retried on transport errors when
``retry_attempts`` is configured.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Literal, Optional
from urllib.parse import quote

import httpx

from .types import CrmAuthConfig, Principal, TokenPair, validate_credentials
from .errors import (
    CrmAuthError,
    AuthenticationFailedError,
    ConfigurationError,
    InvalidCredentialsError,
    MissingAttributeError,
    RefreshFailedError,
    UpstreamUnavailableError,
    is_retryable_error,
)


logger = logging.getLogger("crm_auth")

# Retry delays for exponential backoff
RETRY_DELAYS = [1.0, 2.0, 4.0]

USERINFO_PATH = "/services/oauth2/userinfo"


class IdentityProviderClient:
    """
    Identity provider client.

    Holds one lazily created ``httpx.AsyncClient`` with a fixed timeout,
    bounded redirects, TLS verification and a stable User-Agent.
    """

    def __init__(
        self,
        config: CrmAuthConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._validate_config(config)

        self._client_id = config.client_id
        self._client_secret = config.client_secret
        self._token_url = config.token_url
        self._instance_url = config.instance_url.rstrip("/")
        self._api_version = config.api_version
        self._tenant_field = config.tenant_field
        self._timeout = config.timeout
        self._max_redirects = config.max_redirects
        self._user_agent = config.user_agent
        self._retry_attempts = config.retry_attempts
        self._margin = config.expiry_margin
        self._debug = config.debug
        self._clock = clock

        # HTTP client (created lazily)
        self._http_client: Optional[httpx.AsyncClient] = None

    def _validate_config(self, config: CrmAuthConfig) -> None:
        """Validate configuration."""
        for name in ("client_id", "client_secret", "token_url", "instance_url"):
            if not getattr(config, name):
                raise ConfigurationError(f"{name} is required")
        for name in ("token_url", "instance_url"):
            if not getattr(config, name).startswith("https://"):
                raise ConfigurationError(f"{name} must be an https:// URL")
        if config.expiry_margin < 0:
            raise ConfigurationError("expiry_margin must not be negative")

    def _log(self, message: str, *args: Any) -> None:
        """Log debug message."""
        if self._debug:
            logger.debug(f"[CRM] {message}", *args)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                max_redirects=self._max_redirects,
                verify=True,
                headers={"User-Agent": self._user_agent},
            )
        return self._http_client

    @property
    def instance_url(self) -> str:
        return self._instance_url

    # =========================================================================
    # Token Grants
    # =========================================================================

    async def password_login(self, username: str, password: str) -> TokenPair:
        """
        Exchange username and password using the OAuth2 password grant.

        Raises:
            InvalidCredentialsError: Input failed the shape check (no request sent)
            AuthenticationFailedError: The identity provider rejected the grant
            UpstreamUnavailableError: Transport failure, timeout or 5xx
        """
        if not validate_credentials(username, password):
            raise InvalidCredentialsError()

        self._log(f"Password grant for: {username}")

        data = await self._request(
            self._token_url,
            method="POST",
            form={
                "grant_type": "password",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "username": username,
                "password": password,
            },
        )

        if not data.get("access_token"):
            raise UpstreamUnavailableError("No access token received")

        return TokenPair.from_grant(data, self._clock(), self._margin)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new token pair.

        Any failure is reported as RefreshFailedError; the caller must purge
        every cached credential before the session can be used again.
        """
        if not refresh_token:
            raise RefreshFailedError("No refresh token available")

        try:
            data = await self._request(
                self._token_url,
                method="POST",
                form={
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                },
            )
        except CrmAuthError as e:
            logger.warning(f"Token refresh failed: {e.code} ({e.status_code})")
            raise RefreshFailedError(details={"original_error": e.code, "status_code": e.status_code})

        if not data.get("access_token"):
            raise RefreshFailedError("No access token received")

        try:
            return TokenPair.from_grant(
                data,
                self._clock(),
                self._margin,
                fallback_refresh_token=refresh_token,
            )
        except CrmAuthError as e:
            logger.warning(f"Token refresh returned an unusable reply: {e.message}")
            raise RefreshFailedError(e.message, details=e.details)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def validate(self, access_token: str) -> bool:
        """Cheap liveness check against the user-info endpoint. Never raises."""
        try:
            await self._request(
                f"{self._instance_url}{USERINFO_PATH}",
                method="GET",
                access_token=access_token,
                retryable=False,
            )
        except CrmAuthError as e:
            self._log(f"Access token validation failed: {e.code}")
            return False
        return True

    async def fetch_principal(self, access_token: str) -> Principal:
        """Fetch user id, display name and email for the token's owner."""
        data = await self._request(
            f"{self._instance_url}{USERINFO_PATH}",
            method="GET",
            access_token=access_token,
        )

        if not data.get("user_id"):
            raise MissingAttributeError("user_id", "Invalid user info response")

        return Principal.from_dict(data)

    async def fetch_tenant_attribute(self, access_token: str, user_id: str) -> str:
        """Read the tenant assignment field from the user's record."""
        data = await self._request(
            f"{self._instance_url}/services/data/{self._api_version}"
            f"/sobjects/User/{quote(user_id, safe='')}",
            method="GET",
            access_token=access_token,
        )

        tenant_id = data.get(self._tenant_field)
        if not tenant_id:
            raise MissingAttributeError(self._tenant_field)

        return str(tenant_id)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _request(
        self,
        url: str,
        method: Literal["GET", "POST"],
        form: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
        retryable: bool = True,
    ) -> Dict[str, Any]:
        """Make HTTP request; only idempotent GETs are retried."""
        attempts = self._retry_attempts if retryable and method == "GET" else 0
        last_error: Optional[Exception] = None

        for attempt in range(attempts + 1):
            try:
                return await self._execute_request(url, method, form, access_token)
            except CrmAuthError as error:
                last_error = error

                if not is_retryable_error(error):
                    raise

                if attempt == attempts:
                    raise

                delay = RETRY_DELAYS[min(attempt, len(RETRY_DELAYS) - 1)]
                self._log(f"Retrying {method} after {delay}s ({error.code})")
                await asyncio.sleep(delay)

        raise last_error or UpstreamUnavailableError("Request failed after retries")

    async def _execute_request(
        self,
        url: str,
        method: str,
        form: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Execute a single HTTP request."""
        headers: Dict[str, str] = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            client = self._get_client()
            response = await client.request(
                method=method,
                url=url,
                headers=headers,
                data=form,
            )

            return self._handle_response(response)
        except httpx.TimeoutException:
            raise UpstreamUnavailableError("Request timeout", details={"timeout": self._timeout})
        except httpx.RequestError as e:
            raise UpstreamUnavailableError(str(e) or e.__class__.__name__)

    def _handle_response(self, response: httpx.Response) -> Dict[str, Any]:
        """Handle HTTP response and convert to appropriate result/error."""
        if response.is_success:
            try:
                data = response.json()
            except ValueError:
                raise UpstreamUnavailableError(
                    "Invalid JSON response", response.status_code
                )
            return data if isinstance(data, dict) else {}

        error_data: Dict[str, Any] = {}
        try:
            body = response.json()
            if isinstance(body, dict):
                error_data = body
            elif isinstance(body, list) and body and isinstance(body[0], dict):
                error_data = body[0]
        except ValueError:
            pass

        code = error_data.get("error") or error_data.get("errorCode") or "UNKNOWN_ERROR"
        message = (
            error_data.get("error_description")
            or error_data.get("message")
            or f"HTTP {response.status_code}"
        )
        details = {"error": code}

        if 400 <= response.status_code < 500:
            raise AuthenticationFailedError(message, response.status_code, details)
        raise UpstreamUnavailableError(message, response.status_code, details)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "IdentityProviderClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_identity_provider_client(config: CrmAuthConfig) -> IdentityProviderClient:
    """Create a new identity provider client."""
    return IdentityProviderClient(config)
