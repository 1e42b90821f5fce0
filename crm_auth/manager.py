"""
CRM Auth Session Token Manager

Login, read-time refresh and logout for CRM sessions.

Refresh is lazy: it happens when a session is read and its token pair is
within the expiry margin, never on a timer. Before spending the single-use
refresh token the current access token is checked against the user-info
endpoint; only a failed check leads to the refresh grant.

A rejected refresh purges the credential store and marks the session with
``RefreshAccessTokenError``. That state is terminal: later reads return the
marker without network calls until the user logs in again.
"""

import logging
import time
from typing import Any, Callable, Optional

from .client import IdentityProviderClient
from .errors import (
    REFRESH_ERROR_MARKER,
    AuthenticationFailedError,
    CrmAuthError,
    RefreshFailedError,
    UpstreamUnavailableError,
)
from .registry import SessionRegistry, new_session_id
from .singleflight import SingleFlight
from .storage import CredentialStore
from .types import DEFAULT_EXPIRY_MARGIN, SessionRecord, SessionState, TokenPair


logger = logging.getLogger("crm_auth.manager")


class SessionTokenManager:
    """
    Owns the token lifecycle of every session in the process.

    The credential store and registry are injected so the composition root
    decides their lifetime and tests can use fresh instances.

    Concurrent renewals are deduplicated per refresh token: reads of the
    same session (or of sessions sharing one token pair) wait for a single
    validate/refresh. Separate logins hold separate refresh tokens and renew
    independently, so a rejected refresh errors only the sessions that held
    that token. The store purge that follows still clears every cached pair.
    """

    def __init__(
        self,
        client: IdentityProviderClient,
        store: CredentialStore,
        registry: Optional[SessionRegistry] = None,
        margin: int = DEFAULT_EXPIRY_MARGIN,
        single_flight: bool = True,
        clock: Callable[[], float] = time.time,
        debug: bool = False,
    ) -> None:
        self._client = client
        self._store = store
        self._registry = registry
        self._margin = margin
        self._single_flight = single_flight
        self._clock = clock
        self._debug = debug
        self._flight: SingleFlight[TokenPair] = SingleFlight()

    def _log(self, message: str, *args: Any) -> None:
        """Log debug message."""
        if self._debug:
            logger.debug(f"[Session] {message}", *args)

    @property
    def store(self) -> CredentialStore:
        return self._store

    @property
    def registry(self) -> Optional[SessionRegistry]:
        return self._registry

    # =========================================================================
    # Login / Logout
    # =========================================================================

    async def login(self, username: str, password: str) -> SessionRecord:
        """
        Authenticate and build a new session.

        The password grant, principal lookup and tenant lookup must all
        succeed. Upstream outages are reported as a generic authentication
        failure; the underlying cause is logged.

        Raises:
            InvalidCredentialsError: Credentials failed the shape check
            AuthenticationFailedError: Rejected by the identity provider, or upstream unavailable
            MissingAttributeError: User info or tenant assignment missing
        """
        self._log(f"Login attempt for: {username}")

        try:
            token_pair = await self._client.password_login(username, password)
            principal = await self._client.fetch_principal(token_pair.access_token)
            tenant_id = await self._client.fetch_tenant_attribute(
                token_pair.access_token, principal.user_id
            )
        except UpstreamUnavailableError as e:
            logger.warning(
                f"Login failed, identity provider unavailable: {e.message} ({e.status_code})"
            )
            raise AuthenticationFailedError(details={"cause": e.code}) from e
        except CrmAuthError as e:
            logger.info(f"Login failed: {e.code}")
            raise

        self._store.put(username, token_pair)

        record = SessionRecord(
            session_id=new_session_id(),
            username=username,
            user_id=principal.user_id,
            display_name=principal.display_name,
            email=principal.email,
            token_pair=token_pair,
            instance_url=self._client.instance_url,
            tenant_id=tenant_id,
            created_at=self._clock(),
            state=SessionState.FRESH,
        )
        if self._registry is not None:
            self._registry.add(record)

        logger.info("Login successful", extra={"user_id": record.user_id})
        return record

    def logout(self, record: SessionRecord) -> None:
        """Drop the session and every cached credential, from any state."""
        self._store.clear()
        record.token_pair = None
        record.error_flag = None
        record.state = SessionState.UNAUTHENTICATED
        if self._registry is not None:
            self._registry.remove(record.session_id)
        self._log(f"Logout: {record.session_id}")

    # =========================================================================
    # Read-time Refresh
    # =========================================================================

    async def resolve(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """Look up a registered session and run the read-time check on it."""
        if self._registry is None:
            return None
        record = self._registry.get(session_id)
        if record is None:
            return None
        return await self.read(record)

    async def read(self, record: SessionRecord) -> SessionRecord:
        """
        Return the session with a usable token pair, refreshing if needed.

        Errored and logged-out records are returned unchanged with no remote
        calls. A rejected refresh is recorded on the session, not raised.
        """
        if record.token_pair is None:
            record.state = (
                SessionState.ERRORED if record.is_errored else SessionState.UNAUTHENTICATED
            )
            return record

        if record.token_pair.remaining(self._clock()) >= self._margin:
            record.state = SessionState.FRESH
            return record

        record.state = SessionState.NEAR_EXPIRY
        current = record.token_pair

        try:
            if self._single_flight:
                token_pair = await self._flight.do(
                    current.refresh_token, lambda: self._renew(record, current)
                )
            else:
                token_pair = await self._renew(record, current)
        except RefreshFailedError as e:
            record.token_pair = None
            record.error_flag = REFRESH_ERROR_MARKER
            record.state = SessionState.ERRORED
            logger.warning(
                f"Session requires re-authentication: {e.message}",
                extra={"user_id": record.user_id},
            )
            return record

        record.token_pair = token_pair
        record.state = SessionState.FRESH
        return record

    async def _renew(self, record: SessionRecord, current: TokenPair) -> TokenPair:
        """Return a usable pair: cached, validated-current or refreshed."""
        cached = self._store.get(record.username)
        if (
            cached is not None
            and cached != current
            and cached.remaining(self._clock()) >= self._margin
        ):
            self._log(f"Adopting cached token pair for {record.user_id}")
            return cached

        if await self._client.validate(current.access_token):
            self._log(f"Access token still valid for {record.user_id}")
            return current

        record.state = SessionState.REFRESHING
        try:
            token_pair = await self._client.refresh(current.refresh_token)
        except RefreshFailedError:
            self._store.clear()
            raise

        self._store.put(record.username, token_pair)
        logger.info("Access token refreshed", extra={"user_id": record.user_id})
        return token_pair

    def state_of(self, record: Optional[SessionRecord], now: Optional[float] = None) -> SessionState:
        """Derive the lifecycle state of a record at ``now``."""
        if record is None:
            return SessionState.UNAUTHENTICATED
        if record.token_pair is None:
            return SessionState.ERRORED if record.is_errored else SessionState.UNAUTHENTICATED
        if record.state == SessionState.REFRESHING:
            return record.state
        now = self._clock() if now is None else now
        if record.token_pair.remaining(now) < self._margin:
            return SessionState.NEAR_EXPIRY
        return SessionState.FRESH
