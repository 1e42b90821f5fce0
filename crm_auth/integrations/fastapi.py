"""
CRM Auth FastAPI Integration

Composition root, request gate dependencies, gate middleware and the
login/logout/session routes for FastAPI applications.

Usage:
    from contextlib import asynccontextmanager
    from fastapi import FastAPI, Depends
    from crm_auth import CrmAuthConfig, SessionRecord
    from crm_auth.integrations.fastapi import CrmAuthFastAPI, get_session

    crm_auth = CrmAuthFastAPI(config=CrmAuthConfig.from_env())

    @asynccontextmanager
    async def lifespan(app):
        yield
        await crm_auth.close()

    app = FastAPI(lifespan=lifespan)
    crm_auth.init_app(app)

    @app.get("/customers")
    async def customers(session: SessionRecord = Depends(get_session)):
        return {"tenant": session.tenant_id}
"""

import logging
from typing import Any, Callable, Dict, Optional, Set, Tuple

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from ..client import IdentityProviderClient
from ..errors import REAUTH_MESSAGE, REFRESH_ERROR_MARKER, CrmAuthError
from ..gate import check
from ..manager import SessionTokenManager
from ..projection import login_error_message, project
from ..registry import SessionRegistry
from ..storage import CredentialStore
from ..types import CrmAuthConfig, SessionRecord

logger = logging.getLogger("crm_auth.fastapi")

SESSION_COOKIE = "crm_session"
STATE_KEY = "crm_session"


class CrmAuthFastAPI:
    """
    FastAPI integration for CRM Auth.

    Builds the process-wide credential store, identity provider client,
    session registry and session manager, and exposes them to request
    handlers through ``app.state.crm_auth``.

    Args:
        app: FastAPI application instance (optional, can use init_app later)
        config: Identity provider and session settings
        prefix: Mount point of the auth routes (None to skip mounting)
        secure_cookie: Set the Secure flag on the session cookie
    """

    def __init__(
        self,
        app: Optional[Any] = None,  # FastAPI
        config: Optional[CrmAuthConfig] = None,
        prefix: Optional[str] = "/auth",
        secure_cookie: bool = True,
    ) -> None:
        self.config = config or CrmAuthConfig.from_env()
        self.prefix = prefix
        self.secure_cookie = secure_cookie

        self.store = CredentialStore()
        self.client = IdentityProviderClient(self.config)
        self.registry = SessionRegistry(max_age=self.config.session_max_age)
        self.manager = SessionTokenManager(
            self.client,
            self.store,
            self.registry,
            margin=self.config.expiry_margin,
            single_flight=self.config.single_flight_refresh,
            debug=self.config.debug,
        )

        if app is not None:
            self.init_app(app)

    def init_app(self, app: Any) -> None:
        """Attach to a FastAPI app and mount the auth routes."""
        app.state.crm_auth = self
        if self.prefix is not None:
            app.include_router(create_auth_router(), prefix=self.prefix)
        logger.info(f"CrmAuthFastAPI initialized (instance={self.client.instance_url})")

    async def close(self) -> None:
        """Close the identity provider HTTP client."""
        await self.client.close()


def _get_auth(request: Request) -> CrmAuthFastAPI:
    """Get the CrmAuthFastAPI instance attached to the app."""
    auth = getattr(request.app.state, "crm_auth", None)
    if auth is None:
        raise RuntimeError(
            "CrmAuthFastAPI not initialized. Call CrmAuthFastAPI(app, config=...) first."
        )
    return auth


def session_id_from(request: Request) -> Optional[str]:
    """Session id from the session cookie or a Bearer Authorization header."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        return session_id
    authorization = request.headers.get("Authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]
    return None


async def _materialize(request: Request) -> Optional[SessionRecord]:
    """Resolve the request's session through the read-time refresh check."""
    cached = getattr(request.state, STATE_KEY, None)
    if cached is not None:
        return cached
    auth = _get_auth(request)
    record = await auth.manager.resolve(session_id_from(request))
    if record is not None:
        setattr(request.state, STATE_KEY, record)
    return record


def _reject(record: Optional[SessionRecord]) -> HTTPException:
    if record is not None and record.is_errored:
        return HTTPException(
            status_code=401,
            detail={"error": REFRESH_ERROR_MARKER, "message": REAUTH_MESSAGE},
        )
    return HTTPException(status_code=401, detail="Not authenticated")


async def get_session(request: Request) -> SessionRecord:
    """
    FastAPI dependency returning the authorized session.

    Usage:
        @app.get("/menus")
        async def menus(session: SessionRecord = Depends(get_session)):
            return {"tenant": session.tenant_id}

    Raises:
        HTTPException: 401 if there is no authorized session; the detail carries
            the RefreshAccessTokenError marker when the user must sign in again
    """
    record = await _materialize(request)
    verdict = check(record)
    if not verdict.authorized or verdict.session is None:
        logger.debug(f"Gate rejected request: {verdict.reason}")
        raise _reject(record)
    return verdict.session


async def get_optional_session(request: Request) -> Optional[SessionRecord]:
    """FastAPI dependency returning the authorized session or None."""
    record = await _materialize(request)
    return check(record).session


async def _read_credentials(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
            return body if isinstance(body, dict) else {}
        form = await request.form()
        return {key: form.get(key) for key in ("username", "password")}
    except ValueError:
        return {}


def create_auth_router() -> APIRouter:
    """Login, logout and session routes."""
    router = APIRouter()

    @router.post("/login")
    async def login(request: Request) -> JSONResponse:
        auth = _get_auth(request)
        payload = await _read_credentials(request)

        try:
            record = await auth.manager.login(payload.get("username"), payload.get("password"))
        except CrmAuthError as e:
            return JSONResponse(
                status_code=401,
                content={"error": "AuthenticationFailed", "message": login_error_message(e)},
            )

        response = JSONResponse(project(record).to_dict())
        response.set_cookie(
            SESSION_COOKIE,
            record.session_id,
            max_age=auth.config.session_max_age,
            httponly=True,
            secure=auth.secure_cookie,
            samesite="lax",
        )
        return response

    @router.post("/logout")
    async def logout(request: Request) -> JSONResponse:
        auth = _get_auth(request)
        record = auth.registry.get(session_id_from(request))
        if record is not None:
            auth.manager.logout(record)
        response = JSONResponse({"success": True})
        response.delete_cookie(SESSION_COOKIE)
        return response

    @router.get("/session")
    async def session(request: Request) -> Dict[str, Any]:
        record = await _materialize(request)
        if record is None or (record.token_pair is None and not record.is_errored):
            return {}
        return project(record).to_dict()

    return router


class SessionGateMiddleware:
    """
    ASGI middleware applying the request gate before any handler runs.

    Public paths pass through untouched. Every other HTTP request must carry
    an authorized session; the materialized session is left in request state
    for the ``get_session`` dependency.

    Usage:
        app.add_middleware(SessionGateMiddleware, public_paths={"/", "/health"})
    """

    def __init__(
        self,
        app: Any,
        public_paths: Optional[Set[str]] = None,
        public_prefixes: Tuple[str, ...] = ("/auth/",),
    ) -> None:
        self.app = app
        self.public_paths = public_paths or {"/", "/health", "/login", "/docs", "/openapi.json"}
        self.public_prefixes = public_prefixes

    def _is_public(self, path: str) -> bool:
        return path in self.public_paths or path.startswith(self.public_prefixes)

    async def __call__(self, scope: Dict, receive: Callable, send: Callable) -> None:
        if scope["type"] != "http" or self._is_public(scope.get("path", "/")):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        record = await _materialize(request)
        verdict = check(record)
        if not verdict.authorized:
            logger.debug(f"Gate rejected {scope.get('path')}: {verdict.reason}")
            rejection = _reject(record)
            response = JSONResponse(
                status_code=rejection.status_code,
                content={"detail": rejection.detail},
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
