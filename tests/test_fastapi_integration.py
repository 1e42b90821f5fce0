"""
FastAPI integration tests.

Drives the auth routes, the gate dependency and the gate middleware through
a TestClient, with the identity provider mocked over HTTP.
"""

import time

import httpx
import pytest
import respx
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from crm_auth import CrmAuthConfig, SessionRecord, TokenPair
from crm_auth.integrations.fastapi import (
    SESSION_COOKIE,
    CrmAuthFastAPI,
    SessionGateMiddleware,
    get_optional_session,
    get_session,
)


TOKEN_URL = "https://login.example.com/services/oauth2/token"
INSTANCE_URL = "https://example.my.salesforce.com"
USERINFO_URL = f"{INSTANCE_URL}/services/oauth2/userinfo"
USER_RECORD_URL = f"{INSTANCE_URL}/services/data/v58.0/sobjects/User/U1"


@pytest.fixture
def config() -> CrmAuthConfig:
    return CrmAuthConfig(
        client_id="client-123",
        client_secret="secret-456",
        token_url=TOKEN_URL,
        instance_url=INSTANCE_URL,
    )


@pytest.fixture
def auth(config: CrmAuthConfig) -> CrmAuthFastAPI:
    return CrmAuthFastAPI(config=config, secure_cookie=False)


@pytest.fixture
def app(auth: CrmAuthFastAPI) -> FastAPI:
    app = FastAPI()
    auth.init_app(app)

    @app.get("/menus")
    async def menus(session: SessionRecord = Depends(get_session)):
        return {"tenant": session.tenant_id}

    @app.get("/whoami")
    async def whoami(session=Depends(get_optional_session)):
        return {"user": session.display_name if session else None}

    return app


def mock_identity_provider(tenant="T1") -> None:
    respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={
        "access_token": "AT1",
        "refresh_token": "RT1",
        "expires_in": 3600,
    }))
    respx.get(USERINFO_URL).mock(return_value=httpx.Response(200, json={
        "user_id": "U1",
        "name": "Alice",
        "email": "a@x.com",
    }))
    body = {"Id": "U1"}
    if tenant is not None:
        body["ShozokuTenpoID__c"] = tenant
    respx.get(USER_RECORD_URL).mock(return_value=httpx.Response(200, json=body))


def expire_soon(auth: CrmAuthFastAPI, client: TestClient) -> SessionRecord:
    """Move the logged-in session inside the refresh margin with nothing cached."""
    record = auth.registry.get(client.cookies.get(SESSION_COOKIE))
    record.token_pair = TokenPair("AT1", "RT1", time.time() + 60)
    auth.store.clear()
    return record


class TestLoginRoutes:
    """Test the auth routes."""

    @respx.mock
    def test_login_sets_cookie_and_returns_session(self, app, auth):
        mock_identity_provider()

        with TestClient(app) as client:
            response = client.post("/auth/login", json={"username": "alice", "password": "secret"})

            assert response.status_code == 200
            body = response.json()
            assert body["user"]["tenantId"] == "T1"
            assert body["user"]["accessToken"] == "AT1"
            assert body["expires"].endswith("Z")
            assert "error" not in body
            assert client.cookies.get(SESSION_COOKIE)
            assert len(auth.registry) == 1

    @respx.mock
    def test_login_accepts_form_data(self, app):
        mock_identity_provider()

        with TestClient(app) as client:
            response = client.post("/auth/login", data={"username": "alice", "password": "secret"})

        assert response.status_code == 200

    @respx.mock
    def test_rejected_login_is_generic(self, app, auth):
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "authentication failure",
            })
        )

        with TestClient(app) as client:
            response = client.post("/auth/login", json={"username": "alice", "password": "bad"})

        assert response.status_code == 401
        assert response.json() == {
            "error": "AuthenticationFailed",
            "message": "Authentication failed",
        }
        assert len(auth.registry) == 0

    @respx.mock
    def test_missing_tenant_is_generic(self, app):
        mock_identity_provider(tenant=None)

        with TestClient(app) as client:
            response = client.post("/auth/login", json={"username": "alice", "password": "secret"})

        assert response.status_code == 401
        assert response.json()["message"] == "Authentication failed"

    @respx.mock
    def test_malformed_username_makes_no_calls(self, app):
        with TestClient(app) as client:
            response = client.post("/auth/login", json={"username": "<script>", "password": "x"})

        assert response.status_code == 401
        assert respx.calls.call_count == 0

    @respx.mock
    def test_missing_fields(self, app):
        with TestClient(app) as client:
            response = client.post("/auth/login", json={})

        assert response.status_code == 401

    @respx.mock
    def test_session_endpoint(self, app):
        mock_identity_provider()

        with TestClient(app) as client:
            assert client.get("/auth/session").json() == {}

            client.post("/auth/login", json={"username": "alice", "password": "secret"})
            body = client.get("/auth/session").json()

        assert body["user"]["name"] == "Alice"

    @respx.mock
    def test_logout(self, app, auth):
        mock_identity_provider()

        with TestClient(app) as client:
            client.post("/auth/login", json={"username": "alice", "password": "secret"})
            response = client.post("/auth/logout")

            assert response.json() == {"success": True}
            assert len(auth.registry) == 0
            assert len(auth.store) == 0
            assert client.get("/menus").status_code == 401


class TestGateDependency:
    """Test the get_session dependency."""

    def test_rejects_without_session(self, app):
        with TestClient(app) as client:
            response = client.get("/menus")

        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"

    @respx.mock
    def test_allows_logged_in_session(self, app):
        mock_identity_provider()

        with TestClient(app) as client:
            client.post("/auth/login", json={"username": "alice", "password": "secret"})
            response = client.get("/menus")

        assert response.status_code == 200
        assert response.json() == {"tenant": "T1"}

    @respx.mock
    def test_bearer_session_id(self, app, auth):
        mock_identity_provider()

        with TestClient(app) as client:
            client.post("/auth/login", json={"username": "alice", "password": "secret"})
            session_id = client.cookies.get(SESSION_COOKIE)
            client.cookies.clear()

            response = client.get("/menus", headers={"Authorization": f"Bearer {session_id}"})

        assert response.status_code == 200

    @respx.mock
    def test_failed_refresh_requires_reauth(self, app, auth):
        mock_identity_provider()

        with TestClient(app) as client:
            client.post("/auth/login", json={"username": "alice", "password": "secret"})
            expire_soon(auth, client)
            respx.get(USERINFO_URL).mock(return_value=httpx.Response(401))
            respx.post(TOKEN_URL).mock(
                return_value=httpx.Response(400, json={"error": "invalid_grant"})
            )

            response = client.get("/menus")
            session = client.get("/auth/session").json()

        assert response.status_code == 401
        assert response.json()["detail"] == {
            "error": "RefreshAccessTokenError",
            "message": "Your session has expired. Please sign in again.",
        }
        assert session["error"] == "RefreshAccessTokenError"
        assert len(auth.store) == 0

    @respx.mock
    def test_refresh_on_read(self, app, auth):
        mock_identity_provider()

        with TestClient(app) as client:
            client.post("/auth/login", json={"username": "alice", "password": "secret"})
            record = expire_soon(auth, client)
            respx.get(USERINFO_URL).mock(return_value=httpx.Response(401))
            respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={
                "access_token": "AT2",
                "expires_in": 3600,
            }))

            response = client.get("/menus")

        assert response.status_code == 200
        assert record.access_token == "AT2"

    def test_optional_session(self, app):
        with TestClient(app) as client:
            assert client.get("/whoami").json() == {"user": None}

    def test_uninitialized_app(self):
        app = FastAPI()

        @app.get("/menus")
        async def menus(session: SessionRecord = Depends(get_session)):
            return {}

        with TestClient(app, raise_server_exceptions=True) as client:
            with pytest.raises(RuntimeError):
                client.get("/menus")


class TestGateMiddleware:
    """Test the ASGI gate middleware."""

    @pytest.fixture
    def gated_app(self, auth: CrmAuthFastAPI) -> FastAPI:
        app = FastAPI()
        auth.init_app(app)
        app.add_middleware(SessionGateMiddleware)

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        @app.get("/orders")
        async def orders(session: SessionRecord = Depends(get_session)):
            return {"tenant": session.tenant_id}

        return app

    def test_public_path(self, gated_app):
        with TestClient(gated_app) as client:
            assert client.get("/health").status_code == 200

    def test_rejects_protected_path(self, gated_app):
        with TestClient(gated_app) as client:
            response = client.get("/orders")

        assert response.status_code == 401
        assert response.json() == {"detail": "Not authenticated"}

    @respx.mock
    def test_allows_logged_in_session(self, gated_app):
        mock_identity_provider()

        with TestClient(gated_app) as client:
            login = client.post("/auth/login", json={"username": "alice", "password": "secret"})
            response = client.get("/orders")

        assert login.status_code == 200
        assert response.json() == {"tenant": "T1"}
