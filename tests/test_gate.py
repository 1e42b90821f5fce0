"""
Request gate, session projection and registry tests.
"""

from datetime import datetime, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from crm_auth import (
    SessionRecord,
    SessionRegistry,
    TokenPair,
    check,
    is_authorized,
    login_error_message,
    project,
)
from crm_auth.errors import (
    AuthenticationFailedError,
    InvalidCredentialsError,
    MissingAttributeError,
    RefreshFailedError,
    UpstreamUnavailableError,
)
from crm_auth.projection import session_error_message


NOW = 1_700_000_000.0


def make_record(**overrides) -> SessionRecord:
    values = dict(
        session_id="s1",
        username="alice",
        user_id="U1",
        display_name="Alice",
        email="a@x.com",
        token_pair=TokenPair("AT1", "RT1", NOW + 3300),
        instance_url="https://example.my.salesforce.com",
        tenant_id="T1",
        created_at=NOW,
    )
    values.update(overrides)
    return SessionRecord(**values)


class TestGate:
    """Test the request gate."""

    def test_authorized(self):
        record = make_record()
        verdict = check(record, now=NOW)

        assert verdict.authorized
        assert verdict.session is record
        assert verdict.reason is None

    def test_no_session(self):
        assert check(None, now=NOW).reason == "no_session"

    @given(offset=st.floats(min_value=0, max_value=1e9, allow_nan=False))
    def test_rejects_at_or_after_expiry(self, offset):
        """Test no request passes once expires_at is reached."""
        record = make_record(token_pair=TokenPair("AT1", "RT1", NOW))
        assert not is_authorized(record, now=NOW + offset)

    @given(offset=st.floats(min_value=0.001, max_value=1e6, allow_nan=False))
    def test_allows_before_expiry(self, offset):
        record = make_record(token_pair=TokenPair("AT1", "RT1", NOW + offset))
        assert is_authorized(record, now=NOW)

    @pytest.mark.parametrize("expires_at", ["1700003300", None, True, [1]])
    def test_rejects_non_numeric_expiry(self, expires_at):
        """Test a malformed expiry is rejected, never treated as far future."""
        record = make_record(token_pair=TokenPair("AT1", "RT1", expires_at))

        verdict = check(record, now=NOW)

        assert not verdict.authorized
        assert verdict.reason == "invalid_expiry"

    def test_rejects_errored_session(self):
        record = make_record(token_pair=None, error_flag="RefreshAccessTokenError")
        assert check(record, now=NOW).reason == "invalid_expiry"

    @pytest.mark.parametrize("field", ["instance_url", "tenant_id"])
    def test_rejects_incomplete_session(self, field):
        record = make_record(**{field: ""})
        assert check(record, now=NOW).reason == "incomplete_session"

    def test_rejects_empty_access_token(self):
        record = make_record(token_pair=TokenPair("", "RT1", NOW + 3300))
        assert check(record, now=NOW).reason == "incomplete_session"

    def test_integer_expiry_accepted(self):
        record = make_record(token_pair=TokenPair("AT1", "RT1", int(NOW) + 60))
        assert is_authorized(record, now=NOW)


class TestProjection:
    """Test the external session shape."""

    def test_project_fresh_session(self):
        view = project(make_record()).to_dict()

        assert view == {
            "user": {
                "name": "Alice",
                "email": "a@x.com",
                "accessToken": "AT1",
                "instanceUrl": "https://example.my.salesforce.com",
                "tenantId": "T1",
            },
            "expires": datetime.fromtimestamp(NOW + 3300, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
        }

    def test_project_errored_session(self):
        view = project(make_record(token_pair=None, error_flag="RefreshAccessTokenError"))

        assert view.error == "RefreshAccessTokenError"
        assert view.needs_reauth
        assert view.user.access_token is None
        assert "expires" not in view.to_dict()
        assert session_error_message(view) == "Your session has expired. Please sign in again."

    def test_fresh_session_has_no_reauth_message(self):
        assert session_error_message(project(make_record())) is None

    @pytest.mark.parametrize("error", [
        InvalidCredentialsError(),
        AuthenticationFailedError("invalid_grant: authentication failure", 400),
        UpstreamUnavailableError("Request timed out"),
        MissingAttributeError("ShozokuTenpoID__c"),
        RefreshFailedError(),
        ValueError("boom"),
    ])
    def test_login_error_message_is_generic(self, error):
        """Test the login message never distinguishes failure causes."""
        assert login_error_message(error) == "Authentication failed"


class TestRegistry:
    """Test the session registry."""

    def test_add_get_remove(self):
        registry = SessionRegistry(clock=lambda: NOW)
        record = make_record()

        registry.add(record)

        assert registry.get("s1") is record
        assert registry.remove("s1") is record
        assert registry.get("s1") is None
        assert registry.remove("s1") is None

    @pytest.mark.parametrize("session_id", [None, "", "unknown"])
    def test_unknown_ids(self, session_id):
        assert SessionRegistry().get(session_id) is None

    def test_expires_after_max_age(self):
        now = [NOW]
        registry = SessionRegistry(max_age=60, clock=lambda: now[0])
        registry.add(make_record())

        now[0] += 60
        assert registry.get("s1") is not None

        now[0] += 1
        assert registry.get("s1") is None
        assert len(registry) == 0

    def test_session_ids_are_random(self):
        from crm_auth.registry import new_session_id

        ids = {new_session_id() for _ in range(100)}
        assert len(ids) == 100
