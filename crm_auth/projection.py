"""
Session projection.

Maps a session record onto the shape consumed by the UI and the record proxy
endpoints. Consumers must check ``error`` before trusting ``accessToken``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import GENERIC_LOGIN_MESSAGE, REAUTH_MESSAGE, REFRESH_ERROR_MARKER
from .types import SessionRecord


@dataclass
class SessionUser:
    """User block of the projected session."""

    name: str
    email: str
    access_token: Optional[str]
    instance_url: str
    tenant_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "accessToken": self.access_token,
            "instanceUrl": self.instance_url,
            "tenantId": self.tenant_id,
        }


@dataclass
class SessionView:
    """Externally visible session."""

    user: SessionUser
    error: Optional[str] = None
    expires: Optional[str] = None

    @property
    def needs_reauth(self) -> bool:
        return self.error == REFRESH_ERROR_MARKER

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"user": self.user.to_dict()}
        if self.error is not None:
            result["error"] = self.error
        if self.expires is not None:
            result["expires"] = self.expires
        return result


def project(record: SessionRecord) -> SessionView:
    """Build the external view of a session."""
    expires = None
    if record.expires_at is not None:
        expires = (
            datetime.fromtimestamp(record.expires_at, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z")
        )

    return SessionView(
        user=SessionUser(
            name=record.display_name,
            email=record.email,
            access_token=record.access_token,
            instance_url=record.instance_url,
            tenant_id=record.tenant_id,
        ),
        error=REFRESH_ERROR_MARKER if record.is_errored else None,
        expires=expires,
    )


def login_error_message(error: Exception) -> str:
    """
    User-facing message for a failed login.

    Every cause maps to the same text so the response does not reveal
    whether the credentials or the transport failed.

    Args:
        error: The caught login failure. It is accepted so route handlers
            pass whatever they caught, but it never changes the text.
    """
    return GENERIC_LOGIN_MESSAGE


def session_error_message(view: SessionView) -> Optional[str]:
    """Re-login prompt for a session in the refresh-failed state."""
    return REAUTH_MESSAGE if view.needs_reauth else None
