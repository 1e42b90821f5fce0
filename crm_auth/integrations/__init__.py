"""
CRM Auth Framework Integrations

Provides the request gate and session routes for web frameworks.
"""

from .fastapi import (
    CrmAuthFastAPI,
    SessionGateMiddleware,
    create_auth_router,
    get_optional_session,
    get_session,
)

__all__ = [
    "CrmAuthFastAPI",
    "SessionGateMiddleware",
    "create_auth_router",
    "get_optional_session",
    "get_session",
]
