"""
CRM Auth - FastAPI Integration Example

Order-taking backend whose menu and order routes require a CRM session.

Requires SF_CLIENT_ID, SF_CLIENT_SECRET, SF_TOKEN_URL and SF_INSTANCE_URL.

Run with: uvicorn fastapi_example:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI

from crm_auth import CrmAuthConfig, DebouncedScheduler, SessionRecord
from crm_auth.integrations.fastapi import (
    CrmAuthFastAPI,
    SessionGateMiddleware,
    get_optional_session,
    get_session,
)

logging.basicConfig(level=logging.INFO)

crm_auth = CrmAuthFastAPI(config=CrmAuthConfig.from_env())

# Coalesces rapid quantity edits into one write per order line
order_updates = DebouncedScheduler(delay=0.5)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await order_updates.aclose()
    await crm_auth.close()


app = FastAPI(
    title="CRM Auth FastAPI Example",
    description="Order UI backend protected by CRM sessions",
    lifespan=lifespan,
)
crm_auth.init_app(app)
app.add_middleware(SessionGateMiddleware, public_paths={"/", "/health", "/docs", "/openapi.json"})


@app.get("/")
async def root(session: Optional[SessionRecord] = Depends(get_optional_session)):
    """Public endpoint."""
    if session:
        return {"message": f"Hello, {session.display_name}!"}
    return {"message": "Hello, guest! POST /auth/login to sign in."}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/menus")
async def menus(session: SessionRecord = Depends(get_session)):
    """Menus of the user's home store."""
    return {"tenant": session.tenant_id, "items": []}


@app.put("/orders/{order_id}/lines/{line_id}")
async def update_line(
    order_id: str,
    line_id: str,
    quantity: int,
    session: SessionRecord = Depends(get_session),
):
    """
    Change a line quantity.

    Repeated edits within the debounce window collapse into one write.
    """
    async def write():
        # Would PATCH the order line on session.instance_url
        return {"order": order_id, "line": line_id, "quantity": quantity}

    return await order_updates.submit(f"{order_id}:{line_id}", write)
