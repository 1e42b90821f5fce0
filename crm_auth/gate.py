"""
Request authorization gate.

A pure predicate over a materialized session. It never refreshes; refreshing
belongs to the session manager, which runs before the gate is consulted.
"""

import time
from dataclasses import dataclass
from typing import Optional

from .types import SessionRecord


@dataclass(frozen=True)
class GateVerdict:
    """Outcome of the gate; ``session`` is only set when authorized."""
    authorized: bool
    session: Optional[SessionRecord] = None
    reason: Optional[str] = None


def check(record: Optional[SessionRecord], now: Optional[float] = None) -> GateVerdict:
    """Evaluate the gate and explain a rejection."""
    if record is None:
        return GateVerdict(False, reason="no_session")

    expires_at = record.expires_at
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
        return GateVerdict(False, reason="invalid_expiry")

    if now is None:
        now = time.time()
    if now >= expires_at:
        return GateVerdict(False, reason="expired")

    if not record.access_token or not record.instance_url or not record.tenant_id:
        return GateVerdict(False, reason="incomplete_session")

    return GateVerdict(True, session=record)


def is_authorized(record: Optional[SessionRecord], now: Optional[float] = None) -> bool:
    return check(record, now).authorized
