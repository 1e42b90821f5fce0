"""
In-memory registry of live sessions keyed by an opaque session id.
"""

import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

from .types import SessionRecord


logger = logging.getLogger("crm_auth")

DEFAULT_SESSION_MAX_AGE = 12 * 60 * 60


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionRegistry:
    """Process-lifetime session table; entries older than max_age are dropped."""

    def __init__(
        self,
        max_age: int = DEFAULT_SESSION_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self._max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()

    def add(self, record: SessionRecord) -> None:
        with self._lock:
            self._sessions[record.session_id] = record

    def get(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """Look up a session, discarding it once it has outlived max_age."""
        if not session_id:
            return None
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            if self._clock() - record.created_at > self._max_age:
                del self._sessions[session_id]
                logger.info("Session expired after max age", extra={"user_id": record.user_id})
                return None
            return record

    def remove(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
