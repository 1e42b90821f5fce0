"""
CRM Auth Credential Store

In-memory, process-lifetime cache of issued token pairs keyed by username.
Each entry carries a SHA-256 digest of its fields; an entry whose digest no
longer matches is evicted and reported as a cache miss.

The store is never authoritative: the identity provider is.
"""

import hashlib
import hmac
import json
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .types import TokenPair


logger = logging.getLogger("crm_auth")


def compute_digest(access_token: str, refresh_token: str, expires_at: float) -> str:
    """
    Compute the integrity digest of a token pair.

    Fields are serialized as compact, key-sorted JSON so the digest does not
    depend on attribute order.
    """
    canonical = json.dumps(
        {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
        },
        separators=(",", ":"),
        sort_keys=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def safe_compare(a: str, b: str) -> bool:
    """Timing-safe string comparison."""
    return hmac.compare_digest(a, b)


@dataclass
class CachedCredential:
    """Stored token fields plus the digest computed when they were written."""

    access_token: str
    refresh_token: str
    expires_at: float
    digest: str

    @classmethod
    def seal(cls, token_pair: TokenPair) -> "CachedCredential":
        return cls(
            access_token=token_pair.access_token,
            refresh_token=token_pair.refresh_token,
            expires_at=token_pair.expires_at,
            digest=compute_digest(
                token_pair.access_token,
                token_pair.refresh_token,
                token_pair.expires_at,
            ),
        )

    def is_intact(self) -> bool:
        expected = compute_digest(self.access_token, self.refresh_token, self.expires_at)
        return safe_compare(expected, self.digest)

    def to_token_pair(self) -> TokenPair:
        return TokenPair(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
        )


class CredentialStore:
    """Tamper-evident in-memory token cache (default, non-persistent)."""

    def __init__(self) -> None:
        self._entries: Dict[str, CachedCredential] = {}
        self._lock = threading.Lock()

    def put(self, key: str, token_pair: TokenPair) -> None:
        """Store a token pair with its integrity digest."""
        with self._lock:
            self._entries[key] = CachedCredential.seal(token_pair)

    def get(self, key: str) -> Optional[TokenPair]:
        """Return the stored pair, or None when absent or corrupted."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.is_intact():
                del self._entries[key]
                logger.warning("Evicted cached credential with mismatched digest")
                return None
            return entry.to_token_pair()

    def clear(self, key: Optional[str] = None) -> None:
        """Remove one entry, or every entry when no key is given."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
