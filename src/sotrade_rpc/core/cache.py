"""
Short-lived response cache keyed by the canonical form of a request.
"""

import copy
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .message import CACHE_EXCLUDED_FIELDS


def canonical_key(request: Dict[str, Any]) -> str:
    """Stable serialization of a request, ignoring identity/caching fields."""
    stripped = copy.deepcopy(request)
    for name in CACHE_EXCLUDED_FIELDS:
        stripped.pop(name, None)
    return json.dumps(stripped, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class CacheEntry:
    response: Dict[str, Any]
    received_at: float
    expires_at: float
    ttl: float

    def is_fresh(self, now: float, ttl: Optional[float] = None) -> bool:
        window = self.ttl if ttl is None else ttl
        return (now - self.received_at) < window


class ResponseCache:
    """
    TTL store of decoded responses.

    Expiry is lazy: ``purge_expired`` is called before cache-eligible
    requests rather than on a timer. Times are in seconds.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def lookup(self, key: str, now: float, ttl: Optional[float] = None) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if it is younger than ``ttl``.

        ``ttl`` defaults to the TTL the entry was stored with; callers pass
        the TTL of the request being served.
        """
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(now, ttl):
            return None
        return entry

    def purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def insert(self, key: str, response: Dict[str, Any], ttl: float, now: float) -> CacheEntry:
        entry = CacheEntry(
            response=response,
            received_at=now,
            expires_at=now + ttl,
            ttl=ttl,
        )
        self._entries[key] = entry
        return entry

    def discard(self, key: str):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()
