"""Process-local TTL cache for gating decisions and usage stats."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from typing import Any

from src.core.constants import CACHE_TTL_SECONDS
from src.core.logging import get_logger

log = get_logger(__name__)

STATS_KEY = "__stats__"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class DecisionCache:
    """Entries keyed by (org, feature) with absolute monotonic expiry.

    Values are copied in and out, so callers never share a cached object.
    """

    def __init__(self, ttl_seconds: float = CACHE_TTL_SECONDS, enabled: bool = True) -> None:
        self._ttl = ttl_seconds
        self._enabled = enabled
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    def get(self, org_id: str, key: str) -> Any | None:
        if not self._enabled:
            return None
        entry = self._entries.get((org_id, key))
        if entry is None:
            return None
        if time.monotonic() >= entry.expires_at:
            del self._entries[(org_id, key)]
            return None
        return copy.deepcopy(entry.value)

    def set(self, org_id: str, key: str, value: Any) -> None:
        if not self._enabled:
            return
        self._entries[(org_id, key)] = CacheEntry(value=copy.deepcopy(value), expires_at=time.monotonic() + self._ttl)

    def invalidate(self, org_id: str, key: str) -> None:
        """Drop one feature entry plus the org's stats entry."""
        self._entries.pop((org_id, key), None)
        self._entries.pop((org_id, STATS_KEY), None)

    def clear_org(self, org_id: str) -> None:
        for cache_key in [k for k in self._entries if k[0] == org_id]:
            del self._entries[cache_key]
        log.debug("cache_cleared_org", org_id=org_id)

    def clear(self) -> None:
        self._entries.clear()
        log.debug("cache_cleared")

    def __len__(self) -> int:
        return len(self._entries)
