"""In-memory TTL cache for analytics results, performance scores and batch jobs.

Entries expire after their TTL. Once MAX_ENTRIES is reached, expired entries
are purged first and then the entries closest to expiry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)


class TTLCache:
    MAX_ENTRIES = 10000
    EVICT_BATCH = 100

    def __init__(self, max_entries: int = MAX_ENTRIES):
        self.max_entries = max_entries
        # key -> (expires_at monotonic seconds, value)
        self._entries: dict[str, tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires_at, value = hit
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float = 300) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._make_room()
        self._entries[key] = (time.monotonic() + ttl_seconds, value)

    def clear(self) -> None:
        self._entries.clear()

    def _make_room(self) -> None:
        now = time.monotonic()
        for k in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            del self._entries[k]
        if len(self._entries) < self.max_entries:
            return
        oldest = sorted(self._entries, key=lambda k: self._entries[k][0])[:self.EVICT_BATCH]
        for k in oldest:
            del self._entries[k]
        logger.warning("Cache full at %s entries; evicted %s closest to expiry", self.max_entries, len(oldest))


cache = TTLCache()


def make_cache_key(*args, **kwargs) -> str:
    """Stable hash of the arguments; datetimes and other values go through str()."""
    key_data = json.dumps({"args": args, "kwargs": kwargs}, sort_keys=True, default=str)
    return hashlib.sha256(key_data.encode()).hexdigest()
