# =============================================================================
# caseflow_core/offline/cache.py
# Expiring key/value cache for API response memoization
# =============================================================================
"""
ResponseCache - TTL-based cache backed by the `cache` table.

Expiry is checked lazily on read, so an expired entry is never returned even
if clear_expired() has not swept it yet. Entries are advisory and can be
dropped at any time; nothing in the sync path depends on them.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, List, Optional
import logging

from caseflow_core.errors import ValidationError
from caseflow_core.offline.local_store import LocalStore
from caseflow_core.offline.models import CacheEntry, map_rows, now_ms
from caseflow_core.offline.serialization import canonical_json, loads

logger = logging.getLogger(__name__)

_MISSING = object()


class ResponseCache:
    """
    Usage:
        cache = ResponseCache(store)
        cases = cache.get_or_set("cases:assigned", client.fetch_assigned, ttl=60_000)
    """

    DEFAULT_TTL = 3_600_000     # one hour, in ms

    def __init__(self, store: LocalStore, clock=None, default_ttl: int = DEFAULT_TTL):
        self.store = store
        self.clock = clock or store.clock or now_ms
        self.default_ttl = default_ttl

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> CacheEntry:
        """
        Store a value with an absolute expiry of now + ttl (ms).
        """
        if not key:
            raise ValidationError("cache key is required", field="key")
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValidationError("cache ttl must be positive", field="ttl")

        now = self.clock()
        entry = CacheEntry(key=key, data=canonical_json(value), expires_at=now + ttl, created_at=now)
        self.store.execute(
            """
            INSERT INTO cache (key, data, expires_at, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                data = excluded.data,
                expires_at = excluded.expires_at,
                created_at = excluded.created_at
            """,
            [entry.key, entry.data, entry.expires_at, entry.created_at]
        )
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        row = self.store.query_one("SELECT * FROM cache WHERE key = ?", [key])
        if row is None:
            return default
        entry = CacheEntry.from_row(row)
        if entry.is_expired(self.clock()):
            return default
        return loads(entry.data, default)

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = factory()
            self.set(key, value, ttl)
        return value

    def delete(self, key: str) -> bool:
        return self.store.execute("DELETE FROM cache WHERE key = ?", [key]) > 0

    def clear_expired(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        removed = self.store.execute("DELETE FROM cache WHERE expires_at <= ?", [self.clock()])
        if removed:
            logger.debug(f"Removed {removed} expired cache entries")
        return removed

    def clear(self) -> int:
        removed = self.store.execute("DELETE FROM cache")
        logger.info("Cache cleared")
        return removed

    def entries(self) -> List[CacheEntry]:
        return map_rows(self.store.query("SELECT * FROM cache ORDER BY key"), CacheEntry)

    def get_cache_stats(self) -> Dict[str, int]:
        now = self.clock()
        row = self.store.query_one(
            "SELECT COUNT(*) AS total, SUM(CASE WHEN expires_at <= ? THEN 1 ELSE 0 END) AS expired FROM cache",
            [now]
        )
        return {"total_items": row["total"], "expired_items": row["expired"] or 0}
