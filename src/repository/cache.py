"""
In-memory TTL cache for loaded semantic models.

Keys are the SHA-256 of the normalized location, so spellings that only
differ in separators or a trailing slash share one entry. Writes
invalidate; they never update in place.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    entries: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": self.entries,
            "hit_rate": round(self.hit_rate, 4),
        }


class ModelCache:
    """
    TTL cache keyed by model location.

    Usage:
        cache = ModelCache()
        await cache.set("/models/orders-db", model, timedelta(minutes=30))
        model = await cache.get("/models/orders-db")
    """

    def __init__(self, max_entries: int = 128):
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._max_entries = max_entries
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key_for(location: str) -> str:
        """Stable cache key for a location."""
        normalized = str(location).strip().replace("\\", "/").rstrip("/")
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    async def get(self, location: str) -> Any | None:
        key = self.key_for(location)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at <= time.monotonic():
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    async def set(self, location: str, value: Any, ttl: timedelta) -> None:
        key = self.key_for(location)
        async with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_one()
            self._entries[key] = _Entry(value, time.monotonic() + ttl.total_seconds())

    async def invalidate(self, location: str) -> bool:
        async with self._lock:
            return self._entries.pop(self.key_for(location), None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        return CacheStats(hits=self._hits, misses=self._misses, entries=len(self._entries))

    def _evict_one(self) -> None:
        # Expired entries first, otherwise the one closest to expiry
        now = time.monotonic()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        if expired:
            for key in expired:
                del self._entries[key]
            return
        oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
        del self._entries[oldest]
        logger.debug("Evicted cached model", key=oldest[:12])
