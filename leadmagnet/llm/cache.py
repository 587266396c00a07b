import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis

logger = logging.getLogger("narrative.cache")

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 512
CACHE_PREFIX = "narrative:"


class NarrativeCache:
    """Content-addressed store for generated narrative text.

    Entries are keyed by a fingerprint that excludes personal fields, so a
    value is identical for every writer and last-writer-wins is safe.
    """

    async def get(self, key: str) -> Optional[str]:  # pragma: no cover - override
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:  # pragma: no cover - override
        raise NotImplementedError

    async def evict_expired(self) -> int:  # pragma: no cover - override
        raise NotImplementedError

    async def stats(self) -> Dict[str, Any]:  # pragma: no cover - override
        raise NotImplementedError


class InMemoryNarrativeCache(NarrativeCache):
    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at >= self.ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            stored_at, value = entry
            if self._expired(stored_at, now):
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return value

    async def set(self, key: str, value: str) -> None:
        now = self._clock()
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (now, value)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    async def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, (stored_at, _) in self._entries.items() if self._expired(stored_at, now)]
            for key in stale:
                del self._entries[key]
        logger.info("Evicted %d expired narrative cache entries", len(stale))
        return len(stale)

    async def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            ages = [now - stored_at for stored_at, _ in self._entries.values()]
            hits, misses = self._hits, self._misses
        expired = sum(1 for age in ages if age >= self.ttl_seconds)
        lookups = hits + misses
        return {
            "backend": "memory",
            "total_entries": len(ages),
            "valid_entries": len(ages) - expired,
            "expired_entries": expired,
            "oldest_entry_minutes": int(max(ages) // 60) if ages else 0,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / lookups, 3) if lookups else 0.0,
        }


class RedisNarrativeCache(NarrativeCache):
    """Networked cache; Redis expires keys on its own, so eviction is a no-op."""

    def __init__(self, client: "redis.Redis", *, ttl_seconds: float = DEFAULT_TTL_SECONDS, prefix: str = CACHE_PREFIX):
        self.client = client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    async def get(self, key: str) -> Optional[str]:
        value = await self.client.get(self.prefix + key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def set(self, key: str, value: str) -> None:
        await self.client.setex(self.prefix + key, self.ttl_seconds, value)

    async def evict_expired(self) -> int:
        return 0

    async def stats(self) -> Dict[str, Any]:
        total = 0
        async for _ in self.client.scan_iter(match=f"{self.prefix}*"):
            total += 1
        return {"backend": "redis", "total_entries": total, "valid_entries": total, "expired_entries": 0}


def build_cache() -> NarrativeCache:
    ttl = float(os.getenv("NARRATIVE_CACHE_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))
    url = os.getenv("REDIS_URL")
    if url:
        logger.info("Using Redis narrative cache")
        return RedisNarrativeCache(redis.from_url(url), ttl_seconds=ttl)
    size = int(os.getenv("NARRATIVE_CACHE_SIZE", str(DEFAULT_MAX_ENTRIES)))
    return InMemoryNarrativeCache(ttl_seconds=ttl, max_entries=size)
