"""
Cache Storage

Process-local TTL cache plus an optional Redis-backed shared cache.

Features:
- TTLCache: explicit get/set/invalidate object with its own clock
- RedisCacheStore: set-if-not-exists markers and JSON values with TTLs
- Redis is optional; without REDIS_URL the store reports itself disabled
  and every operation degrades to a no-op result
"""

import json
import time
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple, Callable

import redis.asyncio as redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStats:
    """Basic cache metrics for diagnostics."""
    label: str
    size: int
    hits: int
    misses: int
    ttl_seconds: int


class TTLCache:
    """
    In-memory cache where every entry expires after a fixed TTL.

    Usage:
        cache = TTLCache(ttl_seconds=3600, label="workspaces")
        cache.set("workspaces", ["all", "docs"])
        cache.get("workspaces")
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        label: str = "ttl_cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.label = label
        self._clock = clock
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            # Expired entries stay until overwritten so peek_stale can serve them
            self._misses += 1
            return None
        self._hits += 1
        return value

    def peek_stale(self, key: str) -> Optional[Any]:
        """Return a value even if it has expired (for serve-stale fallbacks)."""
        entry = self._store.get(key)
        return entry[1] if entry else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        ttl = max(1, int(ttl_seconds or self.ttl_seconds))
        self._store[key] = (self._clock() + ttl, value)

    def invalidate(self, key: Optional[str] = None):
        if key is None:
            self._store.clear()
        else:
            self._store.pop(key, None)

    def describe(self) -> CacheStats:
        return CacheStats(
            label=self.label,
            size=len(self._store),
            hits=self._hits,
            misses=self._misses,
            ttl_seconds=self.ttl_seconds,
        )

    def __len__(self) -> int:
        return len(self._store)


class RedisCacheStore:
    """
    Redis-backed shared cache.

    Usage:
        store = RedisCacheStore(os.getenv("REDIS_URL"))
        await store.initialize()

        first_time = await store.set_if_not_exists("slack_event_id:Ev123", ttl_seconds=600)
        await store.set_json("anythingllm_workspaces", ["all"], ttl_seconds=3600)
    """

    def __init__(self, url: Optional[str] = None, client: Optional[Any] = None):
        self.url = url
        self._client = client

    @property
    def enabled(self) -> bool:
        """Check if a Redis client is available."""
        return self._client is not None

    async def initialize(self):
        """Connect to Redis if a URL is configured."""
        if self._client is not None or not self.url:
            if not self.url and self._client is None:
                logger.info("Redis not configured; shared cache disabled")
            return
        try:
            client = redis.from_url(self.url, decode_responses=True)
            await client.ping()
            self._client = client
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Redis connection failed, shared cache disabled: {e}")
            self._client = None

    async def close(self):
        """Close the Redis connection."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis client: {e}")
            self._client = None

    async def set_if_not_exists(self, key: str, ttl_seconds: int, value: str = "1") -> bool:
        """
        Atomically create a marker key.

        Returns:
            True if the key was created, False if it already existed.

        Raises:
            RuntimeError if Redis is not configured; Redis errors propagate so
            callers can choose their own failure policy.
        """
        if self._client is None:
            raise RuntimeError("Redis is not configured")
        result = await self._client.set(key, value, nx=True, ex=ttl_seconds)
        return bool(result)

    async def get_json(self, key: str) -> Optional[Any]:
        """Read and decode a JSON value. Missing keys and errors return None."""
        if self._client is None:
            return None
        try:
            raw = await self._client.get(key)
        except Exception as e:
            logger.error(f"Redis GET {key} failed: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding undecodable Redis value for {key}: {e}")
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int):
        """Encode and store a JSON value with a TTL. Errors propagate."""
        if self._client is None:
            return
        await self._client.set(key, json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if something was removed."""
        if self._client is None:
            return False
        try:
            return bool(await self._client.delete(key))
        except Exception as e:
            logger.error(f"Redis DEL {key} failed: {e}")
            return False
