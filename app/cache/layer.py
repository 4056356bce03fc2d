import asyncio
import json
import logging
import time
from typing import Any, Optional

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from app.core.config import Settings, get_settings
from app.core.errors import CacheUnavailableError

logger = logging.getLogger(__name__)


class _Miss:
    """Returned by CacheLayer.get when a key is absent."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISS"

    def __bool__(self):
        return False


MISS = _Miss()


class RedisMemoryGuard:
    """
    Monitors Redis memory usage and provides backpressure signals.

    Pressure levels:
    - 0-4: Normal operation
    - 5-6: Moderate pressure (reduce TTL by 20%)
    - 7-8: High pressure (cap TTL at 60s)
    - 9-10: Critical (skip Redis writes)
    """

    def __init__(self, redis: Redis, refresh_interval: int = 5):
        self.redis = redis
        self.refresh_interval = refresh_interval
        self._last_check = 0.0
        self._cached: dict | None = None

    async def check(self) -> dict:
        """Check memory pressure, reusing the last reading within the interval."""
        now = time.monotonic()
        if self._cached and (now - self._last_check) < self.refresh_interval:
            return self._cached

        try:
            info = await self.redis.info("memory")
        except RedisError as e:
            logger.error(f"Memory check failed: {e}")
            return {"level": 0, "ratio": None, "policy": "unknown", "error": str(e)}

        used = info["used_memory"]
        maxm = info.get("maxmemory", 0)
        if maxm == 0:
            # No memory limit configured
            result = {
                "level": 0,
                "ratio": None,
                "policy": info.get("maxmemory_policy", "noeviction"),
                "used_mb": used / (1024 * 1024),
            }
        else:
            ratio = used / maxm
            result = {
                "level": int(min(ratio * 10, 10)),
                "ratio": ratio,
                "policy": info.get("maxmemory_policy", "noeviction"),
                "used_mb": used / (1024 * 1024),
                "max_mb": maxm / (1024 * 1024),
            }
            if result["level"] >= 9:
                logger.warning(
                    f"Redis memory critical: level={result['level']} ratio={ratio:.1%}"
                )
            elif result["level"] >= 7:
                logger.info(f"Redis memory high: level={result['level']} ratio={ratio:.1%}")

        self._cached = result
        self._last_check = now
        return result

    async def adjust_ttl(self, base_ttl: int) -> int:
        """TTL to use for a write; 0 means skip the Redis write."""
        level = (await self.check())["level"]
        if level >= 9:
            return 0
        elif level >= 7:
            return min(base_ttl, 60)
        elif level >= 5:
            return max(int(base_ttl * 0.8), 1)
        return base_ttl


class CacheLayer:
    """
    Key-value cache over Redis with an optional process-local L1.

    L1: Process-local TTLCache, off by default since other workers cannot
        invalidate it
    L2: Redis (shared, the tier invalidation relies on)

    Every Redis failure is counted, logged and raised as
    CacheUnavailableError so callers can fall back to the database.
    """

    def __init__(self, settings: Settings | None = None, redis: Redis | None = None):
        self._settings = settings
        self._redis = redis
        self._memory_guard: RedisMemoryGuard | None = None
        self.l1: TTLCache | None = None
        self._initialized = False
        # Per-key locks for stampede protection; expire 300s after creation
        self._locks = TTLCache(maxsize=10_000, ttl=300)

        self.stats = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "errors": 0,
            "pressure_skips": 0,
        }

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    async def init_cache(self):
        """Initialize L1 cache and Redis connection."""
        if self._initialized:
            return

        settings = self.settings
        if settings.l1_enabled and self.l1 is None:
            self.l1 = TTLCache(maxsize=settings.l1_maxsize, ttl=settings.l1_ttl_seconds)

        if self._redis is None:
            self._redis = Redis.from_url(
                settings.redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                max_connections=settings.redis_pool_size,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )

        try:
            await self._redis.ping()
            logger.info("Redis connection established")
        except RedisError as e:
            # The client reconnects on demand; until then calls degrade
            logger.error(f"Redis initialization failed: {e}")

        self._memory_guard = RedisMemoryGuard(self._redis)
        self._initialized = True
        logger.info("Cache layer initialized")

    def _key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self.settings.cache_namespace}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        return json.loads(raw)

    def _unavailable(self, op: str, key: str, e: Exception) -> CacheUnavailableError:
        self.stats["errors"] += 1
        logger.error(f"Redis {op} error for {key}: {e}")
        return CacheUnavailableError(f"{op} {key}: {e}")

    async def get(self, key: str) -> Any:
        """Return the cached value, or MISS. An empty list is a value."""
        await self.init_cache()
        full_key = self._key(key)

        if self.l1 is not None and full_key in self.l1:
            self.stats["l1_hits"] += 1
            logger.debug(f"L1 hit {key}")
            return self.l1[full_key]

        try:
            raw = await self._redis.get(full_key)
        except RedisError as e:
            raise self._unavailable("GET", key, e) from e

        if raw is None:
            self.stats["misses"] += 1
            logger.debug(f"Cache miss {key}")
            return MISS

        self.stats["l2_hits"] += 1
        logger.debug(f"L2 hit {key}")
        value = self._deserialize(raw)
        if self.l1 is not None:
            self.l1[full_key] = value
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """
        Store a JSON-serializable value.

        Args:
            key: Cache key (will be namespaced automatically)
            value: Value to cache
            ttl: Freshness bound in seconds (uses l2_ttl_seconds if None)
        """
        await self.init_cache()
        full_key = self._key(key)

        try:
            ttl = await self._memory_guard.adjust_ttl(ttl or self.settings.l2_ttl_seconds)
            if ttl == 0:
                logger.debug(f"Skipping Redis write due to pressure: {key}")
                self.stats["pressure_skips"] += 1
                return
            await self._redis.set(full_key, self._serialize(value), ex=ttl)
        except RedisError as e:
            raise self._unavailable("SET", key, e) from e

        if self.l1 is not None:
            self.l1[full_key] = value
        logger.debug(f"Stored {key} ttl={ttl}")

    async def delete(self, key: str):
        """Delete a key from both tiers. Deleting an absent key is a no-op."""
        await self.init_cache()
        full_key = self._key(key)

        if self.l1 is not None:
            self.l1.pop(full_key, None)

        try:
            await self._redis.delete(full_key)
        except RedisError as e:
            raise self._unavailable("DELETE", key, e) from e
        logger.debug(f"Deleted {key}")

    async def get_counter(self, key: str) -> int:
        """Read an integer counter from Redis, never from L1. Absent is 0."""
        await self.init_cache()
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as e:
            raise self._unavailable("GET", key, e) from e
        return int(raw) if raw is not None else 0

    async def incr(self, key: str) -> int:
        await self.init_cache()
        try:
            return await self._redis.incr(self._key(key))
        except RedisError as e:
            raise self._unavailable("INCR", key, e) from e

    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns the Redis count."""
        await self.init_cache()
        full_prefix = self._key(prefix)

        if self.l1 is not None:
            for k in [k for k in self.l1.keys() if k.startswith(full_prefix)]:
                self.l1.pop(k, None)

        deleted_count = 0
        try:
            cursor = 0
            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=f"{full_prefix}*", count=100
                )
                if keys:
                    deleted_count += await self._redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError as e:
            raise self._unavailable("SCAN/DELETE", f"{prefix}*", e) from e

        logger.info(f"Prefix delete {prefix}* removed {deleted_count} keys")
        return deleted_count

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")
        finally:
            self._redis = None
            self._initialized = False

    def lock(self, key: str) -> asyncio.Lock:
        """Shared lock for a key, so concurrent loaders hit the database once.

        setdefault() hands every caller the same lock object.
        """
        return self._locks.setdefault(key, asyncio.Lock())

    def get_stats(self) -> dict:
        """Get cache statistics including memory pressure."""
        total = self.stats["l1_hits"] + self.stats["l2_hits"] + self.stats["misses"]
        stats = {
            **self.stats,
            "l1_size": len(self.l1) if self.l1 is not None else 0,
            "hit_rate": (
                (self.stats["l1_hits"] + self.stats["l2_hits"]) / total
                if total > 0
                else 0
            ),
        }
        if self._memory_guard and self._memory_guard._cached:
            stats["redis_pressure"] = self._memory_guard._cached
        return stats

