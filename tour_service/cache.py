"""Redis cache management with connection pooling and graceful degradation."""

import json
from typing import Any, Optional

from redis import asyncio as aioredis

from .config import settings
from .logger import logger

# ==================== Cache Key Utilities ====================

TOUR_BY_ID_PREFIX = "tour:id"
TOUR_STATS_KEY = "tour:stats"


def make_cache_key(prefix: str, identifier: Any) -> str:
    """Generate consistent cache key with namespace, e.g. ``tour:id:5c88fa8c...``."""
    return f"{prefix}:{identifier}"

# ==================== Cache Manager ====================


class CacheManager:
    """Manages Redis connections and cache operations with graceful degradation.

    If Redis is unavailable, operations fail silently and return None/False,
    allowing the application to continue without caching.
    """

    def __init__(self):
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self):
        """Create a connection pool and verify it with ping.

        Leaves the manager disconnected if Redis cannot be reached.
        """
        if self._redis is None:
            try:
                self._redis = aioredis.from_url(
                    settings.REDIS_URL,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                )
                await self._redis.ping()
                logger.info("[cache] Connected to Redis")
            except Exception as e:
                logger.error(f"[cache] Failed to connect to Redis: {e}")
                self._redis = None

    async def disconnect(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("[cache] Disconnected from Redis")

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded cached value, or None on miss or error."""
        if not self._redis:
            return None

        try:
            value = await self._redis.get(key)
            if value:
                logger.debug(f"[cache] HIT: {key}")
                return json.loads(value)
            logger.debug(f"[cache] MISS: {key}")
            return None
        except Exception as e:
            logger.error(f"[cache] Error getting key {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a JSON-serializable value. Returns False when not cached."""
        if not self._redis:
            return False

        try:
            ttl = ttl or settings.CACHE_TTL
            serialized = json.dumps(value, default=str)
            await self._redis.setex(key, ttl, serialized)
            logger.debug(f"[cache] SET: {key} (TTL={ttl}s)")
            return True
        except Exception as e:
            logger.error(f"[cache] Error setting key {key}: {e}")
            return False

    async def delete(self, *keys: str) -> bool:
        if not self._redis or not keys:
            return False

        try:
            await self._redis.delete(*keys)
            logger.debug(f"[cache] DELETE: {', '.join(keys)}")
            return True
        except Exception as e:
            logger.error(f"[cache] Error deleting keys {keys}: {e}")
            return False

    async def health_check(self) -> bool:
        if not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except Exception:
            return False

# ==================== Global Instance ====================

cache_manager = CacheManager()


async def invalidate_tour(tour_id: Any) -> None:
    """Drop a tour's cached read and the aggregate stats it contributes to."""
    if settings.CACHE_ENABLED:
        await cache_manager.delete(make_cache_key(TOUR_BY_ID_PREFIX, tour_id), TOUR_STATS_KEY)
