"""
Redis caching service for ride read models.

CACHING STRATEGY
================

What we cache:
  - Ride detail responses (JSON-serialized), key "carpool:ride:detail:{id}"

Invalidation strategy:
  - Every mutation path knows which read models it touched, so keys are
    derived explicitly by ``cache_keys.invalidation_keys`` and deleted in one
    DEL right after the transaction commits
  - TTL-based expiry as safety net (5 minutes)

  Explicit keys replace prefix SCANs: the booking path already knows the
  ride, the passenger and the driver, so there is nothing to search for.

Why NOT cache seat counts for the booking path:
  - Seat reservation always reads and writes the database row (CAS on version)
  - Cached counts only feed listings and detail views, where a stale value
    for at most one request is acceptable

Redis is optional. With no client every read is a miss and every write or
invalidation is a no-op; cache errors are logged and never fail a request.
"""

import json
from typing import Iterable, Optional

import redis.asyncio as redis

from carpool.core.config import Settings
from carpool.core.logging import get_logger
from carpool.core.metrics import record_cache_operation
from carpool.services import cache_keys

logger = get_logger(__name__)


async def create_redis(settings: Settings) -> Optional[redis.Redis]:
    """Connect to Redis. Returns None if Redis is disabled or unreachable."""
    if not settings.REDIS_ENABLED:
        return None

    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )
    try:
        await client.ping()
    except Exception as e:
        logger.error("redis_connection_failed", error=str(e))
        await client.aclose()
        return None

    logger.info("redis_connected", url=settings.REDIS_URL)
    return client


class CacheService:
    def __init__(self, client: Optional[redis.Redis], ttl: int = 300):
        self.client = client
        self.ttl = ttl

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get_json(self, key: str) -> Optional[dict]:
        if not self.client:
            return None

        try:
            data = await self.client.get(key)
        except Exception as e:
            logger.error("cache_get_error", key=key, error=str(e))
            record_cache_operation("get", "error")
            return None

        if data:
            logger.debug("cache_hit", key=key)
            record_cache_operation("get", "hit")
            return json.loads(data)

        logger.debug("cache_miss", key=key)
        record_cache_operation("get", "miss")
        return None

    async def set_json(self, key: str, data: dict, ttl: Optional[int] = None) -> None:
        if not self.client:
            return

        ttl = ttl or self.ttl
        try:
            await self.client.setex(key, ttl, json.dumps(data, default=str))
            logger.debug("cache_set", key=key, ttl=ttl)
        except Exception as e:
            logger.error("cache_set_error", key=key, error=str(e))

    async def get_ride_detail(self, ride_id: int) -> Optional[dict]:
        return await self.get_json(cache_keys.ride_detail(ride_id))

    async def set_ride_detail(self, ride_id: int, data: dict) -> None:
        await self.set_json(cache_keys.ride_detail(ride_id), data)

    async def invalidate(self, keys: Iterable[str]) -> int:
        """Delete the given keys. Returns how many existed."""
        keys = list(keys)
        if not self.client or not keys:
            return 0

        try:
            deleted = await self.client.delete(*keys)
        except Exception as e:
            logger.error("cache_invalidation_error", keys=len(keys), error=str(e))
            record_cache_operation("invalidate", "error")
            return 0

        logger.debug("cache_invalidated", keys=len(keys), keys_deleted=deleted)
        record_cache_operation("invalidate", "ok")
        return deleted

    async def invalidate_entity(self, entity: str, **context) -> int:
        return await self.invalidate(cache_keys.invalidation_keys(entity, **context))

    async def stats(self) -> dict:
        """Get Redis cache statistics for monitoring."""
        if not self.client:
            return {"status": "disabled"}

        try:
            info = await self.client.info("stats")
            hits = info.get("keyspace_hits", 0)
            misses = info.get("keyspace_misses", 0)
            return {
                "status": "connected",
                "hits": hits,
                "misses": misses,
                "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
            }
        except Exception as e:
            return {"status": "error", "error": str(e)}
