# /autoreply/services/cache_service.py

import json
import logging
from typing import Any, Optional
import redis.asyncio as redis

from autoreply.config.settings import settings
from autoreply.utils.circuit_breaker import CircuitBreaker
from autoreply.utils.metrics import cache_operations

# Redis-backed cache. Every failure is logged and reported as a miss so that a
# Redis outage degrades to uncached reads instead of failed requests.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker(name="redis-cache")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            if isinstance(result, bytes):
                return result.decode('utf-8')
            return result
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def delete(self, *keys: str):
        if not self.redis or not keys: return
        try:
            await self.circuit_breaker.call(self.redis.delete, *keys)
            cache_operations.labels(operation="delete", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="delete", status="error").inc()
            logger.warning(f"Cache delete failed for keys {keys}: {e}")

    async def get_json(self, key: str) -> Optional[Any]:
        cached_value = await self.get(key)
        if cached_value is None:
            return None
        try:
            return json.loads(cached_value)
        except json.JSONDecodeError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def set_json(self, key: str, value: Any, ttl: int = 300):
        await self.set(key, json.dumps(value, default=str), ttl)


cache_service = CacheService(settings.redis_url)
