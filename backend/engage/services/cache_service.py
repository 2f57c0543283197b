# /engage/services/cache_service.py

import json
import logging
from typing import Any, Awaitable, Callable, Optional
import redis.asyncio as redis

from engage.config.settings import settings
from engage.utils.circuit_breaker import CircuitBreaker
from engage.utils.metrics import cache_operations

# Thin Redis wrapper. Also owns the shared Redis client that the circuit
# breakers and the login tracker use.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker()
        except Exception as e:
            logger.critical(f"Failed to create Redis client for {redis_url}: {e}")
            self.redis = None

    async def get(self, key: str) -> Optional[str]:
        if not self.redis:
            return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            return result.decode("utf-8") if result else None
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis:
            return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def get_or_set(self, key: str, fetch_func: Callable[[], Awaitable[Any]], ttl: int = 300) -> Any:
        """Return the cached JSON value for `key`, computing and storing it on a miss."""
        cached_value = await self.get(key)
        if cached_value is not None:
            try:
                return json.loads(cached_value)
            except json.JSONDecodeError:
                return cached_value

        fetched_value = await fetch_func()
        await self.set(key, json.dumps(fetched_value, default=str), ttl)
        return fetched_value

    async def is_duplicate_message(self, wamid: str, phone: str, ttl: int = 300) -> bool:
        """Marks `wamid` as seen; True when it was already seen within `ttl` seconds."""
        if not self.redis:
            return False
        key = f"processed_message:{phone}:{wamid}"
        try:
            if await self.redis.set(key, "1", ex=ttl, nx=True):
                return False
            cache_operations.labels(operation="dedup", status="duplicate").inc()
            return True
        except Exception as e:
            cache_operations.labels(operation="dedup", status="error").inc()
            logger.warning(f"Duplicate check failed for message {wamid}: {e}")
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()


cache_service = CacheService(settings.redis_url)
