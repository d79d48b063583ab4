"""Key-value cache service with Redis (production) or in-process memory backend.

Holds the small pieces of per-visitor state the engine needs between runs:
action frequency markers, trigger cooldown timestamps and cached tag lookups.
Redis is only required when several server processes share that state.
"""

import json
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and REDIS_URL is set
    - Memory: Otherwise, or when the Redis connection fails at startup
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        # key -> (value, expires_at or None)
        self.memory_cache: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except Exception as e:
                logger.warning("Redis connection failed, falling back to memory", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.close()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()

    def is_redis_available(self) -> bool:
        return self.use_redis and self.redis is not None

    def _memory_get(self, key: str) -> Optional[Any]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self.memory_cache[key]
            return None
        return value

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.is_redis_available():
                value = await self.redis.get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return json.loads(value) if value is not None else None

            value = self._memory_get(key)
            log_cache_operation(logger, "get", key, hit=value is not None)
            return value

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache. Without a ttl the entry never expires."""
        try:
            if self.is_redis_available():
                serialized = json.dumps(value, default=str)
                if ttl:
                    await self.redis.setex(key, ttl, serialized)
                else:
                    await self.redis.set(key, serialized)
            else:
                expires_at = time.time() + ttl if ttl else None
                self.memory_cache[key] = (value, expires_at)
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.is_redis_available():
                deleted = bool(await self.redis.delete(key))
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching a prefix pattern such as ``visitor:abc:*``."""
        try:
            if self.is_redis_available():
                keys = [k async for k in self.redis.scan_iter(match=pattern)]
                deleted = await self.redis.delete(*keys) if keys else 0
            else:
                prefix = pattern.rstrip("*")
                keys_to_delete = [k for k in self.memory_cache if k.startswith(prefix)]
                for key in keys_to_delete:
                    del self.memory_cache[key]
                deleted = len(keys_to_delete)
            log_cache_operation(logger, "clear_pattern", pattern, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache clear pattern failed", pattern=pattern, error=str(e))
            return 0

