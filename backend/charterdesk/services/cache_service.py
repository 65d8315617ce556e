"""
Redis service for rate-limit windows, idempotency markers and cached reads.

Two failure policies live side by side:
- Soft operations (get/set/delete/exists, JSON helpers) log and return a
  neutral value. Callers treat the cache as an optimization.
- Strict operations (increment_window, set_if_absent) raise
  CacheUnavailableError. Callers that guard security decisions with them
  must fail closed.
"""

import json
import logging
from datetime import timedelta
from typing import Any

import redis.asyncio as redis

from charterdesk.core.config import settings

logger = logging.getLogger(__name__)


class CacheUnavailableError(Exception):
    """The key-value store could not be reached or rejected a command."""


class CacheService:
    """Redis caching service."""

    # Cache key prefixes
    PREFIX_RATE_LIMIT = "ratelimit:"
    PREFIX_IDEMPOTENCY = "idem:consume:"
    PREFIX_QUOTE = "quote:engagement:"

    def __init__(self, redis_url: str | None = None, client: Any | None = None):
        """Initialize cache service.

        Args:
            redis_url: Redis connection URL. Defaults to settings.REDIS_URL.
            client: Pre-built async client (used by tests to inject a double).
        """
        self._redis_url = redis_url or settings.REDIS_URL
        self._redis = client

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._redis is None:
            try:
                client = redis.from_url(
                    self._redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
                    socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
                )
                await client.ping()
                self._redis = client
                logger.info("Redis cache connected successfully")
            except Exception as e:
                logger.warning("Failed to connect to Redis cache: %s", e)
                self._redis = None

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis cache disconnected")

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    async def _ensure_connected(self) -> bool:
        """Ensure Redis is connected, attempt reconnect if needed."""
        if not self._redis:
            await self.connect()
        return self._redis is not None

    async def ping(self) -> bool:
        if not await self._ensure_connected():
            return False
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    # ==========================================================================
    # Generic Cache Operations (fail soft)
    # ==========================================================================

    async def get(self, key: str) -> str | None:
        if not await self._ensure_connected():
            return None

        try:
            return await self._redis.get(key)
        except Exception as e:
            logger.warning("Failed to get from cache: %s", e)
            return None

    async def set(
        self,
        key: str,
        value: str,
        ttl: timedelta | int | None = None,
    ) -> bool:
        """Set a value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: TTL as timedelta or seconds

        Returns:
            True if cached successfully
        """
        if not await self._ensure_connected():
            return False

        try:
            if ttl:
                await self._redis.setex(key, ttl, value)
            else:
                await self._redis.set(key, value)
            return True
        except Exception as e:
            logger.warning("Failed to set in cache: %s", e)
            return False

    async def delete(self, key: str) -> bool:
        if not await self._ensure_connected():
            return False

        try:
            await self._redis.delete(key)
            return True
        except Exception as e:
            logger.warning("Failed to delete from cache: %s", e)
            return False

    async def exists(self, key: str) -> bool:
        if not await self._ensure_connected():
            return False

        try:
            return await self._redis.exists(key) > 0
        except Exception as e:
            logger.warning("Failed to check cache existence: %s", e)
            return False

    async def get_json(self, key: str) -> Any | None:
        """Get and decode a JSON value. Undecodable entries count as misses."""
        data = await self.get(key)
        if data is None:
            return None
        try:
            return json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def set_json(self, key: str, value: Any, ttl: timedelta | int | None = None) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl)

    # ==========================================================================
    # Strict Operations (raise CacheUnavailableError)
    # ==========================================================================

    async def increment_window(self, key: str, window_seconds: int) -> int:
        """Increment a fixed-window counter, starting its expiry on first hit.

        Returns:
            The counter value after incrementing
        """
        if not await self._ensure_connected():
            raise CacheUnavailableError("Redis is not connected")

        try:
            count = await self._redis.incr(key)
            if count == 1:
                await self._redis.expire(key, window_seconds)
            return int(count)
        except Exception as e:
            logger.error("Rate limit counter update failed: %s", e)
            raise CacheUnavailableError(str(e)) from e

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically claim a key (SET NX EX).

        Returns:
            True if the key was claimed, False if it already existed
        """
        if not await self._ensure_connected():
            raise CacheUnavailableError("Redis is not connected")

        try:
            return bool(await self._redis.set(key, value, ex=ttl_seconds, nx=True))
        except Exception as e:
            logger.error("Failed to claim cache key: %s", e)
            raise CacheUnavailableError(str(e)) from e

    async def get_strict(self, key: str) -> str | None:
        """Get a value, raising instead of reporting a miss on failure."""
        if not await self._ensure_connected():
            raise CacheUnavailableError("Redis is not connected")

        try:
            return await self._redis.get(key)
        except Exception as e:
            logger.error("Failed to read cache key: %s", e)
            raise CacheUnavailableError(str(e)) from e


# Global cache instance
cache_service = CacheService()


async def get_cache() -> CacheService:
    """Get the global cache service instance."""
    if not cache_service.is_connected:
        await cache_service.connect()
    return cache_service
