"""Read-through cache for quote engagement data.

Entries are JSON snapshots produced by ``Quote.engagement()``. The cache is
an optimization only: any cache failure falls back to the database and is
never surfaced to the caller.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from charterdesk.core.config import settings
from charterdesk.services.cache_service import CacheService

logger = logging.getLogger(__name__)

QuoteLoader = Callable[[], Awaitable[dict[str, Any] | None]]


class QuoteCache:
    def __init__(self, cache: CacheService, ttl_seconds: int | None = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds or settings.QUOTE_CACHE_TTL_SECONDS

    def _key(self, tenant_id: str, quote_id: str) -> str:
        # Tenant-scoped so a cached entry can never answer another tenant's read
        return f"{CacheService.PREFIX_QUOTE}{tenant_id}:{quote_id}"

    async def get(self, tenant_id: str, quote_id: str, load: QuoteLoader) -> dict[str, Any] | None:
        """Return cached engagement data, loading and caching it on a miss."""
        cached = await self.cache.get_json(self._key(tenant_id, quote_id))
        if isinstance(cached, dict):
            return cached

        data = await load()
        if data is not None:
            await self.cache.set_json(self._key(tenant_id, quote_id), data, self.ttl_seconds)
        return data

    async def invalidate(self, tenant_id: str, quote_id: str) -> None:
        if not await self.cache.delete(self._key(tenant_id, quote_id)):
            logger.warning("Quote cache invalidation failed for %s", quote_id)

    async def update(self, tenant_id: str, quote_id: str, changes: dict[str, Any]) -> None:
        """Merge changes into an existing entry. A missing entry stays missing."""
        cached = await self.cache.get_json(self._key(tenant_id, quote_id))
        if not isinstance(cached, dict):
            return
        cached.update(changes)
        await self.cache.set_json(self._key(tenant_id, quote_id), cached, self.ttl_seconds)
