"""Idempotency markers for link consumption.

A client retrying ``POST /action-links/consume`` with the same
``Idempotency-Key`` must not spend a second use of the link. The marker
lifecycle in Redis:

    (absent) --claim--> "pending" --store_result--> {"consumed": bool}
        ^                   |
        +----- release -----+   (failure: the client may retry)

Markers expire after IDEMPOTENCY_TTL_SECONDS in both states.
"""

import json
import logging
from dataclasses import dataclass

from charterdesk.core.config import settings
from charterdesk.core.errors import DownstreamError
from charterdesk.services.cache_service import CacheService, CacheUnavailableError

logger = logging.getLogger(__name__)

PENDING_MARKER = "pending"


@dataclass
class IdempotencyState:
    """Outcome of looking up or claiming an idempotency key."""

    claimed: bool = False
    in_flight: bool = False
    result: dict | None = None

    @property
    def is_replay(self) -> bool:
        return self.result is not None


class IdempotencyStore:
    """Claim/store/release operations over CacheService.

    Every path fails closed with DownstreamError: without a working marker
    store a retried consume could double-spend a link.
    """

    def __init__(self, cache: CacheService, ttl_seconds: int | None = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds or settings.IDEMPOTENCY_TTL_SECONDS

    def _key(self, idempotency_key: str) -> str:
        return f"{CacheService.PREFIX_IDEMPOTENCY}{idempotency_key}"

    @staticmethod
    def _decode(raw: str | None) -> dict | None:
        if raw is None or raw == PENDING_MARKER:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return value if isinstance(value, dict) else None

    async def begin(self, idempotency_key: str) -> IdempotencyState:
        """Return a stored result, report an in-flight claim, or claim the key."""
        key = self._key(idempotency_key)
        try:
            existing = await self.cache.get_strict(key)
            if existing is not None:
                stored = self._decode(existing)
                if stored is not None:
                    return IdempotencyState(result=stored)
                return IdempotencyState(in_flight=True)

            if await self.cache.set_if_absent(key, PENDING_MARKER, self.ttl_seconds):
                return IdempotencyState(claimed=True)

            # Lost the claim race to a concurrent request
            stored = self._decode(await self.cache.get_strict(key))
            if stored is not None:
                return IdempotencyState(result=stored)
            return IdempotencyState(in_flight=True)
        except CacheUnavailableError as e:
            raise DownstreamError("Idempotency store unavailable") from e

    async def store_result(self, idempotency_key: str, result: dict) -> None:
        stored = await self.cache.set(
            self._key(idempotency_key), json.dumps(result), self.ttl_seconds
        )
        if not stored:
            # The pending marker stays until its TTL runs out; retries meanwhile get an in-flight reply
            logger.warning("Failed to store idempotent consume result")

    async def release(self, idempotency_key: str) -> None:
        if not await self.cache.delete(self._key(idempotency_key)):
            logger.warning("Failed to release idempotency key; it expires with its TTL")
