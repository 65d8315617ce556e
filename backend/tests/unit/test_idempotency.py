"""Unit tests for consume idempotency markers."""

import json

import pytest

from charterdesk.core.errors import DownstreamError
from charterdesk.services.idempotency import PENDING_MARKER, IdempotencyStore

KEY = "7b0e2c1e-6a43-4d1c-9b53-5d0c1f2a9e11"
REDIS_KEY = f"idem:consume:{KEY}"


class TestIdempotencyStore:
    @pytest.mark.asyncio
    async def test_first_request_claims_key(self, cache, fake_redis):
        store = IdempotencyStore(cache)
        state = await store.begin(KEY)

        assert state.claimed
        assert not state.in_flight
        assert not state.is_replay
        assert fake_redis.store[REDIS_KEY] == PENDING_MARKER

    @pytest.mark.asyncio
    async def test_claim_expires_with_ttl(self, cache, fake_redis):
        await IdempotencyStore(cache).begin(KEY)
        assert 0 < fake_redis.ttl_of(REDIS_KEY) <= 60

    @pytest.mark.asyncio
    async def test_second_request_sees_in_flight(self, cache):
        store = IdempotencyStore(cache)
        await store.begin(KEY)

        state = await store.begin(KEY)
        assert state.in_flight
        assert not state.claimed

    @pytest.mark.asyncio
    async def test_stored_result_is_replayed(self, cache, fake_redis):
        store = IdempotencyStore(cache)
        await store.begin(KEY)
        await store.store_result(KEY, {"consumed": True})

        assert json.loads(fake_redis.store[REDIS_KEY]) == {"consumed": True}

        state = await store.begin(KEY)
        assert state.is_replay
        assert state.result == {"consumed": True}

    @pytest.mark.asyncio
    async def test_unstored_result_leaves_key_in_flight(self, cache, fake_redis, monkeypatch):
        """A result that cannot be saved keeps the pending claim until its TTL."""
        store = IdempotencyStore(cache)
        await store.begin(KEY)

        async def _set_fails(*args, **kwargs):
            return False

        monkeypatch.setattr(cache, "set", _set_fails)
        await store.store_result(KEY, {"consumed": True})

        assert fake_redis.store[REDIS_KEY] == PENDING_MARKER
        state = await store.begin(KEY)
        assert state.in_flight
        assert not state.is_replay

    @pytest.mark.asyncio
    async def test_release_allows_retry(self, cache, fake_redis):
        store = IdempotencyStore(cache)
        await store.begin(KEY)
        await store.release(KEY)

        assert REDIS_KEY not in fake_redis.store
        assert (await store.begin(KEY)).claimed

    @pytest.mark.asyncio
    async def test_undecodable_marker_counts_as_in_flight(self, cache, fake_redis):
        fake_redis.store[REDIS_KEY] = "{not json"
        state = await IdempotencyStore(cache).begin(KEY)
        assert state.in_flight

    @pytest.mark.asyncio
    async def test_custom_ttl(self, cache, fake_redis):
        await IdempotencyStore(cache, ttl_seconds=5).begin(KEY)
        assert fake_redis.ttl_of(REDIS_KEY) <= 5

    @pytest.mark.asyncio
    async def test_fails_closed_when_redis_is_down(self, cache, fake_redis):
        fake_redis.available = False
        with pytest.raises(DownstreamError):
            await IdempotencyStore(cache).begin(KEY)

    @pytest.mark.asyncio
    async def test_store_result_failure_is_not_raised(self, cache, fake_redis):
        store = IdempotencyStore(cache)
        await store.begin(KEY)
        fake_redis.available = False

        # The use is already committed; only the replay is lost
        await store.store_result(KEY, {"consumed": True})
