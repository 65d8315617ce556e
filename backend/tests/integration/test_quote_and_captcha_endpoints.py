"""Integration tests for quote engagement status and the CAPTCHA site key."""

import json
import uuid

import pytest

from charterdesk import main
from charterdesk.core.config import settings


class TestQuoteStatus:
    """GET /api/v1/quotes/{quote_id}/status"""

    @pytest.mark.asyncio
    async def test_status_is_served_and_cached(
        self, client, auth_headers, quote_id, fake_redis, test_tenant_id
    ):
        response = await client.get(f"/api/v1/quotes/{quote_id}/status", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "quote_id": quote_id,
            "status": "pending",
            "first_opened_at": None,
            "last_opened_at": None,
            "open_count": 0,
        }
        cached = json.loads(fake_redis.store[f"quote:engagement:{test_tenant_id}:{quote_id}"])
        assert cached["status"] == "pending"

    @pytest.mark.asyncio
    async def test_cached_entry_answers_reads(
        self, client, auth_headers, quote_id, fake_redis, test_tenant_id
    ):
        fake_redis.store[f"quote:engagement:{test_tenant_id}:{quote_id}"] = json.dumps(
            {"status": "accepted", "first_opened_at": None, "last_opened_at": None, "open_count": 4}
        )

        response = await client.get(f"/api/v1/quotes/{quote_id}/status", headers=auth_headers)

        assert response.json()["status"] == "accepted"
        assert response.json()["open_count"] == 4

    @pytest.mark.asyncio
    async def test_falls_back_to_database_when_cache_is_down(
        self, client, auth_headers, quote_id, fake_redis
    ):
        fake_redis.available = False

        response = await client.get(f"/api/v1/quotes/{quote_id}/status", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_other_tenant_quote_is_not_found(
        self, client, other_auth_headers, quote_id
    ):
        response = await client.get(f"/api/v1/quotes/{quote_id}/status", headers=other_auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_unknown_quote(self, client, auth_headers):
        response = await client.get(f"/api/v1/quotes/{uuid.uuid4()}/status", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client, quote_id):
        response = await client.get(f"/api/v1/quotes/{quote_id}/status")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_open_tracking_visible_after_verify(
        self, client, auth_headers, make_link, quote_id
    ):
        _, token = await make_link(metadata={"quote_id": quote_id})
        # Warm the cache so the verify path updates it in place
        await client.get(f"/api/v1/quotes/{quote_id}/status", headers=auth_headers)

        await client.post(
            "/api/v1/action-links/verify",
            json={"token": token, "email": "jane@example.com", "captchaToken": "ok"},
        )

        response = await client.get(f"/api/v1/quotes/{quote_id}/status", headers=auth_headers)
        assert response.json()["open_count"] == 1
        assert response.json()["first_opened_at"] is not None


class TestCaptchaSiteKey:
    """GET /api/v1/captcha/site-key"""

    @pytest.mark.asyncio
    async def test_returns_site_key(self, client):
        response = await client.get("/api/v1/captcha/site-key")

        assert response.status_code == 200
        assert response.json() == {"site_key": settings.TURNSTILE_SITE_KEY}
        assert settings.TURNSTILE_SECRET_KEY not in response.text

    @pytest.mark.asyncio
    async def test_unconfigured_site_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "TURNSTILE_SITE_KEY", "")

        response = await client.get("/api/v1/captcha/site-key")

        assert response.status_code == 503
        assert response.json()["error"] == "service_unavailable"


class TestApiSurface:
    @pytest.mark.asyncio
    async def test_unknown_route_uses_error_shape(self, client):
        response = await client.get("/api/v1/nope")
        assert response.status_code == 404
        assert response.json()["ok"] is False
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == settings.APP_NAME

    @pytest.mark.asyncio
    async def test_api_responses_are_not_cached(self, client):
        response = await client.get("/api/v1/captcha/site-key")
        assert "no-store" in response.headers["Cache-Control"]


class TestHealth:
    """GET /health"""

    @pytest.fixture
    def health_cache(self, cache, monkeypatch):
        async def _get_cache():
            return cache

        monkeypatch.setattr(main, "get_cache", _get_cache)
        return cache

    @pytest.mark.asyncio
    async def test_healthy(self, client, health_cache):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["redis"] == "connected"

    @pytest.mark.asyncio
    async def test_redis_down_is_unhealthy(self, client, health_cache, fake_redis):
        fake_redis.available = False

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["redis"] == "disconnected"


class TestMetricsEndpoint:
    """GET /metrics"""

    @pytest.mark.asyncio
    async def test_verify_outcome_is_exported(self, client, make_link):
        _, token = await make_link()
        await client.post(
            "/api/v1/action-links/verify",
            json={"token": token, "email": "jane@example.com", "captchaToken": "ok"},
        )

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert 'action_link_operations_total{operation="verify",result="ok"}' in response.text

    @pytest.mark.asyncio
    async def test_request_labels_never_carry_raw_tokens(self, client):
        token = "r" * 43
        await client.get(f"/action/{token}")

        response = await client.get("/metrics")

        assert token not in response.text
