"""Unit tests for client IP resolution behind reverse proxies."""

import pytest
from starlette.requests import Request

from charterdesk.core import client_ip
from charterdesk.core.client_ip import clear_trusted_proxy_cache, get_client_ip


def make_request(peer: str | None, headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/action-links/verify",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": (peer, 51234) if peer else None,
    }
    return Request(scope)


@pytest.fixture
def trusted_proxies(monkeypatch):
    def _set(value: str):
        monkeypatch.setattr(client_ip.settings, "TRUSTED_PROXY_IPS", value)
        clear_trusted_proxy_cache()

    yield _set
    clear_trusted_proxy_cache()


class TestGetClientIp:
    def test_direct_peer_without_proxies(self, trusted_proxies):
        trusted_proxies("")
        assert get_client_ip(make_request("198.51.100.7")) == "198.51.100.7"

    def test_forwarded_for_ignored_from_untrusted_peer(self, trusted_proxies):
        trusted_proxies("10.0.0.1")
        request = make_request("198.51.100.7", {"X-Forwarded-For": "1.2.3.4"})
        assert get_client_ip(request) == "198.51.100.7"

    def test_forwarded_for_honored_from_trusted_proxy(self, trusted_proxies):
        trusted_proxies("10.0.0.1")
        request = make_request("10.0.0.1", {"X-Forwarded-For": "203.0.113.9"})
        assert get_client_ip(request) == "203.0.113.9"

    def test_spoofed_leftmost_hop_is_skipped(self, trusted_proxies):
        trusted_proxies("10.0.0.0/8")
        request = make_request("10.0.0.2", {"X-Forwarded-For": "6.6.6.6, 203.0.113.9, 10.0.0.5"})
        assert get_client_ip(request) == "203.0.113.9"

    def test_invalid_hops_are_skipped(self, trusted_proxies):
        trusted_proxies("10.0.0.1")
        request = make_request("10.0.0.1", {"X-Forwarded-For": "203.0.113.9, not-an-ip"})
        assert get_client_ip(request) == "203.0.113.9"

    def test_real_ip_fallback(self, trusted_proxies):
        trusted_proxies("10.0.0.1")
        request = make_request("10.0.0.1", {"X-Real-IP": "203.0.113.10"})
        assert get_client_ip(request) == "203.0.113.10"

    def test_invalid_real_ip_falls_back_to_peer(self, trusted_proxies):
        trusted_proxies("10.0.0.1")
        request = make_request("10.0.0.1", {"X-Real-IP": "garbage"})
        assert get_client_ip(request) == "10.0.0.1"

    def test_missing_peer(self, trusted_proxies):
        trusted_proxies("")
        assert get_client_ip(make_request(None)) == "unknown"

    def test_invalid_proxy_entries_are_ignored(self, trusted_proxies):
        trusted_proxies("nonsense, 10.0.0.1")
        request = make_request("10.0.0.1", {"X-Forwarded-For": "203.0.113.9"})
        assert get_client_ip(request) == "203.0.113.9"
