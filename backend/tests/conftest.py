"""
Pytest configuration and fixtures for action link tests.

Provides common fixtures for:
- Test database setup (SQLite in memory)
- An in-memory Redis double and a mocked Turnstile verifier
- Test client with dependency overrides
- Issuing users, tenants and pre-built links
"""

import os

# Must be set before charterdesk settings are imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TURNSTILE_SECRET_KEY", "test-turnstile-secret")
os.environ.setdefault("TURNSTILE_SITE_KEY", "test-turnstile-site-key")

import time
import uuid
from datetime import timedelta
from types import SimpleNamespace
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
import redis.exceptions
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from charterdesk.api.deps import get_cache_service
from charterdesk.core import rate_limit as rate_limit_module
from charterdesk.core.rate_limit import limiter, user_limiter
from charterdesk.core.security import create_access_token, generate_opaque_token, hash_token
from charterdesk.db.session import Base, get_db
from charterdesk.main import app
from charterdesk.models.action_link import ActionLink, ActionLinkStatus
from charterdesk.models.base import utc_now
from charterdesk.models.quote import Quote
from charterdesk.models.user import User
from charterdesk.services.cache_service import CacheService
from charterdesk.services.captcha import TurnstileVerifier, get_captcha_verifier

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TURNSTILE_TEST_URL = "https://turnstile.test/siteverify"

CUSTOMER_EMAIL = "jane@example.com"

# Middle of a 60 s and a 600 s window, so fixed-window tests never straddle a boundary
FROZEN_LIMITER_TIME = 1_000_010.0


# =============================================================================
# Redis Double
# =============================================================================


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with decode_responses=True.

    Set ``available = False`` to simulate an outage.
    """

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, float] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise redis.exceptions.ConnectionError("Redis unavailable")

    def _purge(self, key: str) -> None:
        expires = self.expiry.get(key)
        if expires is not None and expires <= time.monotonic():
            self.store.pop(key, None)
            self.expiry.pop(key, None)

    @staticmethod
    def _seconds(ttl) -> float:
        return ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)

    def ttl_of(self, key: str) -> float | None:
        expires = self.expiry.get(key)
        return None if expires is None else expires - time.monotonic()

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        self._purge(key)
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        self._purge(key)
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        if ex:
            self.expiry[key] = time.monotonic() + self._seconds(ex)
        else:
            self.expiry.pop(key, None)
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if self.store.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def exists(self, *keys):
        self._check()
        count = 0
        for key in keys:
            self._purge(key)
            count += key in self.store
        return count

    async def incr(self, key):
        self._check()
        self._purge(key)
        value = int(self.store.get(key, "0")) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self._check()
        if key not in self.store:
            return False
        self.expiry[key] = time.monotonic() + self._seconds(seconds)
        return True

    async def aclose(self):
        return None


# =============================================================================
# Turnstile Double
# =============================================================================


class TurnstileStub:
    """Answers siteverify calls. ``mode`` is one of: pass, reject, outage, garbage."""

    def __init__(self):
        self.mode = "pass"
        self.calls: list[dict[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        self.calls.append(form)

        if self.mode == "outage":
            raise httpx.ConnectError("connection refused", request=request)
        if self.mode == "garbage":
            return httpx.Response(200, text="<html>oops</html>")
        if self.mode == "reject":
            return httpx.Response(
                200, json={"success": False, "error-codes": ["invalid-input-response"]}
            )
        return httpx.Response(200, json={"success": True})


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async_session = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# =============================================================================
# Collaborator Doubles
# =============================================================================


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> CacheService:
    return CacheService(client=fake_redis)


@pytest.fixture
def turnstile() -> TurnstileStub:
    return TurnstileStub()


@pytest.fixture
def captcha_verifier(turnstile) -> TurnstileVerifier:
    return TurnstileVerifier(
        secret_key="test-turnstile-secret",
        verify_url=TURNSTILE_TEST_URL,
        timeout_seconds=1.0,
        transport=httpx.MockTransport(turnstile.handler),
    )


@pytest.fixture(autouse=True)
def reset_rate_limiters():
    """slowapi keeps in-process counters; start every test from zero."""
    limiter.reset()
    user_limiter.reset()
    yield


@pytest.fixture(autouse=True)
def frozen_limiter_clock(monkeypatch):
    """Pin fixed-window limiter time so windows never roll over mid-test."""
    monkeypatch.setattr(rate_limit_module, "time", SimpleNamespace(time=lambda: FROZEN_LIMITER_TIME))


# =============================================================================
# Test Client Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def client(db_session, cache, captcha_verifier) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with database, cache and CAPTCHA overridden."""

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_cache_service] = lambda: cache
    app.dependency_overrides[get_captcha_verifier] = lambda: captcha_verifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# =============================================================================
# User and Authentication Fixtures
# =============================================================================


@pytest.fixture
def test_tenant_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def other_tenant_id() -> str:
    return str(uuid.uuid4())


async def _create_user(session: AsyncSession, tenant_id: str, email: str) -> dict:
    user = User(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        email=email,
        full_name="Test Broker",
        is_active=True,
    )
    session.add(user)
    await session.commit()
    return {"id": user.id, "tenant_id": tenant_id, "email": email}


@pytest_asyncio.fixture
async def issuer(db_session, test_tenant_id) -> dict:
    """An active broker of the test tenant."""
    return await _create_user(db_session, test_tenant_id, "broker@example.com")


@pytest_asyncio.fixture
async def other_issuer(db_session, other_tenant_id) -> dict:
    """An active broker of a different tenant."""
    return await _create_user(db_session, other_tenant_id, "rival@example.com")


@pytest.fixture
def auth_headers(issuer) -> dict:
    token = create_access_token(issuer["id"])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth_headers(other_issuer) -> dict:
    token = create_access_token(other_issuer["id"])
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# Link and Quote Fixtures
# =============================================================================


@pytest.fixture
def make_link(db_session, issuer):
    """Insert a link directly. Returns ``(link_id, raw_token)``."""

    async def _make(
        email: str = CUSTOMER_EMAIL,
        action_type: str = "quote",
        max_uses: int = 1,
        use_count: int = 0,
        status: str = ActionLinkStatus.ACTIVE.value,
        expires_in: timedelta = timedelta(hours=1),
        metadata: dict | None = None,
    ) -> tuple[str, str]:
        raw_token = generate_opaque_token()
        link = ActionLink(
            id=str(uuid.uuid4()),
            tenant_id=issuer["tenant_id"],
            created_by_user_id=issuer["id"],
            token_hash=hash_token(raw_token),
            email=email,
            action_type=action_type,
            link_metadata=metadata or {},
            expires_at=utc_now() + expires_in,
            max_uses=max_uses,
            use_count=use_count,
            status=status,
        )
        db_session.add(link)
        await db_session.commit()
        return link.id, raw_token

    return _make


@pytest.fixture
def load_link(db_session):
    """Re-read a link from the database, bypassing the identity map."""

    async def _load(link_id: str) -> ActionLink:
        result = await db_session.execute(
            select(ActionLink)
            .where(ActionLink.id == link_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _load


@pytest.fixture
def load_quote(db_session):
    async def _load(quote_id: str) -> Quote:
        result = await db_session.execute(
            select(Quote).where(Quote.id == quote_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _load


@pytest_asyncio.fixture
async def quote_id(db_session, test_tenant_id) -> str:
    quote = Quote(id=str(uuid.uuid4()), tenant_id=test_tenant_id, status="pending", open_count=0)
    db_session.add(quote)
    await db_session.commit()
    return quote.id
