"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from charterdesk.api.v1 import api_router
from charterdesk.core.config import settings
from charterdesk.core.errors import (
    APIException,
    ErrorCode,
    api_exception_handler,
    create_error_response,
    http_exception_handler,
    validation_exception_handler,
)
from charterdesk.core.logging_config import configure_logging
from charterdesk.core.metrics import MetricsMiddleware, get_metrics
from charterdesk.core.middleware import (
    SecurityHeadersMiddleware,
    TokenRedactionMiddleware,
    install_token_redaction_logging,
    redact_exception_args,
    redact_tokens,
)
from charterdesk.core.rate_limit import limiter, rate_limit_exceeded_handler, user_limiter
from charterdesk.db.session import AsyncSessionLocal, Base, engine
from charterdesk.schemas.common import HealthResponse
from charterdesk.services.cache_service import cache_service, get_cache

# Import all models so they're registered with Base.metadata
from charterdesk.models import action_link, audit, quote, user  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    configure_logging()
    # Raw link tokens must never reach any log sink
    install_token_redaction_logging()
    logger.info(
        "Starting %s v%s",
        settings.APP_NAME,
        settings.APP_VERSION,
        extra={"event_type": "system.startup", "environment": settings.ENVIRONMENT},
    )

    # Only auto-create tables in development/local environments
    # In production, use Alembic migrations: alembic upgrade head
    if settings.ENVIRONMENT in ("local", "development", "dev"):
        logger.warning("Auto-creating database tables (development mode)")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    else:
        logger.info("Skipping auto-create; schema is managed by Alembic migrations")

    await cache_service.connect()

    yield

    logger.info("Shutting down", extra={"event_type": "system.shutdown"})
    await cache_service.disconnect()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Expiring, email-bound action links for charter customers",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.state.user_limiter = user_limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Standardized error bodies
app.add_exception_handler(APIException, api_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)

# CORS middleware - restricted to the methods the API uses
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(MetricsMiddleware)

# Added last so it runs outermost and its Referrer-Policy wins
app.add_middleware(TokenRedactionMiddleware)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions without echoing raw tokens."""
    exc = redact_exception_args(exc)
    logger.error(
        "Unhandled exception on %s: %s",
        redact_tokens(request.url.path),
        type(exc).__name__,
        exc_info=exc,
    )

    message = "An unexpected error occurred"
    if settings.DEBUG:
        message = redact_tokens(str(exc))[:200] or message

    return JSONResponse(
        status_code=500,
        content=create_error_response(code=ErrorCode.DOWNSTREAM_FAILURE, message=message),
    )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """
    Health check endpoint with real connectivity verification.

    Returns 503 if the database or Redis is unreachable; both back the
    rate limits and idempotency guarantees of the action link endpoints.
    Error details are hidden in production.
    """
    is_production = settings.ENVIRONMENT == "production"
    overall_status = "healthy"

    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
            db_status = "connected"
    except Exception as e:
        db_status = "error" if is_production else f"error: {str(e)[:50]}"
        overall_status = "unhealthy"

    cache = await get_cache()
    if await cache.ping():
        redis_status = "connected"
    else:
        redis_status = "disconnected"
        overall_status = "unhealthy"

    response = HealthResponse(
        status=overall_status,
        version=settings.APP_VERSION,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(timezone.utc),
    )

    if overall_status == "unhealthy":
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))

    return response


# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus scrape endpoint."""
    return get_metrics()


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": f"{settings.API_V1_PREFIX}/docs",
    }
