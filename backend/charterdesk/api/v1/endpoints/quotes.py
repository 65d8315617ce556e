"""Quote engagement endpoints."""

from fastapi import APIRouter, Request
from sqlalchemy import select

from charterdesk.api.deps import Cache, CurrentUser, DBSession
from charterdesk.core.errors import NotFoundError
from charterdesk.core.rate_limit import RateLimits, user_limiter
from charterdesk.models.quote import Quote
from charterdesk.schemas.quote import QuoteStatusResponse
from charterdesk.services.quote_cache import QuoteCache

router = APIRouter()


@router.get("/{quote_id}/status", response_model=QuoteStatusResponse)
@user_limiter.limit(RateLimits.STANDARD)
async def get_quote_status(
    request: Request,
    quote_id: str,
    db: DBSession,
    cache: Cache,
    current_user: CurrentUser,
):
    """Customer response and open tracking for a quote, served through the cache."""
    tenant_id = current_user.tenant_id

    async def load() -> dict | None:
        result = await db.execute(
            select(Quote).where(Quote.id == quote_id, Quote.tenant_id == tenant_id)
        )
        quote = result.scalar_one_or_none()
        return quote.engagement() if quote else None

    data = await QuoteCache(cache).get(tenant_id, quote_id, load)
    if data is None:
        raise NotFoundError("Quote")

    return QuoteStatusResponse(quote_id=quote_id, **data)
