"""CAPTCHA configuration for the public action page."""

from fastapi import APIRouter, Request

from charterdesk.core.config import settings
from charterdesk.core.errors import ServiceUnavailableError
from charterdesk.core.rate_limit import limiter
from charterdesk.schemas.quote import CaptchaSiteKeyResponse

router = APIRouter()


@router.get("/site-key", response_model=CaptchaSiteKeyResponse)
@limiter.limit("60/minute")
async def get_site_key(request: Request):
    """Public Turnstile site key. The secret key never leaves the server."""
    if not settings.TURNSTILE_SITE_KEY:
        raise ServiceUnavailableError("CAPTCHA site key not configured")
    return CaptchaSiteKeyResponse(site_key=settings.TURNSTILE_SITE_KEY)
