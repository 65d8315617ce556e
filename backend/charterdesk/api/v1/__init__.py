"""API v1 routes."""

from fastapi import APIRouter

from charterdesk.api.v1.endpoints import action_links, captcha, quotes

api_router = APIRouter()

api_router.include_router(action_links.router, prefix="/action-links", tags=["Action Links"])
api_router.include_router(quotes.router, prefix="/quotes", tags=["Quotes"])
api_router.include_router(captcha.router, prefix="/captcha", tags=["CAPTCHA"])
