"""API dependencies for dependency injection."""

import logging
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from charterdesk.core.client_ip import get_client_ip
from charterdesk.core.errors import UnauthorizedError
from charterdesk.core.logging_config import format_security_event
from charterdesk.core.security import decode_token
from charterdesk.db.session import get_db
from charterdesk.models.user import User
from charterdesk.services.action_links import ActionLinkService, ClientContext
from charterdesk.services.cache_service import CacheService, get_cache
from charterdesk.services.captcha import TurnstileVerifier, get_captcha_verifier

# Security audit logger - separate from general logging for SIEM integration
auth_logger = logging.getLogger("security.auth")

# auto_error=False so a missing header renders our 401 body, not Starlette's 403
security = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> User:
    """Resolve the bearer token to an active user.

    The user is also stored on ``request.state.user`` for per-user rate limits.
    """
    if credentials is None:
        raise UnauthorizedError()

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("type") != "access" or not payload.get("sub"):
        auth_logger.warning(
            "Rejected bearer token",
            extra=format_security_event(
                event_type="security.auth.invalid_token",
                severity="warning",
                description="Invalid or expired access token",
                ip_address=get_client_ip(request),
            ),
        )
        raise UnauthorizedError("Could not validate credentials")

    result = await db.execute(
        select(User).where(User.id == payload["sub"], User.is_active == True)  # noqa: E712
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise UnauthorizedError("Could not validate credentials")

    request.state.user = user
    return user


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


async def get_cache_service() -> CacheService:
    return await get_cache()


async def get_action_link_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[CacheService, Depends(get_cache_service)],
    captcha: Annotated[TurnstileVerifier, Depends(get_captcha_verifier)],
) -> ActionLinkService:
    return ActionLinkService(db=db, cache=cache, captcha=captcha)


# Type aliases for cleaner endpoint signatures
DBSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUser = Annotated[User, Depends(get_current_user)]
Client = Annotated[ClientContext, Depends(get_client_context)]
Cache = Annotated[CacheService, Depends(get_cache_service)]
LinkService = Annotated[ActionLinkService, Depends(get_action_link_service)]
