"""Action link endpoints.

Issuance and inspection are for authenticated tenant members. Verification
and consumption are anonymous: the raw token plus the bound email address
are the credential, guarded by rate limits and (for verify) a CAPTCHA.
"""

from typing import Annotated

from fastapi import APIRouter, Header, Request, status

from charterdesk.api.deps import Client, CurrentUser, LinkService
from charterdesk.core.rate_limit import RateLimits, user_limiter
from charterdesk.schemas.action_link import (
    ActionLinkConsumeRequest,
    ActionLinkConsumeResponse,
    ActionLinkCreate,
    ActionLinkCreateResponse,
    ActionLinkResponse,
    ActionLinkVerifyRequest,
    ActionLinkVerifyResponse,
    AuditEntryResponse,
    VerifiedLinkData,
)
from charterdesk.schemas.common import ErrorResponse

router = APIRouter(
    responses={
        400: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    }
)


@router.post("", response_model=ActionLinkCreateResponse, status_code=status.HTTP_201_CREATED)
@user_limiter.limit(RateLimits.ACTION_LINK_ISSUE)
async def create_action_link(
    request: Request,
    data: ActionLinkCreate,
    current_user: CurrentUser,
    service: LinkService,
    client: Client,
):
    """
    Issue an action link for a customer.

    The response ``link`` is the only place the raw token is ever returned;
    store or send it immediately.
    """
    issued = await service.issue(
        issuer=current_user,
        tenant_id=str(data.tenant_id),
        action_type=data.action_type.value,
        email=data.email,
        metadata=data.metadata,
        expires_in_minutes=data.expires_in_minutes,
        max_uses=data.max_uses,
        ctx=client,
        origin=str(request.base_url),
    )
    return ActionLinkCreateResponse(
        id=issued.link.id,
        link=issued.url,
        expires_at=issued.link.expires_at,
    )


@router.post("/verify", response_model=ActionLinkVerifyResponse)
async def verify_action_link(
    data: ActionLinkVerifyRequest,
    service: LinkService,
    client: Client,
):
    """
    Verify a link for the holder of ``email`` without spending a use.

    Returns what the action page needs to render.
    """
    link = await service.verify(
        token=data.token,
        email=data.email,
        captcha_token=data.captcha_token,
        ctx=client,
    )
    return ActionLinkVerifyResponse(
        data=VerifiedLinkData(
            id=link.id,
            action_type=link.action_type,
            tenant_id=link.tenant_id,
            expires_at=link.expires_at,
            metadata=link.link_metadata or {},
        )
    )


@router.post(
    "/consume",
    response_model=ActionLinkConsumeResponse,
    response_model_exclude_none=True,
)
async def consume_action_link(
    data: ActionLinkConsumeRequest,
    service: LinkService,
    client: Client,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
):
    """
    Spend one use of a link and perform its action.

    Requires an ``Idempotency-Key`` header. Retrying with the same key
    within the idempotency window returns the first result instead of
    spending another use.
    """
    return await service.consume(
        idempotency_key=idempotency_key or "",
        token=data.token,
        email=data.email,
        payload=data.payload,
        ctx=client,
    )


@router.get("/{link_id}", response_model=ActionLinkResponse)
@user_limiter.limit(RateLimits.ACTION_LINK_READ)
async def get_action_link(
    request: Request,
    link_id: str,
    current_user: CurrentUser,
    service: LinkService,
):
    """Get a link's state. Links of other tenants are reported as not found."""
    link = await service.get_for_tenant(link_id, current_user.tenant_id)
    return ActionLinkResponse.model_validate(link)


@router.get("/{link_id}/audit", response_model=list[AuditEntryResponse])
@user_limiter.limit(RateLimits.ACTION_LINK_READ)
async def get_action_link_audit(
    request: Request,
    link_id: str,
    current_user: CurrentUser,
    service: LinkService,
):
    """Get a link's audit trail, newest first."""
    entries = await service.get_audit_trail(link_id, current_user.tenant_id)
    return [AuditEntryResponse.model_validate(entry) for entry in entries]
