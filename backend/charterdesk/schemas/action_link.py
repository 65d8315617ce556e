"""Action link request/response schemas."""

from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints

from charterdesk.core.config import settings
from charterdesk.models.action_link import ActionType
from charterdesk.models.audit import AuditAction
from charterdesk.schemas.common import BaseSchema

# Raw tokens are base64url; anything else is rejected before hashing
RawToken = Annotated[
    str, StringConstraints(min_length=20, max_length=256, pattern=r"^[A-Za-z0-9_-]+$")
]


class ActionLinkCreate(BaseModel):
    """Issue a link. Only members of ``tenant_id`` may issue for it."""

    tenant_id: UUID
    action_type: ActionType
    email: EmailStr
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_in_minutes: int = Field(
        default=settings.ACTION_LINK_DEFAULT_EXPIRES_MINUTES,
        ge=settings.ACTION_LINK_MIN_EXPIRES_MINUTES,
        le=settings.ACTION_LINK_MAX_EXPIRES_MINUTES,
    )
    max_uses: int = Field(
        default=settings.ACTION_LINK_DEFAULT_MAX_USES,
        ge=1,
        le=settings.ACTION_LINK_MAX_USES_LIMIT,
    )


class ActionLinkCreateResponse(BaseModel):
    """The only response that ever carries the raw token (inside ``link``)."""

    id: str
    link: str
    expires_at: datetime


class ActionLinkVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: RawToken
    email: EmailStr
    captcha_token: str = Field(alias="captchaToken", min_length=1, max_length=4096)


class VerifiedLinkData(BaseModel):
    id: str
    action_type: str
    tenant_id: str
    expires_at: datetime
    metadata: dict[str, Any]


class ActionLinkVerifyResponse(BaseModel):
    ok: bool = True
    data: VerifiedLinkData


class ActionLinkConsumeRequest(BaseModel):
    token: RawToken
    email: EmailStr
    payload: dict[str, Any] | None = None


class ActionLinkConsumeResponse(BaseModel):
    """``consumed`` is absent when a concurrent request with the same key is still running."""

    ok: bool = True
    idempotent: bool | None = None
    consumed: bool | None = None


class ActionLinkResponse(BaseSchema):
    """Issuer-facing view of a link. Never includes the token or its hash."""

    id: str
    tenant_id: str
    action_type: str
    email: str
    metadata: dict[str, Any] = Field(validation_alias="link_metadata")
    status: str
    max_uses: int
    use_count: int
    remaining_uses: int
    is_expired: bool
    expires_at: datetime
    last_verified_at: datetime | None = None
    consumed_at: datetime | None = None
    created_at: datetime


class AuditEntryResponse(BaseSchema):
    id: str
    timestamp: datetime
    action: AuditAction
    user_id: str | None = None
    ip_address: str | None = None
    description: str | None = None
    extra_data: dict[str, Any] | None = None
