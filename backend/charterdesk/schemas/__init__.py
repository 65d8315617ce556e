"""Pydantic schemas for API validation."""

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
from charterdesk.schemas.common import ErrorResponse, HealthResponse
from charterdesk.schemas.quote import CaptchaSiteKeyResponse, QuoteStatusResponse

__all__ = [
    # Action links
    "ActionLinkConsumeRequest",
    "ActionLinkConsumeResponse",
    "ActionLinkCreate",
    "ActionLinkCreateResponse",
    "ActionLinkResponse",
    "ActionLinkVerifyRequest",
    "ActionLinkVerifyResponse",
    "AuditEntryResponse",
    "VerifiedLinkData",
    # Common
    "ErrorResponse",
    "HealthResponse",
    # Quotes
    "CaptchaSiteKeyResponse",
    "QuoteStatusResponse",
]
