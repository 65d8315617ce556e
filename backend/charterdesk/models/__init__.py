"""Database models for CharterDesk action links."""

from charterdesk.models.action_link import ActionLink, ActionLinkStatus, ActionType
from charterdesk.models.audit import AuditAction, AuditLog
from charterdesk.models.quote import Quote, QuoteStatus
from charterdesk.models.user import User

__all__ = [
    # Action links
    "ActionLink",
    "ActionLinkStatus",
    "ActionType",
    # Audit
    "AuditAction",
    "AuditLog",
    # Quotes
    "Quote",
    "QuoteStatus",
    # User
    "User",
]
