"""Action link model.

An action link is a capability grant: whoever holds the raw token *and* knows
the bound email address may perform one kind of action (accept a quote,
confirm an invoice) a bounded number of times before the link expires.

Security Properties:
- Opaque: the URL carries 32 random bytes, never a decodable payload
- Hash-only storage: the raw token is returned once at issuance and never
  persisted; ``token_hash`` is the only lookup key
- Bounded: ``use_count`` can never exceed ``max_uses`` (CHECK constraint and
  compare-and-swap increments)
- Auditable: issuance, verification and consumption each write an audit entry
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from charterdesk.db.session import Base
from charterdesk.models.base import TimestampMixin, UUIDMixin, as_utc, utc_now


class ActionType(str, Enum):
    """Kinds of action a link can authorize."""

    QUOTE = "quote"
    INVOICE = "invoice"
    OTHER = "other"


class ActionLinkStatus(str, Enum):
    """Stored lifecycle state. Expiry is evaluated at read time, never stored."""

    ACTIVE = "active"
    CONSUMED = "consumed"


class ActionLink(Base, UUIDMixin, TimestampMixin):
    """Single- or limited-use capability link bound to an email address."""

    __tablename__ = "action_links"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_by_user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True
    )

    # SHA-256, base64url without padding
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # Stored lower-cased; compared case-insensitively
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    action_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # "metadata" is reserved on declarative classes, hence the attribute name
    link_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ActionLinkStatus.ACTIVE.value
    )

    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped["User"] = relationship()

    __table_args__ = (
        CheckConstraint("use_count >= 0", name="ck_action_links_use_count_nonnegative"),
        CheckConstraint("use_count <= max_uses", name="ck_action_links_use_count_bounded"),
        CheckConstraint("max_uses BETWEEN 1 AND 100", name="ck_action_links_max_uses_range"),
        CheckConstraint(
            "status IN ('active', 'consumed')", name="ck_action_links_status_values"
        ),
        Index("ix_action_links_tenant_created", "tenant_id", "created_at"),
    )

    @property
    def is_expired(self) -> bool:
        """Check if the link has expired."""
        return utc_now() >= as_utc(self.expires_at)

    @property
    def is_exhausted(self) -> bool:
        """Check if every allowed use has been spent."""
        return self.use_count >= self.max_uses

    @property
    def is_active(self) -> bool:
        return self.status == ActionLinkStatus.ACTIVE.value

    @property
    def is_usable(self) -> bool:
        """Active, unexpired and below its use bound."""
        return self.is_active and not self.is_expired and not self.is_exhausted

    @property
    def remaining_uses(self) -> int:
        return max(self.max_uses - self.use_count, 0)

    def email_matches(self, email: str) -> bool:
        """Case-insensitive comparison against the bound address."""
        return self.email.strip().lower() == (email or "").strip().lower()


# Import for relationship type hints
from charterdesk.models.user import User  # noqa: E402
