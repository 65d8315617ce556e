"""Quote engagement model.

Only the columns the action link flow touches are mapped here: the customer's
response and how often the quote was opened through a link.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from charterdesk.db.session import Base
from charterdesk.models.base import TimestampMixin, UUIDMixin, as_utc


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


class QuoteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Quote(Base, UUIDMixin, TimestampMixin):
    """Charter quote sent to a customer."""

    __tablename__ = "quotes"

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=QuoteStatus.PENDING.value
    )

    first_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    open_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def engagement(self) -> dict:
        """Cacheable snapshot of the quote's customer-facing state."""
        return {
            "status": self.status,
            "first_opened_at": _iso(self.first_opened_at),
            "last_opened_at": _iso(self.last_opened_at),
            "open_count": self.open_count or 0,
        }
