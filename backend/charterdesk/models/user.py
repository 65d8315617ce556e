"""Tenant member model."""

from sqlalchemy import Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from charterdesk.db.session import Base
from charterdesk.models.base import TimestampMixin, UUIDMixin


class User(Base, UUIDMixin, TimestampMixin):
    """Broker staff member allowed to issue action links for their tenant.

    Credentials live with the identity provider that signs bearer tokens;
    this row only records tenant membership and whether the account is active.
    """

    __tablename__ = "users"

    # Users are unique WITHIN a tenant, not globally
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        Index("ix_users_tenant_email", "tenant_id", "email"),
    )

    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def belongs_to(self, tenant_id: str) -> bool:
        return self.tenant_id == tenant_id
