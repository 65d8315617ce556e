"""Audit log models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
import hashlib
import json

from sqlalchemy import JSON, DateTime, Enum as SQLEnum, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from charterdesk.db.session import Base
from charterdesk.models.base import UUIDMixin, as_utc


class AuditAction(str, Enum):
    """
    Audit action types.

    Naming convention: ``<resource>.<verb>``, logged after the state change
    succeeded and inside the same transaction.
    """

    ACTION_LINK_CREATE = "action_link.create"
    ACTION_LINK_VERIFY = "action_link.verify"
    ACTION_LINK_CONSUME = "action_link.consume"


class AuditLog(Base, UUIDMixin):
    """
    Immutable audit log entry.

    IMMUTABILITY ENFORCEMENT:
    - DB-level trigger blocks UPDATE and DELETE operations (see migration 001)
    - No updated_at column - entries are write-once
    """

    __tablename__ = "audit_logs"

    # NULL allowed for system-level events
    tenant_id: Mapped[str | None] = mapped_column(String(36), index=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    # Actor - NULL when the actor is an anonymous link holder
    user_id: Mapped[str | None] = mapped_column(String(36), index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)

    action: Mapped[AuditAction] = mapped_column(
        SQLEnum(AuditAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), index=True)

    description: Mapped[str | None] = mapped_column(Text)
    extra_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql")
    )

    # SHA256(id|tenant_id|timestamp|user_id|action|resource_type|resource_id|extra|previous_hash)
    integrity_hash: Mapped[str | None] = mapped_column(String(64), index=True)

    # integrity_hash of the tenant's previous entry, "genesis" for the first
    previous_hash: Mapped[str | None] = mapped_column(String(64), index=True)

    def compute_integrity_hash(self, previous_hash: str | None = None) -> str:
        """Compute SHA256 hash of critical audit fields for tamper detection.

        Args:
            previous_hash: The hash of the previous audit log entry in the chain.
                          If None, uses self.previous_hash (for verification).
        """
        def serialize(v: Any) -> str:
            if v is None:
                return "null"
            if isinstance(v, datetime):
                return as_utc(v).astimezone(timezone.utc).isoformat()
            if isinstance(v, dict):
                return json.dumps(v, sort_keys=True, default=str)
            if isinstance(v, Enum):
                return str(v.value)
            return str(v)

        prev_hash = previous_hash if previous_hash is not None else self.previous_hash

        # Order matters - must be consistent
        hash_input = "|".join([
            serialize(self.id),
            serialize(self.tenant_id),
            serialize(self.timestamp),
            serialize(self.user_id),
            serialize(self.action),
            serialize(self.resource_type),
            serialize(self.resource_id),
            serialize(self.extra_data),
            serialize(prev_hash),
        ])

        return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()

    def verify_integrity(self) -> bool:
        """Return True if the stored hash matches the recomputed hash."""
        if not self.integrity_hash:
            return False
        return self.integrity_hash == self.compute_integrity_hash()

    __table_args__ = (
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
        Index("ix_audit_logs_timestamp_action", "timestamp", "action"),
    )
