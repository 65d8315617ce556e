"""Audit logging service."""

from datetime import datetime, timezone
import re
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from charterdesk.models.audit import AuditAction, AuditLog


# =============================================================================
# Secret Redaction for Audit Logs
# =============================================================================

# Fields whose values must never reach the audit table
SECRET_FIELDS = {
    # Link credentials
    "token", "raw_token", "link", "captcha_token", "captchatoken",
    # Authentication secrets
    "password", "secret", "secret_key", "api_key", "authorization",
}

# Raw tokens embedded in shareable URLs or query strings
SECRET_PATTERNS = [
    (re.compile(r"(/action/)[A-Za-z0-9_-]{20,}"), r"\1[TOKEN_REDACTED]"),
    (re.compile(r"(token=)[A-Za-z0-9_.-]+", re.IGNORECASE), r"\1[TOKEN_REDACTED]"),
]


def redact_secret_value(value: Any) -> Any:
    """Redact secrets from a single value.

    Handles strings, dicts, and lists recursively.
    """
    if isinstance(value, str):
        result = value
        for pattern, replacement in SECRET_PATTERNS:
            result = pattern.sub(replacement, result)
        return result

    if isinstance(value, dict):
        return redact_secret_dict(value)

    if isinstance(value, list):
        return [redact_secret_value(item) for item in value]

    return value


def redact_secret_dict(data: dict | None) -> dict | None:
    """Redact secrets from a dictionary.

    - Replaces values of known secret field names
    - Scans string values for embedded tokens
    - Recursively handles nested dicts and lists
    """
    if not data:
        return data

    result = {}
    for key, value in data.items():
        if str(key).lower() in SECRET_FIELDS:
            result[key] = "[REDACTED]" if value is not None else None
        else:
            result[key] = redact_secret_value(value)

    return result


class AuditService:
    """
    Service for recording and querying audit logs.

    All audit entries are immutable. Each tenant's entries form a hash chain
    via previous_hash so deleted or edited rows are detectable.
    """

    GENESIS_HASH = "genesis"

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_previous_hash(self, tenant_id: str | None) -> str:
        """Get the integrity_hash of the most recent entry for a tenant."""
        query = select(AuditLog.integrity_hash)
        if tenant_id:
            query = query.where(AuditLog.tenant_id == tenant_id)
        else:
            query = query.where(AuditLog.tenant_id.is_(None))
        query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(1)

        result = await self.db.execute(query)
        previous_hash = result.scalar_one_or_none()

        return previous_hash if previous_hash else self.GENESIS_HASH

    async def log(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        tenant_id: str | None = None,
    ) -> AuditLog:
        """
        Create an immutable audit log entry with chain integrity.

        The entry is flushed but not committed; callers commit it together
        with the state change it describes.

        Args:
            action: The type of action being logged
            resource_type: The type of resource (e.g., "action_link")
            resource_id: The ID of the resource being acted upon
            user_id: The acting user, None for anonymous link holders
            ip_address: The client IP address
            user_agent: The client user agent string
            description: Human-readable description of the action
            metadata: Additional context as JSON (secrets are redacted)
            tenant_id: The tenant ID for multi-tenant isolation

        Returns:
            The created AuditLog entry with integrity_hash and previous_hash set
        """
        redacted_metadata = redact_secret_dict(metadata) if metadata else None

        previous_hash = await self._get_previous_hash(tenant_id)

        log_entry = AuditLog(
            id=str(uuid4()),
            tenant_id=tenant_id,
            timestamp=datetime.now(timezone.utc),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            description=redact_secret_value(description) if description else None,
            extra_data=redacted_metadata,
            previous_hash=previous_hash,
        )

        # Hashed before the INSERT: the table rejects UPDATEs
        log_entry.integrity_hash = log_entry.compute_integrity_hash(previous_hash)

        self.db.add(log_entry)
        await self.db.flush()

        return log_entry

    async def get_resource_audit_trail(
        self,
        resource_type: str,
        resource_id: str,
        tenant_id: str,  # Multi-tenant required
        limit: int = 100,
    ) -> list[AuditLog]:
        """Get the audit trail for one resource, newest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(
                AuditLog.tenant_id == tenant_id,
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def verify_chain_integrity(self, tenant_id: str, limit: int = 10000) -> dict:
        """
        Verify the integrity of a tenant's audit chain.

        Returns:
            {"verified": bool, "entries_checked": int, "violations": [...]}
        """
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.tenant_id == tenant_id)
            .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
            .limit(limit)
        )
        logs = list(result.scalars().all())

        violations = []
        expected_previous_hash = self.GENESIS_HASH

        for i, log_entry in enumerate(logs):
            if log_entry.previous_hash != expected_previous_hash:
                violations.append({
                    "entry_id": str(log_entry.id),
                    "type": "chain_break",
                    "details": f"Entry {i}: previous_hash mismatch",
                })

            if not log_entry.verify_integrity():
                violations.append({
                    "entry_id": str(log_entry.id),
                    "type": "integrity_failure",
                    "details": f"Entry {i}: integrity_hash verification failed",
                })

            expected_previous_hash = log_entry.integrity_hash

        return {
            "verified": not violations,
            "entries_checked": len(logs),
            "violations": violations,
        }
