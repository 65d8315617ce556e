"""
Action link lifecycle: issue, verify, consume.

Security Model:
- Raw tokens leave the service exactly once (issuance) and are never
  stored or logged; lookups go through ``hash_token``
- Anonymous endpoints are rate limited per client IP and per token hash
  before any database work
- Verification requires a passed CAPTCHA before the link is looked up
- Consumption spends a use with a single conditional UPDATE, so concurrent
  requests can never push ``use_count`` past ``max_uses``
- Every successful state change writes an audit entry in the same
  transaction; if the audit write fails the change is rolled back
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import DateTime, case, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from charterdesk.audit.service import AuditService
from charterdesk.core.config import settings
from charterdesk.core.errors import (
    APIException,
    DownstreamError,
    EmailMismatchError,
    ForbiddenError,
    LinkExhaustedError,
    LinkExpiredError,
    LinkInactiveError,
    LinkInvalidError,
    NotFoundError,
    ValidationError,
)
from charterdesk.core.logging_config import TRACE_LOGGER_NAME, format_security_event
from charterdesk.core.metrics import (
    track_audit_log,
    track_link_issued,
    track_link_operation,
    track_security_event,
)
from charterdesk.core.rate_limit import FixedWindowRateLimiter, WindowPolicies
from charterdesk.core.security import (
    generate_opaque_token,
    hash_prefix,
    hash_token,
    is_well_formed_token,
)
from charterdesk.models.action_link import ActionLink, ActionLinkStatus
from charterdesk.models.audit import AuditAction, AuditLog
from charterdesk.models.base import utc_now
from charterdesk.models.user import User
from charterdesk.services.action_handlers import ActionHandler, build_action_handlers
from charterdesk.services.cache_service import CacheService
from charterdesk.services.captcha import TurnstileVerifier
from charterdesk.services.idempotency import IdempotencyStore
from charterdesk.services.quote_cache import QuoteCache

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.action_links")
trace_logger = logging.getLogger(TRACE_LOGGER_NAME)

RESOURCE_TYPE = "action_link"


@dataclass
class ClientContext:
    """Where a request came from, for rate limiting and audit."""

    ip_address: str
    user_agent: str | None = None


@dataclass
class IssuedLink:
    link: ActionLink
    url: str


class ActionLinkService:
    """Service for the action link lifecycle. One instance per request."""

    def __init__(
        self,
        db: AsyncSession,
        cache: CacheService,
        captcha: TurnstileVerifier | None = None,
        handlers: dict[str, ActionHandler] | None = None,
    ):
        self.db = db
        self.cache = cache
        self.captcha = captcha or TurnstileVerifier()
        self.audit = AuditService(db)
        self.rate_limiter = FixedWindowRateLimiter(cache)
        self.idempotency = IdempotencyStore(cache)
        self.quote_cache = QuoteCache(cache)
        self.handlers = handlers or build_action_handlers(self.quote_cache)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _trace(self, step: str, **fields: Any) -> None:
        if settings.ACTION_LINK_TRACE:
            trace_logger.debug("action_link.%s", step, extra={"trace": fields})

    def _reject(
        self,
        operation: str,
        exc: APIException,
        ctx: ClientContext,
        link: ActionLink | None = None,
    ) -> APIException:
        """Log a rejected verify/consume and hand the exception back for raising."""
        security_logger.warning(
            f"Action link {operation} rejected",
            extra=format_security_event(
                event_type=f"security.action_link.{operation}_rejected",
                severity="warning",
                description=exc.code.value,
                ip_address=ctx.ip_address,
                tenant_id=link.tenant_id if link else None,
                resource_type=RESOURCE_TYPE,
                resource_id=link.id if link else None,
            ),
        )
        track_link_operation(operation, exc.code.value)
        track_security_event(f"security.action_link.{operation}_rejected", "warning")
        return exc

    def _handler_for(self, link: ActionLink) -> ActionHandler:
        return self.handlers.get(link.action_type, ActionHandler())

    async def _lookup(self, token_hash: str) -> ActionLink | None:
        result = await self.db.execute(
            select(ActionLink).where(ActionLink.token_hash == token_hash)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def check_usable(link: ActionLink, email: str) -> None:
        """Apply the link's business rules; the first failing rule wins.

        Order: status, expiry, use bound, email.
        """
        if link.status == ActionLinkStatus.CONSUMED.value:
            raise LinkExhaustedError()
        if not link.is_active:
            raise LinkInactiveError()
        if link.is_expired:
            raise LinkExpiredError()
        if link.is_exhausted:
            raise LinkExhaustedError()
        if not link.email_matches(email):
            raise EmailMismatchError()

    async def _audit(
        self,
        action: AuditAction,
        link: ActionLink,
        ctx: ClientContext,
        description: str,
        metadata: dict[str, Any],
        user_id: str | None = None,
    ) -> AuditLog:
        """Write the audit entry for a state change. Failure aborts the change."""
        try:
            entry = await self.audit.log(
                action=action,
                resource_type=RESOURCE_TYPE,
                resource_id=link.id,
                user_id=user_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                description=description,
                metadata=metadata,
                tenant_id=link.tenant_id,
            )
        except SQLAlchemyError as e:
            track_audit_log(action.value, success=False)
            logger.error("Audit write failed for action link %s: %s", link.id, type(e).__name__)
            raise DownstreamError("Audit log unavailable") from e

        track_audit_log(action.value)
        return entry

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error("Commit failed: %s", type(e).__name__)
            raise DownstreamError("Failed to persist changes") from e

    async def increment_use(self, link: ActionLink) -> bool:
        """Spend one use with a compare-and-swap UPDATE.

        The WHERE clause re-checks every usability rule the caller already
        checked, so a concurrent consumer that got there first makes this
        update match zero rows instead of overshooting ``max_uses``.

        Returns:
            True if a use was spent; the link is refreshed with new state
        """
        now = utc_now()
        reaches_limit = ActionLink.use_count + 1 >= ActionLink.max_uses

        result = await self.db.execute(
            update(ActionLink)
            .where(
                ActionLink.id == link.id,
                ActionLink.status == ActionLinkStatus.ACTIVE.value,
                ActionLink.use_count < ActionLink.max_uses,
                ActionLink.expires_at > now,
            )
            .values(
                use_count=ActionLink.use_count + 1,
                status=case(
                    (reaches_limit, ActionLinkStatus.CONSUMED.value),
                    else_=ActionLinkStatus.ACTIVE.value,
                ),
                consumed_at=case(
                    (reaches_limit, literal(now, DateTime(timezone=True))),
                    else_=ActionLink.consumed_at,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        await self.db.refresh(link)
        return True

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue(
        self,
        issuer: User,
        tenant_id: str,
        action_type: str,
        email: str,
        ctx: ClientContext,
        origin: str,
        metadata: dict[str, Any] | None = None,
        expires_in_minutes: int | None = None,
        max_uses: int | None = None,
    ) -> IssuedLink:
        """Create a link and return it with its shareable URL.

        The URL is the only place the raw token ever appears.
        """
        if not issuer.belongs_to(tenant_id):
            raise ForbiddenError("Cannot issue links for another tenant")

        expires_in_minutes = expires_in_minutes or settings.ACTION_LINK_DEFAULT_EXPIRES_MINUTES
        max_uses = max_uses or settings.ACTION_LINK_DEFAULT_MAX_USES

        raw_token = generate_opaque_token()
        link = ActionLink(
            tenant_id=tenant_id,
            created_by_user_id=issuer.id,
            token_hash=hash_token(raw_token),
            email=email.strip().lower(),
            action_type=action_type,
            link_metadata=metadata or {},
            expires_at=utc_now() + timedelta(minutes=expires_in_minutes),
            max_uses=max_uses,
            use_count=0,
            status=ActionLinkStatus.ACTIVE.value,
        )

        try:
            self.db.add(link)
            await self.db.flush()
            await self._audit(
                AuditAction.ACTION_LINK_CREATE,
                link,
                ctx,
                description=f"Issued {action_type} action link",
                metadata={
                    "action_type": action_type,
                    "email": link.email,
                    "max_uses": max_uses,
                    "expires_at": link.expires_at.isoformat(),
                },
                user_id=issuer.id,
            )
            await self._commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Action link issued",
            extra={
                "event_type": "action_link.issued",
                "action_link_id": link.id,
                "tenant_id": tenant_id,
                "token_hash_prefix": hash_prefix(link.token_hash),
            },
        )

        track_link_issued(action_type)
        base = settings.PUBLIC_APP_URL or origin.rstrip("/")
        return IssuedLink(link=link, url=f"{base}/action/{raw_token}")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(
        self,
        token: str,
        email: str,
        captcha_token: str,
        ctx: ClientContext,
    ) -> ActionLink:
        """Check that a token is usable by the holder of ``email``.

        Never spends a use.
        """
        if not is_well_formed_token(token):
            raise ValidationError("Malformed link token")

        token_hash = hash_token(token)
        self._trace("verify.start", token_hash=hash_prefix(token_hash))

        await self.rate_limiter.hit(WindowPolicies.VERIFY_IP, ctx.ip_address)
        await self.rate_limiter.hit(WindowPolicies.VERIFY_TOKEN, token_hash)
        self._trace("verify.rate_limited_ok", token_hash=hash_prefix(token_hash))

        # CAPTCHA before touching the database
        try:
            await self.captcha.verify(captcha_token, ctx.ip_address)
        except APIException as exc:
            raise self._reject("verify", exc, ctx)
        self._trace("verify.captcha_ok", token_hash=hash_prefix(token_hash))

        link = await self._lookup(token_hash)
        if link is None:
            raise self._reject("verify", LinkInvalidError(), ctx)

        try:
            self.check_usable(link, email)
        except APIException as exc:
            raise self._reject("verify", exc, ctx, link)
        self._trace("verify.rules_ok", token_hash=hash_prefix(token_hash), link_id=link.id)

        handler = self._handler_for(link)
        try:
            link.last_verified_at = utc_now()
            await handler.on_verified(self.db, link)
            await self._audit(
                AuditAction.ACTION_LINK_VERIFY,
                link,
                ctx,
                description="Action link verified",
                metadata={"email": email.strip().lower()},
            )
            await self._commit()
        except Exception:
            await self.db.rollback()
            raise

        track_link_operation("verify", "ok")
        await handler.after_commit(link)
        self._trace("verify.done", token_hash=hash_prefix(token_hash), link_id=link.id)
        return link

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def consume(
        self,
        idempotency_key: str,
        token: str,
        email: str,
        ctx: ClientContext,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Spend one use of a link and perform its action, at most once per key.

        Returns:
            {"ok": True, "consumed": bool}, or an idempotent replay marker
        """
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("Missing Idempotency-Key header")
        if not is_well_formed_token(token):
            raise ValidationError("Malformed link token")

        state = await self.idempotency.begin(idempotency_key)
        if state.is_replay:
            self._trace("consume.replay")
            track_link_operation("consume", "replay")
            return {"ok": True, "idempotent": True, "consumed": bool(state.result.get("consumed"))}
        if state.in_flight:
            self._trace("consume.in_flight")
            track_link_operation("consume", "in_flight")
            return {"ok": True, "idempotent": True}

        try:
            consumed = await self._consume(token, email, ctx, payload or {})
        except Exception:
            await self.idempotency.release(idempotency_key)
            raise

        await self.idempotency.store_result(idempotency_key, {"consumed": consumed})
        track_link_operation("consume", "ok")
        return {"ok": True, "consumed": consumed}

    async def _consume(
        self,
        token: str,
        email: str,
        ctx: ClientContext,
        payload: dict[str, Any],
    ) -> bool:
        token_hash = hash_token(token)
        self._trace("consume.start", token_hash=hash_prefix(token_hash))

        await self.rate_limiter.hit(WindowPolicies.CONSUME_IP, ctx.ip_address)

        link = await self._lookup(token_hash)
        if link is None:
            raise self._reject("consume", LinkInvalidError(), ctx)

        try:
            self.check_usable(link, email)
        except APIException as exc:
            raise self._reject("consume", exc, ctx, link)

        handler = self._handler_for(link)
        handler.validate_payload(link, payload)

        try:
            if not await self.increment_use(link):
                # Lost a race with a concurrent consumer
                raise self._reject("consume", LinkExhaustedError(), ctx, link)
            self._trace(
                "consume.incremented",
                token_hash=hash_prefix(token_hash),
                link_id=link.id,
                use_count=link.use_count,
            )

            summary = await handler.on_consumed(self.db, link, payload)
            await self._audit(
                AuditAction.ACTION_LINK_CONSUME,
                link,
                ctx,
                description=f"Action link consumed ({link.use_count}/{link.max_uses})",
                metadata={
                    "action_type": link.action_type,
                    "payload": payload,
                    "use_count": link.use_count,
                    **summary,
                },
            )
            await self._commit()
        except Exception:
            await self.db.rollback()
            raise

        await handler.after_commit(link)
        self._trace("consume.done", token_hash=hash_prefix(token_hash), link_id=link.id)
        return link.status == ActionLinkStatus.CONSUMED.value

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_for_tenant(self, link_id: str, tenant_id: str) -> ActionLink:
        """Fetch a link owned by the tenant; other tenants' links are 404."""
        result = await self.db.execute(
            select(ActionLink).where(
                ActionLink.id == link_id,
                ActionLink.tenant_id == tenant_id,
            )
        )
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError("Action link")
        return link

    async def get_audit_trail(self, link_id: str, tenant_id: str) -> list[AuditLog]:
        link = await self.get_for_tenant(link_id, tenant_id)
        return await self.audit.get_resource_audit_trail(
            resource_type=RESOURCE_TYPE,
            resource_id=link.id,
            tenant_id=tenant_id,
        )
