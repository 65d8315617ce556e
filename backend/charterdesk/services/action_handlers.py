"""Per-action-type side effects of verifying and consuming a link.

Handlers run inside the caller's transaction: anything they change is
committed together with the link update and its audit entry, or not at all.
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from charterdesk.core.errors import ErrorDetail, ValidationError
from charterdesk.models.action_link import ActionLink, ActionType
from charterdesk.models.base import utc_now
from charterdesk.models.quote import Quote, QuoteStatus
from charterdesk.services.quote_cache import QuoteCache

logger = logging.getLogger(__name__)


class ActionHandler:
    """No-op handler: the link is recorded and audited, nothing else changes."""

    def validate_payload(self, link: ActionLink, payload: dict[str, Any]) -> None:
        """Reject a malformed payload before any use of the link is spent."""

    async def on_verified(self, db: AsyncSession, link: ActionLink) -> None:
        pass

    async def on_consumed(
        self, db: AsyncSession, link: ActionLink, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply the action. Returns a summary for the audit entry."""
        return {}

    async def after_commit(self, link: ActionLink) -> None:
        """Cache maintenance once the transaction is durable."""


class QuoteActionHandler(ActionHandler):
    """Quote links track opens on verify and record accept/decline on consume.

    The quote is referenced by ``metadata["quote_id"]`` and must belong to the
    link's tenant; a link without a resolvable quote behaves like a no-op link.
    """

    RESULTS = {
        "accept": QuoteStatus.ACCEPTED,
        "decline": QuoteStatus.DECLINED,
    }

    def __init__(self, quote_cache: QuoteCache):
        self.quote_cache = quote_cache
        self._pending_cache_ops: list[tuple[str, str, dict[str, Any]]] = []

    async def _load_quote(self, db: AsyncSession, link: ActionLink) -> Quote | None:
        quote_id = (link.link_metadata or {}).get("quote_id")
        if not quote_id:
            return None

        result = await db.execute(
            select(Quote).where(Quote.id == str(quote_id), Quote.tenant_id == link.tenant_id)
        )
        quote = result.scalar_one_or_none()
        if quote is None:
            logger.warning("Quote link %s references an unknown quote", link.id)
        return quote

    def validate_payload(self, link: ActionLink, payload: dict[str, Any]) -> None:
        result = payload.get("result")
        if result is not None and result not in self.RESULTS:
            raise ValidationError(
                "Unsupported quote response",
                details=[
                    ErrorDetail(
                        field="payload.result",
                        message="Must be one of: accept, decline",
                        code="invalid_choice",
                    )
                ],
            )

    async def on_verified(self, db: AsyncSession, link: ActionLink) -> None:
        quote = await self._load_quote(db, link)
        if quote is None:
            return

        now = utc_now()
        if quote.first_opened_at is None:
            quote.first_opened_at = now
        quote.last_opened_at = now
        quote.open_count = (quote.open_count or 0) + 1
        await db.flush()

        self._pending_cache_ops.append(("update", quote.id, {
            "first_opened_at": quote.first_opened_at.isoformat(),
            "last_opened_at": now.isoformat(),
            "open_count": quote.open_count,
        }))

    async def on_consumed(
        self, db: AsyncSession, link: ActionLink, payload: dict[str, Any]
    ) -> dict[str, Any]:
        result = payload.get("result")
        if result is None:
            return {}

        quote = await self._load_quote(db, link)
        if quote is None:
            return {"quote_found": False}

        quote.status = self.RESULTS[result].value
        quote.responded_at = utc_now()
        await db.flush()

        self._pending_cache_ops.append(("invalidate", quote.id, {}))
        return {"quote_id": quote.id, "quote_status": quote.status}

    async def after_commit(self, link: ActionLink) -> None:
        ops, self._pending_cache_ops = self._pending_cache_ops, []
        for op, quote_id, changes in ops:
            if op == "invalidate":
                await self.quote_cache.invalidate(link.tenant_id, quote_id)
            else:
                await self.quote_cache.update(link.tenant_id, quote_id, changes)


def build_action_handlers(quote_cache: QuoteCache) -> dict[str, ActionHandler]:
    noop = ActionHandler()
    return {
        ActionType.QUOTE.value: QuoteActionHandler(quote_cache),
        ActionType.INVOICE.value: noop,
        ActionType.OTHER.value: noop,
    }
