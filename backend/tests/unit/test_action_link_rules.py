"""
Unit tests for action link state and usability rules.

Tests cover:
- Expiry evaluated at read time (naive SQLite datetimes included)
- Use bound and remaining uses
- Case-insensitive email binding
- Precedence of rejection reasons
"""

from datetime import timedelta

import pytest
from sqlalchemy import inspect

from charterdesk.core.errors import (
    EmailMismatchError,
    ErrorCode,
    LinkExhaustedError,
    LinkExpiredError,
    LinkInactiveError,
)
from charterdesk.models.action_link import ActionLink, ActionLinkStatus
from charterdesk.models.base import utc_now
from charterdesk.services.action_links import ActionLinkService


def build_link(**overrides) -> ActionLink:
    values = {
        "tenant_id": "tenant-1",
        "token_hash": "h" * 43,
        "email": "jane@example.com",
        "action_type": "quote",
        "link_metadata": {},
        "expires_at": utc_now() + timedelta(hours=1),
        "max_uses": 1,
        "use_count": 0,
        "status": ActionLinkStatus.ACTIVE.value,
    }
    values.update(overrides)
    return ActionLink(**values)


class TestActionLinkProperties:
    """Tests for derived link state."""

    def test_fresh_link_is_usable(self):
        link = build_link()
        assert link.is_usable
        assert link.remaining_uses == 1

    def test_past_expiry_is_expired(self):
        link = build_link(expires_at=utc_now() - timedelta(seconds=1))
        assert link.is_expired
        assert not link.is_usable

    def test_naive_expiry_is_treated_as_utc(self):
        # SQLite hands back naive datetimes
        naive = (utc_now() + timedelta(minutes=5)).replace(tzinfo=None)
        assert build_link(expires_at=naive).is_expired is False

    def test_exhausted_when_use_count_reaches_max(self):
        link = build_link(max_uses=3, use_count=3)
        assert link.is_exhausted
        assert link.remaining_uses == 0

    def test_remaining_uses_counts_down(self):
        assert build_link(max_uses=5, use_count=2).remaining_uses == 3

    @pytest.mark.parametrize(
        "candidate",
        ["jane@example.com", "Jane@Example.com", "JANE@EXAMPLE.COM", "  jane@example.com "],
    )
    def test_email_match_is_case_insensitive(self, candidate):
        assert build_link().email_matches(candidate)

    def test_email_mismatch(self):
        assert not build_link().email_matches("john@example.com")
        assert not build_link().email_matches("")

    def test_token_hash_is_unique_and_required(self):
        column = inspect(ActionLink).columns.get("token_hash")
        assert column.unique is True
        assert column.nullable is False

    def test_no_raw_token_column(self):
        columns = {c.key for c in inspect(ActionLink).columns}
        assert "token" not in columns
        assert "raw_token" not in columns


class TestCheckUsable:
    """Tests for rejection reasons and their precedence."""

    def test_usable_link_passes(self):
        ActionLinkService.check_usable(build_link(), "jane@example.com")

    def test_consumed_link_reports_exhausted(self):
        link = build_link(status=ActionLinkStatus.CONSUMED.value, use_count=1)
        with pytest.raises(LinkExhaustedError) as exc_info:
            ActionLinkService.check_usable(link, "jane@example.com")
        assert exc_info.value.code == ErrorCode.LINK_EXHAUSTED

    def test_unknown_status_is_inactive(self):
        with pytest.raises(LinkInactiveError):
            ActionLinkService.check_usable(build_link(status="revoked"), "jane@example.com")

    def test_expired_despite_remaining_uses(self):
        link = build_link(max_uses=10, use_count=1, expires_at=utc_now() - timedelta(minutes=1))
        with pytest.raises(LinkExpiredError):
            ActionLinkService.check_usable(link, "jane@example.com")

    def test_exhausted_active_link(self):
        with pytest.raises(LinkExhaustedError):
            ActionLinkService.check_usable(build_link(max_uses=2, use_count=2), "jane@example.com")

    def test_email_mismatch(self):
        with pytest.raises(EmailMismatchError):
            ActionLinkService.check_usable(build_link(), "john@example.com")

    def test_expiry_wins_over_email_mismatch(self):
        link = build_link(expires_at=utc_now() - timedelta(minutes=1))
        with pytest.raises(LinkExpiredError):
            ActionLinkService.check_usable(link, "john@example.com")

    def test_status_wins_over_expiry(self):
        link = build_link(
            status=ActionLinkStatus.CONSUMED.value,
            use_count=1,
            expires_at=utc_now() - timedelta(minutes=1),
        )
        with pytest.raises(LinkExhaustedError):
            ActionLinkService.check_usable(link, "jane@example.com")

    def test_rejections_are_400(self):
        for exc in (LinkExhaustedError(), LinkExpiredError(), LinkInactiveError(), EmailMismatchError()):
            assert exc.status_code == 400
