"""Tests for billmail.review -- badges, counts, filters and selection."""

from datetime import datetime, timezone

import pytest

from billmail.models import (
    BillingRecord,
    Contact,
    LastSendStatus,
    LogStatus,
    ReviewStatus,
    RowSendState,
    SendState,
)
from billmail.reconciler import reconcile_record
from billmail.review import (
    ReviewFilter,
    UploadTracker,
    build_items,
    count_by_status,
    review_status,
    selection_state,
    visible_items,
)

WHEN = datetime(2024, 1, 5, 12, tzinfo=timezone.utc)


def _row(key, email=None, name=None):
    record = BillingRecord(key, f"Bill_{key}.pdf", f"Bill_{key}.pdf", "2024-01-05")
    contact = Contact(key, email, name) if email else None
    return reconcile_record(record, contact)


# ============================================================================
# Badge precedence
# ============================================================================

class TestReviewStatus:

    @pytest.mark.parametrize("state, last, expected", [
        (SendState.IDLE, None, ReviewStatus.PENDING),
        (SendState.IDLE, LogStatus.SENT, ReviewStatus.SENT),
        (SendState.IDLE, LogStatus.FAILED, ReviewStatus.FAILED),
        (SendState.SENT, LogStatus.FAILED, ReviewStatus.SENT),
        (SendState.FAILED, LogStatus.SENT, ReviewStatus.FAILED),
        (SendState.SENDING, None, ReviewStatus.PENDING),
    ])
    def test_pending_row(self, state, last, expected):
        last_status = LastSendStatus(last, WHEN) if last else None
        assert review_status(_row("A", "a@example.com"), RowSendState(state), last_status) is expected

    def test_blocked_wins(self):
        last = LastSendStatus(LogStatus.SENT, WHEN)
        assert review_status(_row("A"), RowSendState(SendState.SENT), last) is ReviewStatus.BLOCKED


# ============================================================================
# Filters and selection
# ============================================================================

class TestVisibleItems:

    @pytest.fixture
    def items(self):
        rows = [
            _row("PR20", "alice@example.com", "Alice"),
            _row("PR21", "bob@example.com", "Bob"),
            _row("PR22"),
            _row("PR23", "carol@example.com"),
        ]
        states = {rows[1].row_id: RowSendState(SendState.FAILED, "boom")}
        last = {"PR23": LastSendStatus(LogStatus.SENT, WHEN)}
        return build_items(rows, states, last)

    def test_counts(self, items):
        counts = count_by_status(items)
        assert counts == {
            ReviewStatus.PENDING: 1,
            ReviewStatus.FAILED: 1,
            ReviewStatus.BLOCKED: 1,
            ReviewStatus.SENT: 1,
        }

    @pytest.mark.parametrize("active, keys", [
        (ReviewFilter.ALL, ["PR20", "PR21", "PR22", "PR23"]),
        (ReviewFilter.PENDING, ["PR20"]),
        (ReviewFilter.FAILED, ["PR21"]),
        (ReviewFilter.BLOCKED, ["PR22"]),
        (ReviewFilter.SENT, ["PR23"]),
    ])
    def test_status_filter(self, items, active, keys):
        assert [i.row.account_key for i in visible_items(items, active)] == keys

    def test_search_matches_key_name_or_email(self, items):
        assert [i.row.account_key for i in visible_items(items, search="ALICE")] == ["PR20"]
        assert [i.row.account_key for i in visible_items(items, search="bob@")] == ["PR21"]
        assert [i.row.account_key for i in visible_items(items, search="pr22")] == ["PR22"]
        assert len(visible_items(items, search="   ")) == 4

    def test_show_only_pending(self, items):
        visible = visible_items(items, show_only_pending=True)
        assert [i.row.account_key for i in visible] == ["PR20"]

    def test_selection_state_ignores_blocked(self, items):
        pending_ids = [i.row_id for i in items if i.row.is_pending]
        assert selection_state(items, set()) == "none"
        assert selection_state(items, {pending_ids[0]}) == "some"
        assert selection_state(items, set(pending_ids)) == "all"


# ============================================================================
# Upload tracking
# ============================================================================

class TestUploadTracker:

    def test_same_file_loads_once(self):
        tracker = UploadTracker()
        assert tracker.needs_load("bills.zip", 100)
        tracker.loaded("bills.zip", 100)
        assert not tracker.needs_load("bills.zip", 100)
        assert tracker.needs_load("bills.zip", 101)

    def test_removed_then_reuploaded_loads_again(self):
        tracker = UploadTracker()
        tracker.loaded("bills.zip", 100)
        tracker.clear()
        assert tracker.needs_load("bills.zip", 100)
