"""Review screen state: status badges, counts, filters, search and uploads.

Purely presentational.  Nothing here changes a row or a send state; it
only combines what the orchestrator already knows into what the operator
sees.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from .models import (
    LastSendStatus,
    LogStatus,
    ReconciledRow,
    ReviewStatus,
    RowSendState,
    SendState,
)


class ReviewFilter(Enum):
    ALL = "All"
    PENDING = "Pending"
    FAILED = "Failed"
    BLOCKED = "Blocked"
    SENT = "Sent"


@dataclass(frozen=True)
class ReviewItem:
    row: ReconciledRow
    send_state: RowSendState
    last_status: LastSendStatus | None
    status: ReviewStatus

    @property
    def row_id(self) -> str:
        return self.row.row_id


def review_status(
    row: ReconciledRow,
    send_state: RowSendState,
    last_status: LastSendStatus | None,
) -> ReviewStatus:
    """Badge for a row.

    Precedence: Blocked, then this session's outcome, then the audit
    log's last outcome, then Pending.
    """
    if not row.is_pending:
        return ReviewStatus.BLOCKED
    if send_state.state is SendState.SENT:
        return ReviewStatus.SENT
    if send_state.state is SendState.FAILED:
        return ReviewStatus.FAILED
    if last_status is not None and last_status.status is LogStatus.SENT:
        return ReviewStatus.SENT
    if last_status is not None and last_status.status is LogStatus.FAILED:
        return ReviewStatus.FAILED
    return ReviewStatus.PENDING


def build_items(
    rows: Iterable[ReconciledRow],
    send_states: Mapping[str, RowSendState],
    last_status: Mapping[str, LastSendStatus],
) -> list[ReviewItem]:
    items = []
    for row in rows:
        state = send_states.get(row.row_id, RowSendState())
        last = last_status.get(row.account_key)
        items.append(ReviewItem(row, state, last, review_status(row, state, last)))
    return items


def count_by_status(items: Iterable[ReviewItem]) -> dict[ReviewStatus, int]:
    counts = {status: 0 for status in ReviewStatus}
    for item in items:
        counts[item.status] += 1
    return counts


def matches_search(row: ReconciledRow, search: str) -> bool:
    term = search.strip().lower()
    if not term:
        return True
    return (
        term in row.account_key.lower()
        or term in (row.contact_name or "").lower()
        or term in (row.contact_email or "").lower()
    )


def visible_items(
    items: Iterable[ReviewItem],
    active_filter: ReviewFilter = ReviewFilter.ALL,
    search: str = "",
    show_only_pending: bool = False,
) -> list[ReviewItem]:
    """Items left after the status filter, the pending toggle and the search box."""
    visible = []
    for item in items:
        if show_only_pending and item.status is not ReviewStatus.PENDING:
            continue
        if active_filter is not ReviewFilter.ALL and item.status.value != active_filter.value:
            continue
        if not matches_search(item.row, search):
            continue
        visible.append(item)
    return visible


def selectable_ids(items: Iterable[ReviewItem]) -> list[str]:
    """Row ids a "select all visible" checkbox would toggle (Pending rows only)."""
    return [item.row_id for item in items if item.row.is_pending]


def selection_state(items: Iterable[ReviewItem], selected: set[str]) -> str:
    """``"all"``, ``"some"`` or ``"none"`` of the visible pending rows selected."""
    ids = selectable_ids(items)
    chosen = sum(1 for row_id in ids if row_id in selected)
    if ids and chosen == len(ids):
        return "all"
    return "some" if chosen else "none"


class UploadTracker:
    """Decides when the console must parse the uploader's file again.

    A file is identified by name and size.  Removing it from the uploader
    clears the record, so uploading the same archive again starts a fresh
    session.
    """

    def __init__(self):
        self.signature: tuple[str, int] | None = None

    def needs_load(self, name: str, size: int) -> bool:
        return (name, size) != self.signature

    def loaded(self, name: str, size: int) -> None:
        self.signature = (name, size)

    def clear(self) -> None:
        self.signature = None
