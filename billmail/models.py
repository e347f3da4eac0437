"""Data models for the bill mailer.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
the SQLite stores convert rows to and from these by hand.

Lifecycle of the objects in one upload session:

    archive bytes -> BillingRecord  (archive_parser)
    BillingRecord + Contact -> ReconciledRow  (reconciler)
    ReconciledRow -> RowSendState  (orchestrator, transient)
    send attempt -> SendLogEntry  (send_log, persisted, append-only)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ParseSource(Enum):
    """Which path of the archive parser produced the records."""

    MANIFEST = "manifest"
    FALLBACK = "fallback"


class RowStatus(Enum):
    """Sendability of a reconciled row, derived from contact resolution."""

    PENDING = "Pending"
    BLOCKED = "Blocked"

    @classmethod
    def from_email(cls, email: str | None) -> RowStatus:
        """Pending iff a non-empty contact email is known."""
        return cls.PENDING if email else cls.BLOCKED


class SendState(Enum):
    """Per-row, per-session send state.

        IDLE -> SENDING -> SENT
                        |-> FAILED -> SENDING (retry)
    """

    IDLE = "idle"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class LogStatus(Enum):
    """Outcome recorded in the send log."""

    SENT = "sent"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: object) -> LogStatus | None:
        """Return the matching status, or None for unknown values."""
        for status in cls:
            if status.value == value:
                return status
        return None


class ReviewStatus(Enum):
    """Status shown on the review screen, combining all known signals."""

    PENDING = "Pending"
    BLOCKED = "Blocked"
    SENT = "Sent"
    FAILED = "Failed"


# ---------------------------------------------------------------------------
# Parsed archive
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BillingRecord:
    """One bill PDF found in an uploaded archive.

    ``archive_entry_path`` is the full path inside the archive and may
    carry directories; ``pdf_filename`` is always the base name.
    ``trade_date`` is descriptive text only and is never parsed.
    """

    account_key: str
    pdf_filename: str
    archive_entry_path: str
    trade_date: str | None = None


@dataclass
class ParseResult:
    """Output of :func:`billmail.archive_parser.parse_archive`."""

    records: list[BillingRecord] = field(default_factory=list)
    source: ParseSource = ParseSource.FALLBACK
    diagnostics: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class ArchiveSummary:
    """Header line for the review screen."""

    archive_filename: str
    row_count: int
    source: ParseSource


# ---------------------------------------------------------------------------
# Contact directory
# ---------------------------------------------------------------------------

@dataclass
class Contact:
    """A recipient in the contact directory, keyed by account key."""

    account_key: str
    email: str
    name: str | None = None
    updated_at: str | None = None

    @property
    def display_name(self) -> str:
        """Name for greetings; falls back to the account key."""
        return self.name or self.account_key


@dataclass
class ActionResult:
    """Outcome of a directory mutation, shown to the operator as-is."""

    ok: bool
    error: str = ""

    @classmethod
    def success(cls) -> ActionResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> ActionResult:
        return cls(ok=False, error=error)


# ---------------------------------------------------------------------------
# Review rows
# ---------------------------------------------------------------------------

def row_id(account_key: str, archive_entry_path: str, pdf_filename: str) -> str:
    """Stable identity of a row within one archive session."""
    return f"{account_key}::{archive_entry_path}::{pdf_filename}"


@dataclass(frozen=True)
class ReconciledRow:
    """A BillingRecord joined with at most one Contact."""

    record: BillingRecord
    contact_name: str | None = None
    contact_email: str | None = None
    status: RowStatus = RowStatus.BLOCKED

    @property
    def account_key(self) -> str:
        return self.record.account_key

    @property
    def pdf_filename(self) -> str:
        return self.record.pdf_filename

    @property
    def archive_entry_path(self) -> str:
        return self.record.archive_entry_path

    @property
    def trade_date(self) -> str | None:
        return self.record.trade_date

    @property
    def row_id(self) -> str:
        return row_id(self.account_key, self.archive_entry_path, self.pdf_filename)

    @property
    def is_pending(self) -> bool:
        return self.status is RowStatus.PENDING


@dataclass(frozen=True)
class RowSendState:
    """Transient send state of one row.  ``error`` is set only when FAILED."""

    state: SendState = SendState.IDLE
    error: str | None = None


# ---------------------------------------------------------------------------
# Send log
# ---------------------------------------------------------------------------

@dataclass
class SendLogEntry:
    """One concluded send attempt.  Never updated or deleted.

    ``sent_at`` is assigned by the store at insert time; callers leave it
    as None when appending.
    """

    archive_filename: str
    account_key: str
    to_email: str
    status: LogStatus
    sender_identity: str
    trade_date: str | None = None
    to_name: str | None = None
    error: str | None = None
    message_id: str | None = None
    sent_at: datetime | None = None

    def to_dict(self) -> dict:
        """Serialize for display tables and spreadsheet export."""
        return {
            "sent_at": self.sent_at.isoformat() if self.sent_at else "",
            "archive_filename": self.archive_filename,
            "account_key": self.account_key,
            "trade_date": self.trade_date or "",
            "to_email": self.to_email,
            "to_name": self.to_name or "",
            "status": self.status.value,
            "error": self.error or "",
            "message_id": self.message_id or "",
            "sender_identity": self.sender_identity,
        }


@dataclass(frozen=True)
class LastSendStatus:
    """Most recent logged outcome for an (archive, account key) pair."""

    status: LogStatus | None
    sent_at: datetime | None
