"""
Bill Mailer -- Send Orchestrator

Owns one upload session at a time and drives the per-row send state
machine over it:

    idle -> sending -> sent            (sent is terminal for the session)
                    -> failed -> sending   (operator retry)

Upload session
--------------
``load_archive`` replaces *everything* at once: the archive handle (the
previous one is closed first), rows, send states, selection, cached audit
statuses and messages.  Nothing carries over between archives.

Single-row send
---------------
1. Refused (no-op, action error set) when the row is already sending or
   sent, has no contact email, or the session has no archive filename.
2. PDF bytes are pulled from the held archive on demand.  Not found ->
   failed, no mail call, no audit entry.
3. The send service transmits and writes the audit entry.
4. Whatever the outcome, the audit log is re-queried for the row's key.

Bulk runs
---------
``send_all_pending``, ``send_selected`` and ``retry_failed`` only ever
consider Pending rows, process them strictly one after another and hold
``is_sending`` for their duration; a second bulk trigger or a new upload
is refused while it is set.  A failing row never stops the run.

Usage:
    orchestrator = SendOrchestrator.from_config(cfg, identity)
    orchestrator.load_archive(data, "bills_2024-01-05.zip")
    result = orchestrator.send_all_pending()
    print(result.sent, result.failed)
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .archive_parser import ArchiveSession, parse_session, unique_account_keys
from .auth import IdentityProvider
from .config import AppConfig
from .contacts import ContactDirectory
from .mailer import (
    MSG_SEND_FAILED,
    SendRequest,
    SendService,
    SmtpTransport,
    encode_attachment,
    sanitize_error,
)
from .models import (
    ActionResult,
    ArchiveSummary,
    LastSendStatus,
    LogStatus,
    ReconciledRow,
    RowSendState,
    SendState,
)
from .reconciler import reconcile, refresh_rows
from .send_log import SendLog
from .storage import Database

logger = logging.getLogger(__name__)

MSG_NOT_AUTHORIZED = "Not authorized."
MSG_ARCHIVE_UNAVAILABLE = "ZIP filename is unavailable. Re-upload the file."
MSG_ARCHIVE_DATA_UNAVAILABLE = "ZIP data is not available. Re-upload the file."
MSG_NO_CONTACT_EMAIL = "No contact email available."
MSG_PDF_NOT_FOUND = "PDF not found in ZIP: {filename}"
MSG_UNKNOWN_ROW = "Row is no longer part of this upload."
MSG_SEND_IN_PROGRESS = "A send is already in progress."
MSG_NO_SELECTED = "No eligible selected rows to send."
MSG_NO_FAILED = "No failed rows to retry."
MSG_BAD_ARCHIVE = "Failed to parse ZIP file: {error}"

ProgressCallback = Callable[[int, int, ReconciledRow], None]


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

@dataclass
class UploadSession:
    """All per-upload state.  Replaced wholesale on every upload."""

    archive: ArchiveSession | None = None
    summary: ArchiveSummary | None = None
    rows: list[ReconciledRow] = field(default_factory=list)
    send_states: dict[str, RowSendState] = field(default_factory=dict)
    selected: set[str] = field(default_factory=set)
    last_status: dict[str, LastSendStatus] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)

    @property
    def archive_filename(self) -> str:
        return self.summary.archive_filename.strip() if self.summary else ""

    def close(self) -> None:
        if self.archive is not None:
            self.archive.close()


@dataclass
class BulkResult:
    """Outcome of one bulk run.  ``started`` is False when it was refused."""

    started: bool = False
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    row_ids: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# SendOrchestrator -- the main public API
# ---------------------------------------------------------------------------

class SendOrchestrator:
    """Upload session owner and send state machine."""

    def __init__(
        self,
        config: AppConfig,
        contacts: ContactDirectory,
        send_log: SendLog,
        send_service: SendService,
        identity: IdentityProvider,
        dry_run: bool = False,
    ):
        self.config = config
        self.contacts = contacts
        self.send_log = send_log
        self.send_service = send_service
        self.identity = identity
        self.dry_run = dry_run

        self.session = UploadSession()
        self.skip_already_sent = True
        self.is_sending = False
        self.action_error = ""

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        identity: IdentityProvider,
        transport=None,
        dry_run: bool = False,
    ) -> SendOrchestrator:
        """Validate *config* and wire the SQLite stores and SMTP transport."""
        config.validate()
        db = Database(config.storage.resolved_db_path)
        send_log = SendLog(db, identity)
        service = SendService(
            config.mail,
            transport or SmtpTransport(config.mail),
            send_log,
            identity,
        )
        return cls(config, ContactDirectory(db, identity), send_log, service, identity, dry_run=dry_run)

    # ------------------------------------------------------------------
    # Upload session
    # ------------------------------------------------------------------

    def load_archive(self, data: bytes, filename: str) -> UploadSession:
        """Parse an upload and make it the current session.

        A bad archive leaves an empty session carrying the error message.
        Refused while a bulk run is in progress.
        """
        if self.is_sending:
            self.action_error = MSG_SEND_IN_PROGRESS
            return self.session

        self.close()
        self.action_error = ""

        try:
            archive = ArchiveSession(data, filename)
        except zipfile.BadZipFile as exc:
            logger.warning("Rejected upload %s: %s", filename, exc)
            self.session = UploadSession(messages=[MSG_BAD_ARCHIVE.format(error=exc)])
            return self.session

        result = parse_session(archive, self.config.archive)
        session = UploadSession(archive=archive, messages=list(result.diagnostics))

        if result.records:
            keys = unique_account_keys(r.account_key for r in result.records)
            contacts_by_key = self.contacts.resolve(keys)
            session.last_status = self.send_log.last_status(filename, keys)
            session.rows = reconcile(result.records, contacts_by_key)

        session.summary = ArchiveSummary(
            archive_filename=filename,
            row_count=len(session.rows),
            source=result.source,
        )
        self.session = session

        logger.info(
            "Loaded %s: %d row(s), %d pending",
            filename, len(session.rows), sum(1 for r in session.rows if r.is_pending),
        )
        return session

    def close(self) -> None:
        """Release the archive handle of the current session."""
        self.session.close()

    @property
    def rows(self) -> list[ReconciledRow]:
        return self.session.rows

    def row(self, row_id: str) -> ReconciledRow | None:
        for candidate in self.session.rows:
            if candidate.row_id == row_id:
                return candidate
        return None

    def state_of(self, row_id: str) -> RowSendState:
        return self.session.send_states.get(row_id, RowSendState())

    def last_status_of(self, account_key: str) -> LastSendStatus | None:
        return self.session.last_status.get(account_key)

    def _set_state(self, row_id: str, state: SendState, error: str | None = None) -> None:
        self.session.send_states[row_id] = RowSendState(state=state, error=error)

    # ------------------------------------------------------------------
    # Refresh helpers
    # ------------------------------------------------------------------

    def refresh_last_status(self, account_keys: Iterable[str] | None = None) -> None:
        """Re-read audit statuses for some keys (default: every row's key).

        A key that now has no entry is dropped from the cache.
        """
        session = self.session
        partial = account_keys is not None
        keys = unique_account_keys(
            account_keys if partial else (r.account_key for r in session.rows)
        )

        if not session.archive_filename:
            session.last_status = {}
            return
        if not keys:
            return

        latest = self.send_log.last_status(session.archive_filename, keys)
        updated = dict(session.last_status) if partial else {}
        for key in keys:
            if key in latest:
                updated[key] = latest[key]
            else:
                updated.pop(key, None)
        session.last_status = updated

    def sync_contacts(self, account_keys: Iterable[str]) -> None:
        """Re-resolve contacts for some keys; other rows are left untouched."""
        keys = unique_account_keys(account_keys)
        if not keys:
            return
        contacts_by_key = self.contacts.resolve(keys)
        self.session.rows = refresh_rows(self.session.rows, contacts_by_key, keys)

    # ------------------------------------------------------------------
    # Single-row send
    # ------------------------------------------------------------------

    def send_row(self, row_id: str) -> bool:
        """Attempt one row.  Returns True only when it ended ``sent``."""
        row = self.row(row_id)
        if row is None:
            self.action_error = MSG_UNKNOWN_ROW
            return False

        if self.state_of(row_id).state in (SendState.SENDING, SendState.SENT):
            return False
        if not row.contact_email:
            self.action_error = MSG_NO_CONTACT_EMAIL
            return False
        if not self.session.archive_filename:
            self.action_error = MSG_ARCHIVE_UNAVAILABLE
            return False
        if not self.identity().is_admin:
            self.action_error = MSG_NOT_AUTHORIZED
            return False

        self.action_error = ""
        self._set_state(row_id, SendState.SENDING)
        try:
            return self._attempt(row)
        finally:
            self.refresh_last_status([row.account_key])

    def _attempt(self, row: ReconciledRow) -> bool:
        archive = self.session.archive
        try:
            if archive is None or archive.closed:
                raise LookupError(MSG_ARCHIVE_DATA_UNAVAILABLE)
            pdf = archive.read_pdf(row.archive_entry_path, row.pdf_filename)
            if pdf is None:
                raise LookupError(MSG_PDF_NOT_FOUND.format(filename=row.pdf_filename))

            response = self.send_service.send(
                SendRequest(
                    archive_filename=self.session.archive_filename,
                    account_key=row.account_key,
                    trade_date=row.trade_date,
                    to_email=row.contact_email or "",
                    to_name=row.contact_name,
                    filename=row.pdf_filename,
                    attachment_base64=encode_attachment(pdf),
                ),
                dry_run=self.dry_run,
            )
        except LookupError as exc:
            self._set_state(row.row_id, SendState.FAILED, str(exc))
            logger.warning("Send for %s not attempted: %s", row.account_key, exc)
            return False
        except Exception as exc:
            self._set_state(row.row_id, SendState.FAILED, sanitize_error(exc))
            logger.exception("Send for %s failed unexpectedly", row.account_key)
            return False

        if not response.ok:
            self._set_state(row.row_id, SendState.FAILED, response.error or MSG_SEND_FAILED)
            return False
        if response.dry_run:
            self._set_state(row.row_id, SendState.IDLE)
            return True

        self._set_state(row.row_id, SendState.SENT)
        return True

    # ------------------------------------------------------------------
    # Bulk runs
    # ------------------------------------------------------------------

    def _sent_earlier(self, row: ReconciledRow) -> bool:
        last = self.session.last_status.get(row.account_key)
        return last is not None and last.status is LogStatus.SENT

    def _eligible(self, row: ReconciledRow) -> bool:
        if not row.is_pending:
            return False
        if self.skip_already_sent and self._sent_earlier(row):
            return False
        return self.state_of(row.row_id).state is not SendState.SENT

    def pending_rows(self) -> list[ReconciledRow]:
        """Rows "send all pending" would attempt right now."""
        return [r for r in self.session.rows if self._eligible(r)]

    def selected_rows(self) -> list[ReconciledRow]:
        return [r for r in self.session.rows if r.row_id in self.session.selected and self._eligible(r)]

    def failed_rows(self) -> list[ReconciledRow]:
        """Pending rows whose last audit entry is ``failed``."""
        rows = []
        for r in self.session.rows:
            last = self.session.last_status.get(r.account_key)
            if not r.is_pending or last is None or last.status is not LogStatus.FAILED:
                continue
            if self.state_of(r.row_id).state is SendState.SENT:
                continue
            rows.append(r)
        return rows

    def _preflight(self) -> bool:
        if self.is_sending:
            return False
        if not self.session.archive_filename:
            self.action_error = MSG_ARCHIVE_UNAVAILABLE
            return False
        if not self.identity().is_admin:
            self.action_error = MSG_NOT_AUTHORIZED
            return False
        return True

    def _run(self, rows: list[ReconciledRow], on_progress: ProgressCallback | None) -> BulkResult:
        result = BulkResult(started=True)
        self.action_error = ""
        self.is_sending = True
        try:
            for index, row in enumerate(rows, start=1):
                if on_progress is not None:
                    on_progress(index, len(rows), row)
                ok = self.send_row(row.row_id)
                result.attempted += 1
                result.row_ids.append(row.row_id)
                if ok:
                    result.sent += 1
                else:
                    result.failed += 1
        finally:
            self.is_sending = False

        logger.info(
            "Bulk run on %s: %d attempted, %d sent, %d failed",
            self.session.archive_filename, result.attempted, result.sent, result.failed,
        )
        return result

    def send_all_pending(self, on_progress: ProgressCallback | None = None) -> BulkResult:
        if not self._preflight():
            return BulkResult()
        return self._run(self.pending_rows(), on_progress)

    def send_selected(self, on_progress: ProgressCallback | None = None) -> BulkResult:
        if not self._preflight():
            return BulkResult()
        rows = self.selected_rows()
        if not rows:
            self.action_error = MSG_NO_SELECTED
            return BulkResult()
        return self._run(rows, on_progress)

    def retry_failed(self, on_progress: ProgressCallback | None = None) -> BulkResult:
        if not self._preflight():
            return BulkResult()
        rows = self.failed_rows()
        if not rows:
            self.action_error = MSG_NO_FAILED
            return BulkResult()
        return self._run(rows, on_progress)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, row_id: str, selected: bool = True) -> bool:
        """Check or uncheck a row.  Only Pending rows can be checked."""
        if not selected:
            self.session.selected.discard(row_id)
            return True
        row = self.row(row_id)
        if row is None or not row.is_pending:
            return False
        self.session.selected.add(row_id)
        return True

    def select_many(self, row_ids: Iterable[str], selected: bool = True) -> None:
        for row_id in row_ids:
            self.select(row_id, selected)

    def clear_selection(self) -> None:
        self.session.selected.clear()

    # ------------------------------------------------------------------
    # Row actions
    # ------------------------------------------------------------------

    def add_contact(self, account_key: str, name: str | None, email: str) -> ActionResult:
        """Create a contact for a Blocked row, then refresh that key only."""
        result = self.contacts.create(account_key, email, name)
        if not result.ok:
            return result
        self.sync_contacts([account_key])
        self.refresh_last_status([account_key])
        return result

    def pdf_bytes(self, row_id: str) -> bytes | None:
        """PDF of a row for viewing, or None with the action error set."""
        self.action_error = ""
        row = self.row(row_id)
        if row is None:
            self.action_error = MSG_UNKNOWN_ROW
            return None
        archive = self.session.archive
        if archive is None or archive.closed:
            self.action_error = MSG_ARCHIVE_DATA_UNAVAILABLE
            return None
        pdf = archive.read_pdf(row.archive_entry_path, row.pdf_filename)
        if pdf is None:
            self.action_error = MSG_PDF_NOT_FOUND.format(filename=row.pdf_filename)
        return pdf
