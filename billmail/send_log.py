"""
Bill Mailer -- Send Log (audit trail)

Append-only record of every concluded send attempt, shared by all
operators.  It is the only source of truth for "was this account key in
this archive already sent", looked up by archive filename + account key
(not by content hash).

Two core operations:

    last_status(archive_filename, account_keys)
        -> {account_key: LastSendStatus}   most recent entry per key;
                                           keys never logged are absent
    append(entry)
        -> bool                            best-effort; failures are
                                           logged and swallowed

Durability of the log is best-effort on purpose: by the time an entry is
written the mail has already gone out (or definitively failed), and the
operator-facing outcome comes from the mail transport alone.

Usage:
    log = SendLog(Database("data/billmail.db"), identity)
    log.append(SendLogEntry(...))
    latest = log.last_status("bills_2024-01-05.zip", ["PR20", "PR21"])
    log.export_xlsx("output/send_log.xlsx", log.history())
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from openpyxl import Workbook
from openpyxl.styles import Font

from .archive_parser import normalize_account_key, unique_account_keys
from .auth import IdentityProvider
from .models import LastSendStatus, LogStatus, SendLogEntry
from .storage import Database, now_iso, parse_timestamp

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_EXPORT_COLUMNS = [
    "sent_at",
    "archive_filename",
    "account_key",
    "trade_date",
    "to_email",
    "to_name",
    "status",
    "error",
    "message_id",
    "sender_identity",
]


# ---------------------------------------------------------------------------
# Pure reduction
# ---------------------------------------------------------------------------

def latest_status_by_key(rows: Iterable[Mapping[str, Any]]) -> dict[str, LastSendStatus]:
    """Reduce unordered log rows to the newest status per account key.

    Each row needs ``account_key``, ``status`` and ``sent_at``.  Order of
    *rows* does not matter: the newest ``sent_at`` wins, and on an exact
    tie the first row seen is kept.  Rows with an unreadable timestamp
    lose to any row with a readable one.
    """
    best: dict[str, tuple[datetime, LastSendStatus]] = {}
    for row in rows:
        key = normalize_account_key(row.get("account_key"))
        if not key:
            continue
        sent_at = parse_timestamp(row.get("sent_at"))
        rank = sent_at or _EPOCH
        current = best.get(key)
        if current is not None and rank <= current[0]:
            continue
        best[key] = (rank, LastSendStatus(status=LogStatus.parse(row.get("status")), sent_at=sent_at))
    return {key: value for key, (_, value) in best.items()}


def _row_to_entry(row: sqlite3.Row) -> SendLogEntry:
    return SendLogEntry(
        archive_filename=row["archive_filename"],
        account_key=row["account_key"],
        to_email=row["to_email"],
        status=LogStatus.parse(row["status"]) or LogStatus.FAILED,
        sender_identity=row["sender_identity"],
        trade_date=row["trade_date"],
        to_name=row["to_name"],
        error=row["error"],
        message_id=row["message_id"],
        sent_at=parse_timestamp(row["sent_at"]),
    )


# ---------------------------------------------------------------------------
# SendLog -- the main public API
# ---------------------------------------------------------------------------

class SendLog:
    """SQLite-backed, append-only send log."""

    def __init__(self, db: Database, identity: IdentityProvider):
        self.db = db
        self.identity = identity

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def append(self, entry: SendLogEntry) -> bool:
        """Write one entry; ``sent_at`` is assigned here.

        Returns False (after logging) when the write fails.  Never raises.
        """
        try:
            conn = self.db.connect()
            try:
                conn.execute(
                    """INSERT INTO send_logs
                       (sent_at, archive_filename, account_key, trade_date, to_email,
                        to_name, status, error, message_id, sender_identity)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        now_iso(),
                        entry.archive_filename,
                        entry.account_key,
                        entry.trade_date,
                        entry.to_email,
                        entry.to_name,
                        entry.status.value,
                        entry.error,
                        entry.message_id,
                        entry.sender_identity,
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except Exception:
            logger.exception(
                "send_logs insert failed for %s / %s", entry.archive_filename, entry.account_key,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def last_status(self, archive_filename: str, account_keys: Iterable[str]) -> dict[str, LastSendStatus]:
        """Most recent status per key for this exact archive filename.

        Keys without any entry are absent from the result.  Returns an
        empty mapping for non-admin callers, empty inputs and store errors.
        """
        if not self.identity().is_admin:
            return {}

        archive = (archive_filename or "").strip()
        keys = unique_account_keys(account_keys)
        if not archive or not keys:
            return {}

        placeholders = ", ".join(["?"] * len(keys))
        try:
            conn = self.db.connect()
            try:
                rows = conn.execute(
                    f"""SELECT account_key, status, sent_at FROM send_logs
                        WHERE archive_filename = ? AND account_key IN ({placeholders})""",
                    [archive] + keys,
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.exception("Send log query failed for %s", archive)
            return {}

        return latest_status_by_key(dict(r) for r in rows)

    def history(self, archive_filename: str | None = None, limit: int = 200) -> list[SendLogEntry]:
        """Recent entries, newest first, optionally for one archive."""
        if not self.identity().is_admin:
            return []

        sql = "SELECT * FROM send_logs"
        params: list[Any] = []
        if archive_filename:
            sql += " WHERE archive_filename = ?"
            params.append(archive_filename.strip())
        sql += " ORDER BY sent_at DESC, id DESC LIMIT ?"
        params.append(int(limit))

        try:
            conn = self.db.connect()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.exception("Send log history query failed")
            return []
        return [_row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    @staticmethod
    def export_xlsx(path: str | Path, entries: list[SendLogEntry]) -> Path:
        """Write entries to a one-sheet workbook.  Returns the Path written to."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        wb = Workbook()
        ws = wb.active
        ws.title = "Send Log"
        ws.append(_EXPORT_COLUMNS)
        for cell in ws[1]:
            cell.font = Font(bold=True)
        for entry in entries:
            data = entry.to_dict()
            ws.append([data[c] for c in _EXPORT_COLUMNS])
        ws.freeze_panes = "A2"

        wb.save(path)
        logger.info("Exported %d send log entries to %s", len(entries), path)
        return path
