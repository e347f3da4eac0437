"""
Bill Mailer -- SQLite storage helpers.

One database file holds both shared tables:

    contacts   - recipient directory keyed by account_key
    send_logs  - append-only audit trail, one row per concluded send attempt

Each store method opens and closes its own connection.  WAL journal mode
lets the console read while another operator's session is writing.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

# SQLite journal mode for better concurrency with Streamlit
_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Recipient directory
CREATE TABLE IF NOT EXISTS contacts (
    account_key     TEXT PRIMARY KEY,
    name            TEXT,
    email           TEXT NOT NULL,
    updated_at      TEXT NOT NULL DEFAULT ''
);

-- Send log: written once per concluded attempt, never updated
CREATE TABLE IF NOT EXISTS send_logs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    sent_at             TEXT NOT NULL,
    archive_filename    TEXT NOT NULL,
    account_key         TEXT NOT NULL,
    trade_date          TEXT,
    to_email            TEXT NOT NULL DEFAULT '',
    to_name             TEXT,
    status              TEXT NOT NULL CHECK (status IN ('sent', 'failed')),
    error               TEXT,
    message_id          TEXT,
    sender_identity     TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_contacts_updated ON contacts(updated_at);
CREATE INDEX IF NOT EXISTS idx_logs_sent_at ON send_logs(sent_at);
CREATE INDEX IF NOT EXISTS idx_logs_archive_account ON send_logs(archive_filename, account_key);
CREATE INDEX IF NOT EXISTS idx_logs_account_trade ON send_logs(account_key, trade_date);
CREATE INDEX IF NOT EXISTS idx_logs_to_email ON send_logs(to_email);
"""


def now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: object) -> datetime | None:
    """Parse a stored ISO timestamp; None for empty or malformed values."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Connection factory for the shared SQLite file."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self.connect()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()
