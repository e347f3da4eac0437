"""Contact directory and resolver for the bill mailer.

Maps account keys found in an archive to the recipient directory.  The
directory itself is maintained elsewhere (contact screens, spreadsheet
import); the core only needs one operation from it:

    resolve(account_keys) -> {account_key: Contact}

Resolution rules:
    - keys are trimmed, de-duplicated and empties dropped before the lookup
    - one batched query per call, never one query per key
    - a non-admin caller or an empty key set yields an empty mapping
    - a store error yields an empty mapping ("no contacts known yet") and
      is reported to the log, not to the operator

The create/update/delete operations back the inline "add contact" flow
and the spreadsheet import.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Iterable

from .archive_parser import normalize_account_key, unique_account_keys
from .auth import IdentityProvider
from .config import is_valid_email
from .models import ActionResult, Contact
from .storage import Database, now_iso

logger = logging.getLogger(__name__)

_CONTACT_COLUMNS = "account_key, name, email, updated_at"

MSG_NOT_AUTHORIZED = "Not authorized to {action} contacts."
MSG_KEY_REQUIRED = "Account key is required."
MSG_EMAIL_REQUIRED = "Email is required."
MSG_EMAIL_INVALID = "Email must be valid (example: name@example.com)."
MSG_DUPLICATE_KEY = "A contact with this account key already exists."
MSG_NOT_FOUND = "No contact with this account key."
MSG_IMPORT_FAILED = "Import failed, nothing was saved: {error}"


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def normalize_name(value: object) -> str | None:
    """Trimmed display name, or None when blank."""
    normalized = str(value if value is not None else "").strip()
    return normalized or None


def normalize_email(value: object) -> str:
    """Trimmed, lowercased email address."""
    return str(value if value is not None else "").strip().lower()


def _validate(account_key: str, email: str) -> str | None:
    """Return the first validation error, or None."""
    if not account_key:
        return MSG_KEY_REQUIRED
    if not email:
        return MSG_EMAIL_REQUIRED
    if not is_valid_email(email):
        return MSG_EMAIL_INVALID
    return None


def _row_to_contact(row: sqlite3.Row) -> Contact:
    return Contact(
        account_key=row["account_key"],
        name=row["name"],
        email=row["email"],
        updated_at=row["updated_at"],
    )


def matches_search(contact: Contact, search: str) -> bool:
    """Case-insensitive substring match on key, name or email."""
    term = search.strip().lower()
    if not term:
        return True
    return (
        term in contact.account_key.lower()
        or term in (contact.name or "").lower()
        or term in contact.email.lower()
    )


@dataclass
class ImportSummary:
    """Counts from :meth:`ContactDirectory.import_contacts`."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated


# ---------------------------------------------------------------------------
# ContactDirectory -- the main public API
# ---------------------------------------------------------------------------

class ContactDirectory:
    """SQLite-backed contact directory with the admin capability check.

    Shared across sessions and operators: nothing is cached, every call
    re-reads the table.
    """

    def __init__(self, db: Database, identity: IdentityProvider):
        self.db = db
        self.identity = identity

    def _is_admin(self) -> bool:
        return self.identity().is_admin

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, account_keys: Iterable[str]) -> dict[str, Contact]:
        """Map each known account key to its Contact in one batched lookup."""
        if not self._is_admin():
            return {}

        keys = unique_account_keys(account_keys)
        if not keys:
            return {}

        placeholders = ", ".join(["?"] * len(keys))
        try:
            conn = self.db.connect()
            try:
                rows = conn.execute(
                    f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE account_key IN ({placeholders})",
                    keys,
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.exception("Contact lookup failed for %d key(s)", len(keys))
            return {}

        contacts = {row["account_key"]: _row_to_contact(row) for row in rows}
        logger.debug("Resolved %d/%d account keys", len(contacts), len(keys))
        return contacts

    def get(self, account_key: str) -> Contact | None:
        return self.resolve([account_key]).get(normalize_account_key(account_key))

    def list_contacts(self, search: str = "") -> list[Contact]:
        """All contacts, most recently updated first, optionally filtered."""
        if not self._is_admin():
            return []
        try:
            conn = self.db.connect()
            try:
                rows = conn.execute(
                    f"SELECT {_CONTACT_COLUMNS} FROM contacts ORDER BY updated_at DESC"
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error:
            logger.exception("Listing contacts failed")
            return []

        contacts = [_row_to_contact(row) for row in rows]
        return [c for c in contacts if matches_search(c, search)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, account_key: str, email: str, name: str | None = None) -> ActionResult:
        """Insert a new contact.  Fails on an existing key."""
        if not self._is_admin():
            return ActionResult.failure(MSG_NOT_AUTHORIZED.format(action="create"))

        key = normalize_account_key(account_key)
        email = normalize_email(email)
        error = _validate(key, email)
        if error:
            return ActionResult.failure(error)

        conn = self.db.connect()
        try:
            conn.execute(
                "INSERT INTO contacts (account_key, name, email, updated_at) VALUES (?, ?, ?, ?)",
                (key, normalize_name(name), email, now_iso()),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            return ActionResult.failure(MSG_DUPLICATE_KEY)
        except sqlite3.Error as exc:
            logger.error("Creating contact %s failed: %s", key, exc)
            return ActionResult.failure(str(exc))
        finally:
            conn.close()

        logger.info("Created contact %s", key)
        return ActionResult.success()

    def update(self, account_key: str, email: str, name: str | None = None) -> ActionResult:
        """Replace name and email of an existing contact."""
        if not self._is_admin():
            return ActionResult.failure(MSG_NOT_AUTHORIZED.format(action="update"))

        key = normalize_account_key(account_key)
        email = normalize_email(email)
        error = _validate(key, email)
        if error:
            return ActionResult.failure(error)

        conn = self.db.connect()
        try:
            result = conn.execute(
                "UPDATE contacts SET name = ?, email = ?, updated_at = ? WHERE account_key = ?",
                (normalize_name(name), email, now_iso(), key),
            )
            conn.commit()
        except sqlite3.Error as exc:
            logger.error("Updating contact %s failed: %s", key, exc)
            return ActionResult.failure(str(exc))
        finally:
            conn.close()

        if result.rowcount == 0:
            return ActionResult.failure(MSG_NOT_FOUND)
        return ActionResult.success()

    def delete(self, account_key: str) -> ActionResult:
        if not self._is_admin():
            return ActionResult.failure(MSG_NOT_AUTHORIZED.format(action="delete"))

        key = normalize_account_key(account_key)
        if not key:
            return ActionResult.failure(MSG_KEY_REQUIRED)

        conn = self.db.connect()
        try:
            conn.execute("DELETE FROM contacts WHERE account_key = ?", (key,))
            conn.commit()
        except sqlite3.Error as exc:
            logger.error("Deleting contact %s failed: %s", key, exc)
            return ActionResult.failure(str(exc))
        finally:
            conn.close()

        logger.info("Deleted contact %s", key)
        return ActionResult.success()

    def import_contacts(self, contacts: Iterable[Contact]) -> ImportSummary:
        """Upsert contacts by key in one transaction.

        Invalid entries are skipped and reported in ``errors``.
        """
        summary = ImportSummary()
        if not self._is_admin():
            summary.errors.append(MSG_NOT_AUTHORIZED.format(action="import"))
            return summary

        conn = self.db.connect()
        try:
            for contact in contacts:
                key = normalize_account_key(contact.account_key)
                email = normalize_email(contact.email)
                error = _validate(key, email)
                if error:
                    summary.skipped += 1
                    summary.errors.append(f"{key or '(blank key)'}: {error}")
                    continue

                result = conn.execute(
                    "UPDATE contacts SET name = ?, email = ?, updated_at = ? WHERE account_key = ?",
                    (normalize_name(contact.name), email, now_iso(), key),
                )
                if result.rowcount:
                    summary.updated += 1
                else:
                    conn.execute(
                        "INSERT INTO contacts (account_key, name, email, updated_at) VALUES (?, ?, ?, ?)",
                        (key, normalize_name(contact.name), email, now_iso()),
                    )
                    summary.created += 1
            conn.commit()
        except sqlite3.Error as exc:
            logger.error("Contact import failed, nothing saved: %s", exc)
            summary.created = summary.updated = 0
            summary.errors.append(MSG_IMPORT_FAILED.format(error=exc))
            return summary
        finally:
            conn.close()

        logger.info(
            "Imported contacts: %d created, %d updated, %d skipped",
            summary.created, summary.updated, summary.skipped,
        )
        return summary
