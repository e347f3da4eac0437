"""Row reconciliation: billing records joined with resolved contacts.

Pure functions, no I/O.  A row is Pending exactly when its contact has a
non-empty email; otherwise it is Blocked and never eligible to send.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from .archive_parser import unique_account_keys
from .models import BillingRecord, Contact, ReconciledRow, RowStatus

__all__ = ["reconcile", "reconcile_record", "refresh_rows", "unique_account_keys"]


def reconcile_record(record: BillingRecord, contact: Contact | None) -> ReconciledRow:
    email = contact.email if contact else None
    return ReconciledRow(
        record=record,
        contact_name=contact.name if contact else None,
        contact_email=email or None,
        status=RowStatus.from_email(email),
    )


def reconcile(
    records: Iterable[BillingRecord],
    contacts_by_key: Mapping[str, Contact],
) -> list[ReconciledRow]:
    """Join each record with its contact, preserving record order.

    Records sharing an account key each produce their own row.
    """
    return [reconcile_record(r, contacts_by_key.get(r.account_key)) for r in records]


def refresh_rows(
    rows: list[ReconciledRow],
    contacts_by_key: Mapping[str, Contact],
    refreshed_keys: Iterable[str],
) -> list[ReconciledRow]:
    """Recompute only the rows whose key was refreshed.

    Rows outside *refreshed_keys* are returned as the very same objects so
    their identity (and any state keyed on them) survives.  A refreshed key
    missing from *contacts_by_key* means the contact is gone: the row
    becomes Blocked.
    """
    keys = set(unique_account_keys(refreshed_keys))
    if not keys:
        return list(rows)
    return [
        reconcile_record(row.record, contacts_by_key.get(row.account_key))
        if row.account_key in keys else row
        for row in rows
    ]
