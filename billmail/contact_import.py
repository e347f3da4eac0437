"""Bill Mailer - Contact spreadsheet loader.

Reads recipient contacts from an XLSX workbook so the directory can be
seeded in bulk instead of one "add contact" at a time.

Expected layout: a header row (row 1) followed by one contact per row.
Columns are found by *header text*, not position, so exports with extra
or reordered columns load unchanged:

+--------------+--------------------------------------------------+
| Field        | Accepted headers (case-insensitive)              |
+==============+==================================================+
| account_key  | Account Key, Account, Key, Account No            |
| name         | Name, Contact Name, Recipient                    |
| email        | Email, Email Address, Contact Email              |
+--------------+--------------------------------------------------+

Usage::

    from billmail.contact_import import load_contacts_workbook

    result = load_contacts_workbook("data/contacts.xlsx")
    directory.import_contacts(result.contacts)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .config import is_valid_email
from .contacts import normalize_email, normalize_name
from .archive_parser import normalize_account_key
from .models import Contact

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CONTACT_HEADERS: dict[str, list[str]] = {
    "account_key": ["Account Key", "Account", "Key", "Account No", "account_key"],
    "name":        ["Name", "Contact Name", "Recipient"],
    "email":       ["Email", "Email Address", "Contact Email", "E-mail"],
}

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", None}


@dataclass
class ContactLoadResult:
    """Output of :func:`load_contacts_workbook`."""

    contacts: list[Contact] = field(default_factory=list)
    sheet_used: str | None = None
    rows_scanned: int = 0
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_contacts_workbook(
    source: Union[str, Path, IO[bytes]],
    *,
    sheet: str | None = None,
) -> ContactLoadResult:
    """Load contacts from an XLSX workbook.

    Parameters
    ----------
    source:
        File path or a readable bytes buffer.
    sheet:
        Sheet name to read.  When *None* the active sheet is used.

    Raises
    ------
    FileNotFoundError
        When *source* is a path that does not exist.
    ValueError
        When the sheet is missing or has no account key / email column.
    """
    wb = _open_workbook(source)
    try:
        if sheet:
            if sheet not in wb.sheetnames:
                raise ValueError(f"Sheet '{sheet}' not found.  Available: {wb.sheetnames}")
            ws = wb[sheet]
        else:
            ws = wb.active

        result = ContactLoadResult(sheet_used=ws.title)
        _parse_contacts(ws, result)
    finally:
        wb.close()

    logger.info(
        "Loaded %d contact(s) from sheet %s (%d rows scanned, %d warnings)",
        len(result.contacts), result.sheet_used, result.rows_scanned, len(result.warnings),
    )
    return result


def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True, read_only=True)

    logger.info("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True, read_only=True)


def _parse_contacts(ws: Worksheet, result: ContactLoadResult) -> None:
    rows = ws.iter_rows(values_only=True)
    header = next(rows, None)
    if header is None:
        raise ValueError(f"Sheet '{ws.title}' is empty")

    header_map = _build_header_map(header, _CONTACT_HEADERS)
    missing = [f for f in ("account_key", "email") if f not in header_map]
    if missing:
        raise ValueError(
            f"Sheet '{ws.title}' is missing column(s) {missing}.  "
            f"Header row: {list(header)}"
        )

    for row_number, row in enumerate(rows, start=2):
        result.rows_scanned += 1
        account_key = normalize_account_key(_clean_str(_cell_value(row, header_map, "account_key")))
        if not account_key:
            continue  # skip empty / padding rows

        email = normalize_email(_clean_str(_cell_value(row, header_map, "email")))
        if not is_valid_email(email):
            result.warnings.append(
                f"Row {row_number}: {account_key} has no valid email ({email or 'blank'})"
            )
            continue

        result.contacts.append(Contact(
            account_key=account_key,
            email=email,
            name=normalize_name(_clean_str(_cell_value(row, header_map, "name"))),
        ))


# ---------------------------------------------------------------------------
# Header / cell helpers
# ---------------------------------------------------------------------------

def _build_header_map(
    header: tuple,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices.

    Matches each header cell against the known aliases in *header_spec*.
    """
    header_map: dict[str, int] = {}
    row1_values = [str(v).strip().lower() if v is not None else None for v in header]

    for logical_name, aliases in header_spec.items():
        wanted = {alias.lower() for alias in aliases}
        for idx, header_text in enumerate(row1_values):
            if header_text in wanted:
                header_map[logical_name] = idx
                break

    logger.debug("Header map (%d/%d): %s", len(header_map), len(header_spec), list(header_map))
    return header_map


def _cell_value(row: tuple, header_map: dict[str, int], field_name: str):
    """Read a cell by logical field name; None when absent or out of range."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    if isinstance(val, float) and val.is_integer():
        val = int(val)
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s
