"""Bill Mailer - Archive Parser.

Decodes an uploaded ZIP of bill PDFs into ``BillingRecord`` objects.

Two paths, tried in order:

* **Manifest** -- ``manifest.json`` at the archive root::

      {"trade_date": "2024-01-05",
       "success": [{"key": "PR20", "pdf": "bills/Bill_PR20_2024-01-05.pdf"}]}

  Every success entry becomes one record carrying the manifest's single
  trade date.

* **Fallback** -- used when the manifest is absent or is not valid JSON.
  Every file named ``Bill_{key}_{trade date}.pdf`` becomes one record.

Administrative summaries (``Bill_Admin_*``,
``Summary_Admin_Closing_Adjustment_*``) are never recipients and are
dropped on both paths.  Unusable entries are dropped silently; only
whole-archive problems become diagnostics.

Usage::

    from billmail.archive_parser import ArchiveSession, parse_archive

    result = parse_archive(data, "bills_2024-01-05.zip")
    with ArchiveSession(data, "bills_2024-01-05.zip") as archive:
        pdf = archive.read_pdf(row.archive_entry_path, row.pdf_filename)
"""

from __future__ import annotations

import io
import json
import logging
import posixpath
import zipfile
from typing import Any

from .config import ArchiveSettings
from .models import BillingRecord, ParseResult, ParseSource

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

MSG_MANIFEST_INVALID = "manifest.json invalid JSON"
MSG_NO_BILLS = "No bill PDFs found"

_DEFAULT_SETTINGS = ArchiveSettings()


# ---------------------------------------------------------------------------
# Name helpers
# ---------------------------------------------------------------------------

def base_name(path: str) -> str:
    """Last path component of an archive entry name.

    >>> base_name("2024/01/Bill_PR20_2024-01-05.pdf")
    'Bill_PR20_2024-01-05.pdf'
    """
    return posixpath.basename(path)


def _clean_str(value: Any) -> str:
    """Convert a JSON value to a stripped string.  None becomes ``""``."""
    if value is None:
        return ""
    return str(value).strip()


def normalize_account_key(value: Any) -> str:
    """Trim an account key.  Case is kept."""
    return _clean_str(value)


def unique_account_keys(keys) -> list[str]:
    """Normalized, de-duplicated, non-empty keys in first-seen order.

    >>> unique_account_keys([" PR20", "PR20", "", None, "pr20"])
    ['PR20', 'pr20']
    """
    seen: dict[str, None] = {}
    for key in keys:
        normalized = normalize_account_key(key)
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def is_pdf(filename: str, settings: ArchiveSettings = _DEFAULT_SETTINGS) -> bool:
    return filename.lower().endswith(settings.pdf_extension.lower())


def is_excluded_admin_pdf(filename: str, settings: ArchiveSettings = _DEFAULT_SETTINGS) -> bool:
    """True for summary documents that share the bill naming but have no recipient."""
    name = base_name(filename)
    return any(name.startswith(prefix) for prefix in settings.excluded_prefixes)


# ---------------------------------------------------------------------------
# Owned archive handle
# ---------------------------------------------------------------------------

class ArchiveSession:
    """The decoded archive of one upload session.

    Holds the ZIP open for the session so PDF bytes can be extracted on
    demand per send or view.  ``close()`` releases it; the orchestrator
    closes the previous session before opening the next one.

    Raises ``zipfile.BadZipFile`` when *data* is not a ZIP archive.
    """

    def __init__(self, data: bytes, filename: str):
        self.filename = filename
        self._zip: zipfile.ZipFile | None = zipfile.ZipFile(io.BytesIO(data))

    def __enter__(self) -> ArchiveSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._zip is None

    def close(self) -> None:
        if self._zip is not None:
            self._zip.close()
            self._zip = None
            logger.debug("Released archive handle for %s", self.filename)

    def _require_open(self) -> zipfile.ZipFile:
        if self._zip is None:
            raise ValueError(f"Archive {self.filename!r} is closed")
        return self._zip

    def file_entries(self) -> list[zipfile.ZipInfo]:
        """All non-directory entries, in archive order."""
        return [info for info in self._require_open().infolist() if not info.is_dir()]

    def _get_file(self, name: str) -> zipfile.ZipInfo | None:
        if not name:
            return None
        try:
            info = self._require_open().getinfo(name)
        except KeyError:
            return None
        return None if info.is_dir() else info

    def find_pdf_entry(self, entry_path: str, pdf_filename: str) -> zipfile.ZipInfo | None:
        """Locate a row's PDF inside the archive.

        Tried in order: exact entry path, exact filename at the root, then
        any entry whose base name equals the filename.  The last step
        covers manifests whose paths disagree with the archive's folders.
        """
        info = self._get_file(entry_path)
        if info is not None:
            return info

        info = self._get_file(pdf_filename)
        if info is not None:
            return info

        target = base_name(pdf_filename)
        for candidate in self.file_entries():
            if base_name(candidate.filename) == target:
                return candidate
        return None

    def read_pdf(self, entry_path: str, pdf_filename: str) -> bytes | None:
        """Bytes of a row's PDF, or None when it cannot be located."""
        info = self.find_pdf_entry(entry_path, pdf_filename)
        if info is None:
            return None
        return self._require_open().read(info)

    def read_text(self, name: str) -> str | None:
        info = self._get_file(name)
        if info is None:
            return None
        return self._require_open().read(info).decode("utf-8-sig")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_archive(
    data: bytes,
    filename: str,
    settings: ArchiveSettings | None = None,
) -> ParseResult:
    """Parse archive bytes into billing records.

    Parameters
    ----------
    data:
        Raw bytes of the uploaded ZIP.
    filename:
        Declared name of the upload, used for logging only.
    settings:
        Naming conventions; defaults to :class:`ArchiveSettings`.

    Raises
    ------
    zipfile.BadZipFile
        When *data* is not a ZIP archive.
    """
    with ArchiveSession(data, filename) as archive:
        return parse_session(archive, settings)


def parse_session(archive: ArchiveSession, settings: ArchiveSettings | None = None) -> ParseResult:
    """Parse an already-open archive.  See :func:`parse_archive`."""
    settings = settings or _DEFAULT_SETTINGS
    result = ParseResult()

    manifest_records = _parse_manifest(archive, settings, result.diagnostics)
    if manifest_records is not None:
        result.source = ParseSource.MANIFEST
        result.records = manifest_records
    else:
        result.source = ParseSource.FALLBACK
        result.records = _parse_fallback(archive, settings)

    if not result.records:
        result.diagnostics.append(MSG_NO_BILLS)

    logger.info(
        "Parsed %s: %d bill(s) via %s",
        archive.filename, len(result.records), result.source.value,
    )
    return result


# ---------------------------------------------------------------------------
# Manifest path
# ---------------------------------------------------------------------------

def _parse_manifest(
    archive: ArchiveSession,
    settings: ArchiveSettings,
    diagnostics: list[str],
) -> list[BillingRecord] | None:
    """Records from the manifest, or None when the fallback path must run."""
    try:
        raw = archive.read_text(settings.manifest_name)
    except UnicodeDecodeError:
        logger.warning("%s in %s is not UTF-8", settings.manifest_name, archive.filename)
        diagnostics.append(MSG_MANIFEST_INVALID)
        return None

    if raw is None:
        return None

    try:
        manifest = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Invalid %s in %s: %s", settings.manifest_name, archive.filename, exc)
        diagnostics.append(MSG_MANIFEST_INVALID)
        return None

    if not isinstance(manifest, dict):
        logger.warning("%s in %s is not a JSON object", settings.manifest_name, archive.filename)
        diagnostics.append(MSG_MANIFEST_INVALID)
        return None

    trade_date_raw = manifest.get("trade_date")
    trade_date = (trade_date_raw.strip() or None) if isinstance(trade_date_raw, str) else None

    success = manifest.get("success")
    if not isinstance(success, list):
        success = []

    records: list[BillingRecord] = []
    for entry in success:
        if not isinstance(entry, dict):
            continue

        account_key = normalize_account_key(entry.get("key"))
        pdf_path = _clean_str(entry.get("pdf"))
        if not account_key or not pdf_path:
            continue
        if not is_pdf(pdf_path, settings) or is_excluded_admin_pdf(pdf_path, settings):
            continue

        records.append(BillingRecord(
            account_key=account_key,
            pdf_filename=base_name(pdf_path),
            archive_entry_path=pdf_path,
            trade_date=trade_date,
        ))

    return records


# ---------------------------------------------------------------------------
# Filename-convention path
# ---------------------------------------------------------------------------

def parse_bill_filename(name: str, settings: ArchiveSettings = _DEFAULT_SETTINGS) -> tuple[str, str | None] | None:
    """Split ``Bill_{key}_{trade date}.pdf`` into (key, trade date).

    Returns None for names that do not follow the convention, including
    an empty key segment.

    >>> parse_bill_filename("Bill_PR20_2024-01-05.pdf")
    ('PR20', '2024-01-05')
    >>> parse_bill_filename("Bill_PR20_.pdf")
    ('PR20', None)
    >>> parse_bill_filename("Bill__20240101.pdf") is None
    True
    """
    prefix = settings.fallback_prefix
    if not name.startswith(prefix):
        return None
    if not is_pdf(name, settings) or is_excluded_admin_pdf(name, settings):
        return None

    remainder = name[len(prefix):]
    split_at = remainder.find("_")
    if split_at <= 0:
        return None

    account_key = normalize_account_key(remainder[:split_at])
    if not account_key:
        return None

    trade_date = remainder[split_at + 1:len(remainder) - len(settings.pdf_extension)].strip()
    return account_key, trade_date or None


def _parse_fallback(archive: ArchiveSession, settings: ArchiveSettings) -> list[BillingRecord]:
    records: list[BillingRecord] = []
    for info in archive.file_entries():
        name = base_name(info.filename)
        parsed = parse_bill_filename(name, settings)
        if parsed is None:
            continue
        account_key, trade_date = parsed
        records.append(BillingRecord(
            account_key=account_key,
            pdf_filename=name,
            archive_entry_path=info.filename,
            trade_date=trade_date,
        ))
    return records
