"""Tests for billmail.archive_parser -- manifest and filename-convention parsing.

Covers:
- Manifest path (trade date, dropped entries, admin exclusions)
- Invalid manifest JSON falling back to filenames
- Fallback path (key/date split, empty key, admin prefixes, folders)
- Zero-record archives
- ArchiveSession PDF lookup order and lifecycle
"""

import zipfile

import pytest

from billmail.archive_parser import (
    MSG_MANIFEST_INVALID,
    MSG_NO_BILLS,
    ArchiveSession,
    base_name,
    is_excluded_admin_pdf,
    parse_archive,
    parse_bill_filename,
    unique_account_keys,
)
from billmail.models import BillingRecord, ParseSource

PDF = b"%PDF-1.4 test"


# ============================================================================
# Manifest path
# ============================================================================

class TestManifest:
    """Records come from manifest.json when it parses."""

    def test_single_entry(self, manifest_zip):
        result = parse_archive(manifest_zip, "bills.zip")

        assert result.source is ParseSource.MANIFEST
        assert result.diagnostics == []
        assert result.records == [BillingRecord(
            account_key="PR20",
            pdf_filename="Bill_PR20_2024-01-05.pdf",
            archive_entry_path="Bill_PR20_2024-01-05.pdf",
            trade_date="2024-01-05",
        )]

    def test_keys_are_trimmed_and_case_kept(self, make_zip):
        data = make_zip({"manifest.json": {"success": [{"key": "  pr20 ", "pdf": "a.pdf"}]}})
        result = parse_archive(data, "bills.zip")
        assert [r.account_key for r in result.records] == ["pr20"]

    def test_subdirectory_path_keeps_entry_path(self, make_zip):
        data = make_zip({"manifest.json": {
            "trade_date": "2024-01-05",
            "success": [{"key": "PR21", "pdf": "out/2024/Bill_PR21_2024-01-05.pdf"}],
        }})
        record = parse_archive(data, "bills.zip").records[0]
        assert record.pdf_filename == "Bill_PR21_2024-01-05.pdf"
        assert record.archive_entry_path == "out/2024/Bill_PR21_2024-01-05.pdf"

    def test_invalid_entries_are_dropped_silently(self, make_zip):
        data = make_zip({"manifest.json": {
            "trade_date": "2024-01-05",
            "success": [
                {"key": "", "pdf": "Bill_A_1.pdf"},
                {"key": "B"},
                {"pdf": "Bill_C_1.pdf"},
                {"key": "D", "pdf": "notes.txt"},
                {"key": "E", "pdf": "Bill_Admin_2024-01-05.pdf"},
                {"key": "F", "pdf": "x/Summary_Admin_Closing_Adjustment_2024.pdf"},
                "not an object",
                {"key": "G", "pdf": "Bill_G_2024-01-05.PDF"},
            ],
        }})
        result = parse_archive(data, "bills.zip")
        assert [r.account_key for r in result.records] == ["G"]
        assert result.diagnostics == []

    def test_one_trade_date_for_every_record(self, make_zip):
        data = make_zip({"manifest.json": {
            "trade_date": " 2024-02-01 ",
            "success": [{"key": "A", "pdf": "a.pdf"}, {"key": "B", "pdf": "b.pdf"}],
        }})
        assert {r.trade_date for r in parse_archive(data, "z.zip").records} == {"2024-02-01"}

    @pytest.mark.parametrize("trade_date", ["", "   ", 20240105, None])
    def test_unusable_trade_date_is_null(self, make_zip, trade_date):
        data = make_zip({"manifest.json": {
            "trade_date": trade_date,
            "success": [{"key": "A", "pdf": "a.pdf"}],
        }})
        assert parse_archive(data, "z.zip").records[0].trade_date is None

    def test_duplicate_keys_are_kept(self, make_zip):
        data = make_zip({"manifest.json": {"success": [
            {"key": "PR20", "pdf": "one/Bill_PR20_a.pdf"},
            {"key": "PR20", "pdf": "two/Bill_PR20_a.pdf"},
        ]}})
        records = parse_archive(data, "z.zip").records
        assert len(records) == 2
        assert records[0].archive_entry_path != records[1].archive_entry_path

    def test_manifest_without_success_reports_no_bills(self, make_zip):
        data = make_zip({
            "manifest.json": {"trade_date": "2024-01-05"},
            "Bill_PR20_2024-01-05.pdf": PDF,
        })
        result = parse_archive(data, "z.zip")
        assert result.source is ParseSource.MANIFEST
        assert result.records == []
        assert result.diagnostics == [MSG_NO_BILLS]


# ============================================================================
# Invalid manifest
# ============================================================================

class TestInvalidManifest:
    """A manifest that is not a JSON object is a diagnostic, not a failure."""

    def test_falls_back_to_filenames(self, make_zip):
        data = make_zip({
            "manifest.json": "{not json",
            "Bill_PR20_2024-01-05.pdf": PDF,
        })
        result = parse_archive(data, "z.zip")

        assert result.source is ParseSource.FALLBACK
        assert MSG_MANIFEST_INVALID in result.diagnostics
        assert [r.account_key for r in result.records] == ["PR20"]

    @pytest.mark.parametrize("manifest", ["null", "[]", "42", '"text"'])
    def test_non_object_manifest_falls_back(self, make_zip, manifest):
        data = make_zip({
            "manifest.json": manifest,
            "Bill_PR20_2024-01-05.pdf": PDF,
        })
        result = parse_archive(data, "z.zip")

        assert result.source is ParseSource.FALLBACK
        assert result.diagnostics == [MSG_MANIFEST_INVALID]
        assert [r.account_key for r in result.records] == ["PR20"]

    def test_invalid_and_empty_reports_both(self, make_zip):
        data = make_zip({"manifest.json": "nope"})
        result = parse_archive(data, "z.zip")
        assert result.diagnostics == [MSG_MANIFEST_INVALID, MSG_NO_BILLS]


# ============================================================================
# Fallback path
# ============================================================================

class TestFallback:
    """Bill_{key}_{date}.pdf naming convention."""

    def test_admin_prefix_excluded(self, make_zip):
        data = make_zip({
            "Bill_PR20_2024-01-05.pdf": PDF,
            "Bill_Admin_2024-01-05.pdf": PDF,
        })
        result = parse_archive(data, "z.zip")
        assert result.source is ParseSource.FALLBACK
        assert result.records == [BillingRecord(
            account_key="PR20",
            pdf_filename="Bill_PR20_2024-01-05.pdf",
            archive_entry_path="Bill_PR20_2024-01-05.pdf",
            trade_date="2024-01-05",
        )]

    def test_nested_entries_and_directories(self, make_zip):
        data = make_zip({
            "bills/": b"",
            "bills/Bill_PR22_2024-01-05.pdf": PDF,
            "readme.txt": "hi",
        })
        records = parse_archive(data, "z.zip").records
        assert len(records) == 1
        assert records[0].archive_entry_path == "bills/Bill_PR22_2024-01-05.pdf"
        assert records[0].pdf_filename == "Bill_PR22_2024-01-05.pdf"

    @pytest.mark.parametrize("name, expected", [
        ("Bill_PR20_2024-01-05.pdf", ("PR20", "2024-01-05")),
        ("Bill_PR20_.pdf", ("PR20", None)),
        ("Bill_PR20_ 2024-01-05 .pdf", ("PR20", "2024-01-05")),
        ("Bill_AB_CD_2024.pdf", ("AB", "CD_2024")),
        ("Bill__20240101.pdf", None),
        ("Bill_PR20.pdf", None),
        ("Invoice_PR20_2024.pdf", None),
        ("Bill_PR20_2024-01-05.txt", None),
        ("Bill_Admin_2024-01-05.pdf", None),
    ])
    def test_parse_bill_filename(self, name, expected):
        assert parse_bill_filename(name) == expected

    def test_empty_archive(self, make_zip):
        result = parse_archive(make_zip({}), "empty.zip")
        assert result.records == []
        assert result.source is ParseSource.FALLBACK
        assert result.diagnostics == [MSG_NO_BILLS]

    def test_not_a_zip_raises(self):
        with pytest.raises(zipfile.BadZipFile):
            parse_archive(b"definitely not a zip", "bad.zip")


# ============================================================================
# Helpers
# ============================================================================

class TestHelpers:

    def test_base_name(self):
        assert base_name("a/b/c.pdf") == "c.pdf"
        assert base_name("c.pdf") == "c.pdf"

    def test_admin_exclusion_uses_base_name(self):
        assert is_excluded_admin_pdf("deep/Summary_Admin_Closing_Adjustment_x.pdf")
        assert not is_excluded_admin_pdf("Bill_PR20_x.pdf")

    def test_unique_account_keys(self):
        assert unique_account_keys([" PR20", "PR20", "", None, "pr20"]) == ["PR20", "pr20"]


# ============================================================================
# ArchiveSession
# ============================================================================

class TestArchiveSession:
    """On-demand PDF extraction and handle lifecycle."""

    def test_exact_path_first(self, make_zip):
        data = make_zip({"a/Bill_X_1.pdf": b"from-a", "Bill_X_1.pdf": b"from-root"})
        with ArchiveSession(data, "z.zip") as archive:
            assert archive.read_pdf("a/Bill_X_1.pdf", "Bill_X_1.pdf") == b"from-a"

    def test_then_exact_filename(self, make_zip):
        data = make_zip({"b/Bill_X_1.pdf": b"from-b", "Bill_X_1.pdf": b"from-root"})
        with ArchiveSession(data, "z.zip") as archive:
            assert archive.read_pdf("missing/Bill_X_1.pdf", "Bill_X_1.pdf") == b"from-root"

    def test_then_base_name_scan(self, make_zip):
        data = make_zip({"other/dir/Bill_X_1.pdf": b"scanned"})
        with ArchiveSession(data, "z.zip") as archive:
            assert archive.read_pdf("manifest/path/Bill_X_1.pdf", "Bill_X_1.pdf") == b"scanned"

    def test_not_found(self, make_zip):
        with ArchiveSession(make_zip({"a.pdf": PDF}), "z.zip") as archive:
            assert archive.read_pdf("b.pdf", "b.pdf") is None

    def test_close_releases_handle(self, make_zip):
        archive = ArchiveSession(make_zip({"a.pdf": PDF}), "z.zip")
        archive.close()
        assert archive.closed
        with pytest.raises(ValueError):
            archive.read_pdf("a.pdf", "a.pdf")
        archive.close()  # idempotent
