"""Bill Mailer -- Command-line entry point.

Headless counterpart of the console for scripted runs:

    summary          parse an archive and show each row's status
    send             send all pending rows (or retry failed ones)
    history          show recent send log entries, optionally as XLSX
    import-contacts  bulk load the contact directory from a workbook

Usage::

    python -m billmail.main summary bills_2024-01-05.zip
    python -m billmail.main send bills_2024-01-05.zip --dry-run
    python -m billmail.main send bills_2024-01-05.zip --retry-failed
    python -m billmail.main history --archive bills_2024-01-05.zip --xlsx out/log.xlsx
    python -m billmail.main import-contacts data/contacts.xlsx --sheet Contacts

The operator identity comes from the ``operator`` config section (or
``BILLMAIL_OPERATOR_EMAIL``) and must be an admin.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .auth import AccessPolicy, StaticIdentity
from .config import AppConfig, ConfigError, LoggingSettings, get_config
from .contact_import import load_contacts_workbook
from .orchestrator import SendOrchestrator
from .review import build_items, count_by_status

logger = logging.getLogger(__name__)


def configure_logging(settings: LoggingSettings, verbose: bool = False) -> None:
    """Console logging, plus a file handler when ``log_file`` is set."""
    level = logging.DEBUG if verbose else getattr(logging, settings.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format=settings.format,
        datefmt="%H:%M:%S",
        handlers=handlers,
        force=True,
    )


def _build_orchestrator(cfg: AppConfig, dry_run: bool = False) -> SendOrchestrator:
    identity = StaticIdentity.from_settings(AccessPolicy.from_settings(cfg.access), cfg.operator)
    if not identity().is_admin:
        raise ConfigError([
            f"operator {cfg.operator.email or '(unset)'} does not have admin access",
        ])
    return SendOrchestrator.from_config(cfg, identity, dry_run=dry_run)


def _load(orchestrator: SendOrchestrator, zip_path: str) -> bool:
    path = Path(zip_path)
    if not path.exists():
        raise FileNotFoundError(f"Archive not found: {path}")
    session = orchestrator.load_archive(path.read_bytes(), path.name)
    for message in session.messages:
        print(f"  ! {message}")
    return session.summary is not None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_summary(cfg: AppConfig, args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(cfg)
    try:
        if not _load(orchestrator, args.zip):
            return 1
        session = orchestrator.session
        items = build_items(session.rows, session.send_states, session.last_status)

        print()
        print("=" * 72)
        print(f"  {session.summary.archive_filename}  ({session.summary.row_count} rows, "
              f"{session.summary.source.value})")
        print("=" * 72)
        for item in items:
            row = item.row
            print(f"  {row.account_key:<14s} {item.status.value:<8s} "
                  f"{row.contact_email or '-':<32s} {row.pdf_filename}")
        print("-" * 72)
        counts = count_by_status(items)
        print("  " + "  ".join(f"{status.value}: {count}" for status, count in counts.items()))
        return 0
    finally:
        orchestrator.close()


def cmd_send(cfg: AppConfig, args: argparse.Namespace) -> int:
    cfg.validate(require_mail=True)
    orchestrator = _build_orchestrator(cfg, dry_run=args.dry_run)
    orchestrator.skip_already_sent = not args.no_skip_sent
    try:
        if not _load(orchestrator, args.zip):
            return 1

        def progress(index: int, total: int, row) -> None:
            print(f"  [{index}/{total}] {row.account_key} -> {row.contact_email}")

        if args.retry_failed:
            result = orchestrator.retry_failed(on_progress=progress)
        else:
            result = orchestrator.send_all_pending(on_progress=progress)

        if orchestrator.action_error:
            print(f"\n{orchestrator.action_error}")
        for row_id in result.row_ids:
            state = orchestrator.state_of(row_id)
            if state.error:
                print(f"  FAILED {orchestrator.row(row_id).account_key}: {state.error}")

        label = "validated" if args.dry_run else "sent"
        print(f"\n{result.attempted} attempted, {result.sent} {label}, {result.failed} failed")
        return 0 if result.failed == 0 else 1
    finally:
        orchestrator.close()


def cmd_history(cfg: AppConfig, args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(cfg)
    entries = orchestrator.send_log.history(args.archive, limit=args.limit)
    for entry in entries:
        row = entry.to_dict()
        print(f"  {row['sent_at'][:19]}  {row['status']:<6s}  {row['account_key']:<14s} "
              f"{row['to_email']:<32s} {row['error']}")
    print(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")

    if args.xlsx:
        path = orchestrator.send_log.export_xlsx(args.xlsx, entries)
        print(f"Exported to: {path}")
    return 0


def cmd_import_contacts(cfg: AppConfig, args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(cfg)
    loaded = load_contacts_workbook(args.xlsx, sheet=args.sheet)
    for warning in loaded.warnings:
        print(f"  ! {warning}")

    summary = orchestrator.contacts.import_contacts(loaded.contacts)
    for error in summary.errors:
        print(f"  ! {error}")
    print(f"\n{summary.created} created, {summary.updated} updated, {summary.skipped} skipped")
    return 0


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="billmail",
        description="Bill Mailer - send bill PDFs from an archive to their contacts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  billmail summary bills.zip\n"
            "  billmail send bills.zip --dry-run\n"
            "  billmail history --xlsx output/send_log.xlsx\n"
        ),
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config.yaml (default: project root config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose (DEBUG) logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("summary", help="Parse an archive and list its rows")
    p.add_argument("zip", help="Path to the bill archive")
    p.set_defaults(func=cmd_summary)

    p = sub.add_parser("send", help="Send every pending row of an archive")
    p.add_argument("zip", help="Path to the bill archive")
    p.add_argument("--retry-failed", action="store_true",
                   help="Only resend rows whose last logged attempt failed")
    p.add_argument("--no-skip-sent", action="store_true",
                   help="Also send rows the send log already shows as sent")
    p.add_argument("--dry-run", action="store_true",
                   help="Validate every send without contacting the mail server")
    p.set_defaults(func=cmd_send)

    p = sub.add_parser("history", help="Show recent send log entries")
    p.add_argument("--archive", default=None, help="Only entries for this archive filename")
    p.add_argument("--limit", type=int, default=200)
    p.add_argument("--xlsx", default=None, help="Also export the entries to this XLSX path")
    p.set_defaults(func=cmd_history)

    p = sub.add_parser("import-contacts", help="Load contacts from an XLSX workbook")
    p.add_argument("xlsx", help="Path to the contacts workbook")
    p.add_argument("--sheet", default=None, help="Sheet name (default: active sheet)")
    p.set_defaults(func=cmd_import_contacts)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    args = build_parser().parse_args(argv)

    try:
        cfg = get_config(args.config)
        configure_logging(cfg.logging, args.verbose)
        return args.func(cfg, args)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except ValueError as exc:
        logger.error("Data error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
