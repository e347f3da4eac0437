"""
Bill Mailer -- Streamlit Admin Console

Upload a ZIP of bill PDFs, review which bills can be sent, and mail them
to their contacts one by one or in bulk.

Usage:
    streamlit run app.py

Pages:
    Send      upload, review table, per-row and bulk sends
    Contacts  directory search, add, edit, delete, spreadsheet import
    History   send log, XLSX export
    Settings  operator sign-in and mail configuration status
"""

from __future__ import annotations

import io
import logging
import sys
import tempfile
from datetime import datetime
from pathlib import Path

import streamlit as st

# ---------------------------------------------------------------------------
# Project root setup -- ensure billmail/ is importable from a checkout
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from billmail.auth import AccessPolicy, StaticIdentity
from billmail.config import AppConfig, ConfigError, get_config
from billmail.contact_import import load_contacts_workbook
from billmail.main import configure_logging
from billmail.models import ReviewStatus, SendState
from billmail.orchestrator import SendOrchestrator
from billmail.review import (
    ReviewFilter,
    UploadTracker,
    build_items,
    count_by_status,
    selectable_ids,
    selection_state,
    visible_items,
)

logger = logging.getLogger("billmail.console")


# ---------------------------------------------------------------------------
# Colors & Page Config
# ---------------------------------------------------------------------------

BRAND_DARK = "#1f3b57"
BRAND_ACCENT = "#3c7dbf"

STATUS_COLORS = {
    "Pending": {"bg": "#e2e3e5", "text": "#383d41"},
    "Blocked": {"bg": "#fff3cd", "text": "#856404"},
    "Sent":    {"bg": "#d4edda", "text": "#155724"},
    "Failed":  {"bg": "#f8d7da", "text": "#721c24"},
}

st.set_page_config(
    page_title="Bill Mailer",
    page_icon="",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown(f"""
<style>
    .console-header {{
        background: linear-gradient(135deg, {BRAND_DARK}, {BRAND_ACCENT});
        color: #ffffff;
        padding: 1rem 1.5rem;
        border-radius: 8px;
        margin-bottom: 1.5rem;
    }}
    .console-header h1 {{
        color: #ffffff !important;
        margin: 0 !important;
        font-size: 1.6rem !important;
    }}
    .console-header p {{
        margin: 0.25rem 0 0 0;
        font-size: 0.9rem;
        opacity: 0.85;
    }}
    .status-badge {{
        display: inline-block;
        padding: 3px 10px;
        border-radius: 12px;
        font-size: 0.75rem;
        font-weight: 600;
        text-transform: uppercase;
    }}
    #MainMenu {{visibility: hidden;}}
    footer {{visibility: hidden;}}
</style>
""", unsafe_allow_html=True)


# ---------------------------------------------------------------------------
# Session State Initialization
# ---------------------------------------------------------------------------

def _load_config() -> AppConfig:
    """Load and validate configuration; stop the page on errors."""
    try:
        return get_config().validate()
    except ConfigError as exc:
        st.error(f"Cannot start: {exc}")
        st.stop()


def init_session_state():
    """Create the per-browser-session orchestrator and UI state once."""
    if "orchestrator" in st.session_state:
        return

    cfg = _load_config()
    configure_logging(cfg.logging)
    identity = StaticIdentity.from_settings(AccessPolicy.from_settings(cfg.access), cfg.operator)

    defaults = {
        "config": cfg,
        "identity": identity,
        "orchestrator": SendOrchestrator.from_config(cfg, identity),
        "page": "send",
        "upload_tracker": UploadTracker(),
        "review_filter": ReviewFilter.ALL.value,
        "search": "",
        "show_only_pending": False,
        "selection_generation": 0,  # bumped to reset checkbox widgets
        "add_contact_key": None,
        "view_row_id": None,
        "last_bulk_result": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


init_session_state()


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def status_badge_html(status: str) -> str:
    colors = STATUS_COLORS.get(status, {"bg": "#e2e3e5", "text": "#383d41"})
    return (
        f'<span class="status-badge" style="background:{colors["bg"]};'
        f'color:{colors["text"]}">{status}</span>'
    )


def header(title: str, subtitle: str) -> None:
    st.markdown(
        f'<div class="console-header"><h1>{title}</h1><p>{subtitle}</p></div>',
        unsafe_allow_html=True,
    )


def _orchestrator() -> SendOrchestrator:
    return st.session_state.orchestrator


def _reset_selection_widgets() -> None:
    st.session_state.selection_generation += 1


def _progress_callback(progress_bar):
    def update(index: int, total: int, row) -> None:
        progress_bar.progress(
            index / total,
            text=f"Sending {index}/{total}: {row.account_key}...",
        )
    return update


def _run_bulk(action: str) -> None:
    """Run one bulk mode with a progress bar, then rerun the page."""
    orchestrator = _orchestrator()
    progress_bar = st.progress(0, text="Sending emails...")
    runner = {
        "pending": orchestrator.send_all_pending,
        "selected": orchestrator.send_selected,
        "failed": orchestrator.retry_failed,
    }[action]
    result = runner(on_progress=_progress_callback(progress_bar))
    progress_bar.empty()
    st.session_state.last_bulk_result = result if result.started else None
    st.rerun()


# ---------------------------------------------------------------------------
# Sidebar
# ---------------------------------------------------------------------------

def render_sidebar():
    """Operator identity, upload, and navigation."""
    orchestrator = _orchestrator()
    actor = st.session_state.identity()

    with st.sidebar:
        st.markdown(f"""
        <div style="text-align: center; padding: 0.5rem 0 1rem 0;">
            <div style="font-size: 1.6rem; font-weight: 700; color: {BRAND_DARK};">
                Bill Mailer
            </div>
        </div>
        """, unsafe_allow_html=True)

        if actor.authenticated:
            st.caption(f"Signed in as **{actor.email}**" + ("" if actor.is_admin else " (no admin access)"))
        else:
            st.caption("No operator -- set BILLMAIL_OPERATOR_EMAIL")

        st.markdown("---")
        st.markdown("### Upload Bills")

        uploaded_file = st.file_uploader(
            "Bill archive (.zip)",
            type=["zip"],
            help="One ZIP of bill PDFs, with or without manifest.json.",
            disabled=orchestrator.is_sending,
        )
        tracker: UploadTracker = st.session_state.upload_tracker
        if uploaded_file is None:
            tracker.clear()
        elif tracker.needs_load(uploaded_file.name, uploaded_file.size):
            orchestrator.load_archive(uploaded_file.getvalue(), uploaded_file.name)
            if not orchestrator.action_error:
                tracker.loaded(uploaded_file.name, uploaded_file.size)
                st.session_state.last_bulk_result = None
                st.session_state.view_row_id = None
                st.session_state.add_contact_key = None
                _reset_selection_widgets()

        st.markdown("---")
        st.markdown("### Navigation")

        nav_options = {
            "send": "Send Bills",
            "contacts": "Contacts",
            "history": "History",
            "settings": "Settings",
        }
        for key, label in nav_options.items():
            if st.button(
                label,
                use_container_width=True,
                type="primary" if st.session_state.page == key else "secondary",
            ):
                st.session_state.page = key
                st.rerun()


# ---------------------------------------------------------------------------
# MAIN: Send Page
# ---------------------------------------------------------------------------

def render_send_page():
    orchestrator = _orchestrator()
    session = orchestrator.session

    header("Send Bills", "Review the uploaded archive and mail each bill to its contact")

    for message in session.messages:
        st.info(message)
    if orchestrator.action_error:
        st.error(orchestrator.action_error)

    if session.summary is None:
        st.info("Upload a bill archive in the sidebar to get started.")
        return

    summary = session.summary
    st.markdown(
        f"**{summary.archive_filename}** -- {summary.row_count} bill(s) "
        f"read via {summary.source.value}"
    )
    if not session.rows:
        return

    items = build_items(session.rows, session.send_states, session.last_status)
    counts = count_by_status(items)

    stat_cols = st.columns(4)
    for col, status in zip(stat_cols, ReviewStatus):
        with col:
            st.metric(status.value, counts[status])

    # ---------------------------------------------------------------
    # Bulk actions
    # ---------------------------------------------------------------
    busy = orchestrator.is_sending
    orchestrator.skip_already_sent = st.toggle(
        "Skip rows already sent for this archive",
        value=orchestrator.skip_already_sent,
        help="Uses the send log, so re-uploading the same ZIP does not mail anyone twice.",
    )

    selected_count = len(orchestrator.selected_rows())
    action_cols = st.columns(3)
    with action_cols[0]:
        if st.button("Send All Pending", type="primary", disabled=busy or counts[ReviewStatus.PENDING] == 0):
            _run_bulk("pending")
    with action_cols[1]:
        if st.button(f"Send Selected ({selected_count})", disabled=busy or selected_count == 0):
            _run_bulk("selected")
    with action_cols[2]:
        if st.button("Retry Failed", disabled=busy or counts[ReviewStatus.FAILED] == 0):
            _run_bulk("failed")

    result = st.session_state.last_bulk_result
    if result is not None:
        if result.failed == 0:
            st.success(f"Sent {result.sent} of {result.attempted} bill(s).")
        else:
            st.warning(f"Sent {result.sent}, failed {result.failed}. See row errors below.")

    # ---------------------------------------------------------------
    # Filters
    # ---------------------------------------------------------------
    filter_cols = st.columns([1.5, 2, 1])
    with filter_cols[0]:
        st.session_state.review_filter = st.selectbox(
            "Status",
            options=[f.value for f in ReviewFilter],
            index=[f.value for f in ReviewFilter].index(st.session_state.review_filter),
        )
    with filter_cols[1]:
        st.session_state.search = st.text_input(
            "Search", value=st.session_state.search, placeholder="Account key, name or email",
        )
    with filter_cols[2]:
        st.session_state.show_only_pending = st.checkbox(
            "Only pending", value=st.session_state.show_only_pending,
        )

    visible = visible_items(
        items,
        ReviewFilter(st.session_state.review_filter),
        st.session_state.search,
        st.session_state.show_only_pending,
    )
    render_review_table(visible, len(items))


def render_review_table(visible, total: int) -> None:
    orchestrator = _orchestrator()
    generation = st.session_state.selection_generation

    if not visible:
        st.info("No rows match the current filters.")
        return

    st.markdown(f"**Showing {len(visible)} of {total} rows**")

    state = selection_state(visible, orchestrator.session.selected)
    all_checked = st.checkbox(
        "Select all visible pending rows",
        value=state == "all",
        key=f"select_all_{generation}",
        disabled=not selectable_ids(visible),
    )
    if all_checked != (state == "all"):
        orchestrator.select_many(selectable_ids(visible), all_checked)
        _reset_selection_widgets()
        st.rerun()

    header_cols = st.columns([0.4, 1.2, 2.4, 2, 1, 2.4])
    for col, label in zip(header_cols, ["", "Account", "Contact", "PDF", "Status", "Actions"]):
        with col:
            st.markdown(f"**{label}**")
    st.markdown("---")

    for item in visible:
        row = item.row
        row_id = item.row_id
        row_cols = st.columns([0.4, 1.2, 2.4, 2, 1, 2.4])

        with row_cols[0]:
            checked = st.checkbox(
                "select",
                value=row_id in orchestrator.session.selected,
                key=f"sel_{generation}_{row_id}",
                disabled=not row.is_pending,
                label_visibility="collapsed",
            )
            orchestrator.select(row_id, checked)

        with row_cols[1]:
            st.markdown(f"**{row.account_key}**")
            if row.trade_date:
                st.caption(row.trade_date)

        with row_cols[2]:
            if row.contact_email:
                st.markdown(f"{row.contact_name or ''}  \n{row.contact_email}")
            else:
                st.markdown(":orange[No contact]")

        with row_cols[3]:
            st.markdown(row.pdf_filename)

        with row_cols[4]:
            st.markdown(status_badge_html(item.status.value), unsafe_allow_html=True)
            if item.send_state.error:
                st.caption(item.send_state.error)
            elif item.last_status is not None and item.last_status.sent_at is not None:
                st.caption(f"last {item.last_status.status.value if item.last_status.status else '?'} "
                           f"{item.last_status.sent_at:%Y-%m-%d %H:%M}")

        with row_cols[5]:
            btn_cols = st.columns(2)
            with btn_cols[0]:
                if row.is_pending:
                    sending = item.send_state.state is SendState.SENDING
                    label = "Retry" if item.status is ReviewStatus.FAILED else "Send"
                    if st.button(label, key=f"send_{row_id}",
                                 disabled=sending or item.send_state.state is SendState.SENT):
                        orchestrator.send_row(row_id)
                        st.rerun()
                else:
                    if st.button("Add contact", key=f"add_{row_id}"):
                        st.session_state.add_contact_key = row.account_key
                        st.rerun()
            with btn_cols[1]:
                if st.button("View PDF", key=f"view_{row_id}"):
                    st.session_state.view_row_id = row_id
                    st.rerun()

        if st.session_state.view_row_id == row_id:
            pdf = orchestrator.pdf_bytes(row_id)
            if pdf is None:
                st.error(orchestrator.action_error)
            else:
                st.download_button(
                    f"Download {row.pdf_filename}",
                    pdf,
                    file_name=row.pdf_filename,
                    mime="application/pdf",
                    key=f"download_{row_id}",
                )

        if st.session_state.add_contact_key == row.account_key and not row.is_pending:
            render_add_contact_form(row.account_key, row_id)


def render_add_contact_form(account_key: str, row_id: str) -> None:
    orchestrator = _orchestrator()
    with st.form(key=f"add_contact_{row_id}"):
        st.markdown(f"**New contact for {account_key}**")
        name = st.text_input("Name", key=f"add_name_{row_id}")
        email = st.text_input("Email", key=f"add_email_{row_id}")
        form_cols = st.columns(2)
        with form_cols[0]:
            submitted = st.form_submit_button("Save", type="primary")
        with form_cols[1]:
            cancelled = st.form_submit_button("Cancel")

    if cancelled:
        st.session_state.add_contact_key = None
        st.rerun()
    if submitted:
        result = orchestrator.add_contact(account_key, name, email)
        if result.ok:
            st.session_state.add_contact_key = None
            st.rerun()
        st.error(result.error)


# ---------------------------------------------------------------------------
# MAIN: Contacts Page
# ---------------------------------------------------------------------------

def render_contacts_page():
    directory = _orchestrator().contacts
    header("Contacts", "Recipients matched to bills by account key")

    with st.expander("Add contact"):
        with st.form("new_contact", clear_on_submit=True):
            key = st.text_input("Account key")
            name = st.text_input("Name")
            email = st.text_input("Email")
            if st.form_submit_button("Create", type="primary"):
                result = directory.create(key, email, name)
                if result.ok:
                    st.success(f"Created {key.strip()}")
                else:
                    st.error(result.error)

    with st.expander("Import from spreadsheet"):
        workbook = st.file_uploader("Contacts workbook (.xlsx)", type=["xlsx"], key="contacts_xlsx")
        if workbook is not None and st.button("Import"):
            try:
                loaded = load_contacts_workbook(io.BytesIO(workbook.getvalue()))
            except ValueError as exc:
                st.error(str(exc))
            else:
                summary = directory.import_contacts(loaded.contacts)
                st.success(
                    f"{summary.created} created, {summary.updated} updated, {summary.skipped} skipped"
                )
                for warning in loaded.warnings + summary.errors:
                    st.caption(warning)

    search = st.text_input("Search contacts", placeholder="Account key, name or email")
    contacts = directory.list_contacts(search)
    st.markdown(f"**{len(contacts)} contact(s)**")

    for contact in contacts:
        with st.expander(f"{contact.account_key} -- {contact.display_name} <{contact.email}>"):
            with st.form(f"edit_{contact.account_key}"):
                name = st.text_input("Name", value=contact.name or "")
                email = st.text_input("Email", value=contact.email)
                edit_cols = st.columns(2)
                with edit_cols[0]:
                    save = st.form_submit_button("Save")
                with edit_cols[1]:
                    delete = st.form_submit_button("Delete")
            if save:
                result = directory.update(contact.account_key, email, name)
                if result.ok:
                    st.rerun()
                st.error(result.error)
            if delete:
                result = directory.delete(contact.account_key)
                if result.ok:
                    st.rerun()
                st.error(result.error)


# ---------------------------------------------------------------------------
# MAIN: History Page
# ---------------------------------------------------------------------------

def render_history_page():
    send_log = _orchestrator().send_log
    session = _orchestrator().session
    header("Send History", "Every send attempt, newest first")

    only_current = st.checkbox(
        "Only the current archive",
        value=bool(session.archive_filename),
        disabled=not session.archive_filename,
    )
    entries = send_log.history(session.archive_filename if only_current else None)

    if not entries:
        st.info("No send attempts recorded yet.")
        return

    st.dataframe([entry.to_dict() for entry in entries], use_container_width=True, hide_index=True)

    with tempfile.TemporaryDirectory() as tmp:
        path = send_log.export_xlsx(Path(tmp) / "send_log.xlsx", entries)
        st.download_button(
            "Download as XLSX",
            path.read_bytes(),
            file_name=f"send_log_{datetime.now().strftime('%Y%m%d')}.xlsx",
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )


# ---------------------------------------------------------------------------
# MAIN: Settings Page
# ---------------------------------------------------------------------------

def render_settings_page():
    cfg: AppConfig = st.session_state.config
    identity: StaticIdentity = st.session_state.identity
    header("Settings", "Operator identity and mail configuration")

    st.markdown("### Operator")
    actor = identity()
    if actor.authenticated:
        role = f", role {actor.role}" if actor.role else ""
        st.markdown(f"Signed in as **{actor.email}**{role}")
        if not actor.is_admin:
            st.warning("This account does not have admin access.")
        if st.button("Sign out"):
            identity.sign_out()
            st.rerun()
    else:
        st.info("Signed out. Reload the page to start a new session.")
    st.caption(
        "The operator is set by BILLMAIL_OPERATOR_EMAIL or the operator section of config.yaml. "
        "Admin access comes from access.admin_emails or the role assigned in access.roles."
    )

    st.markdown("---")
    st.markdown("### Mail")
    try:
        cfg.validate(require_mail=True)
    except ConfigError as exc:
        st.error(str(exc))
    else:
        st.success(f"Sending as **{cfg.mail.sender_email}** via {cfg.mail.host}:{cfg.mail.port}")
    st.caption("SMTP credentials and the sender address are read from BILLMAIL_* environment variables.")


# ---------------------------------------------------------------------------
# MAIN: Router
# ---------------------------------------------------------------------------

def main():
    """Main application entry point -- routes to the active page."""
    render_sidebar()

    page = st.session_state.page
    if page == "contacts":
        render_contacts_page()
    elif page == "history":
        render_history_page()
    elif page == "settings":
        render_settings_page()
    else:
        render_send_page()


if __name__ == "__main__":
    main()
