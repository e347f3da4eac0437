"""Bill Mailer - archive reconciliation and send orchestration.

Parses uploaded ZIP archives of bill PDFs, matches each bill to a
recipient in the contact directory by account key, and mails every PDF
as an attachment, recording each attempt in an append-only send log.

The SendOrchestrator ties the pieces together for the Streamlit console
(app.py) and the ``billmail`` command line.
"""

from .models import (
    ArchiveSummary,
    BillingRecord,
    Contact,
    LastSendStatus,
    LogStatus,
    ParseSource,
    ReconciledRow,
    ReviewStatus,
    RowSendState,
    RowStatus,
    SendLogEntry,
    SendState,
)

from .orchestrator import SendOrchestrator

__all__ = [
    "ArchiveSummary",
    "BillingRecord",
    "Contact",
    "LastSendStatus",
    "LogStatus",
    "ParseSource",
    "ReconciledRow",
    "ReviewStatus",
    "RowSendState",
    "RowStatus",
    "SendLogEntry",
    "SendOrchestrator",
    "SendState",
]
