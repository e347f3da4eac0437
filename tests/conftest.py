"""Shared fixtures: temporary database, identities, in-memory archives, fake transport."""

import io
import json
import zipfile

import pytest

from billmail.auth import AccessPolicy, StaticIdentity
from billmail.config import AccessSettings, AppConfig, MailSettings, StorageSettings
from billmail.contacts import ContactDirectory
from billmail.mailer import SendService
from billmail.orchestrator import SendOrchestrator
from billmail.send_log import SendLog
from billmail.storage import Database

ADMIN_EMAIL = "ops@example.com"
PDF_BYTES = b"%PDF-1.4\n% fake bill\n%%EOF\n"


class FakeTransport:
    """Records every mail instead of sending it.

    ``fail_with`` makes every send raise that exception; ``message_id``
    is returned otherwise (set it to "" to simulate a missing id).
    ``on_send`` is called with the mail before returning, so tests can
    inspect orchestrator state mid-send.
    """

    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.message_id = "<msg-1@example.com>"
        self.on_send = None

    def send(self, mail):
        self.sent.append(mail)
        if self.on_send is not None:
            self.on_send(mail)
        if self.fail_with is not None:
            raise self.fail_with
        return self.message_id


@pytest.fixture
def make_zip():
    """Factory: {entry name: bytes | str | dict} -> ZIP bytes.  dict values become JSON."""

    def _make(entries):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            for name, content in entries.items():
                if isinstance(content, dict):
                    content = json.dumps(content)
                if isinstance(content, str):
                    content = content.encode("utf-8")
                zf.writestr(name, content)
        return buf.getvalue()

    return _make


@pytest.fixture
def manifest_zip(make_zip):
    """The PR20 manifest archive used across scenarios."""
    return make_zip({
        "manifest.json": {
            "trade_date": "2024-01-05",
            "success": [{"key": "PR20", "pdf": "Bill_PR20_2024-01-05.pdf"}],
        },
        "Bill_PR20_2024-01-05.pdf": PDF_BYTES,
    })


@pytest.fixture
def policy():
    return AccessPolicy([ADMIN_EMAIL])


@pytest.fixture
def admin(policy):
    return StaticIdentity(policy, ADMIN_EMAIL, user_id="user-1")


@pytest.fixture
def viewer(policy):
    return StaticIdentity(policy, "someone@example.com")


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "billmail.db")


@pytest.fixture
def directory(db, admin):
    return ContactDirectory(db, admin)


@pytest.fixture
def send_log(db, admin):
    return SendLog(db, admin)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        mail=MailSettings(sender_email="billing@example.com", signature="Billing Team"),
        access=AccessSettings(admin_emails=[ADMIN_EMAIL]),
        storage=StorageSettings(db_path=str(tmp_path / "billmail.db")),
    )


@pytest.fixture
def service(config, transport, send_log, admin):
    return SendService(config.mail, transport, send_log, admin)


@pytest.fixture
def orchestrator(config, directory, send_log, service, admin):
    orch = SendOrchestrator(config, directory, send_log, service, admin)
    yield orch
    orch.close()
