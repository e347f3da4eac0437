"""Tests for billmail.mailer -- masking, message building and SendService.

Covers:
- Email masking and error sanitizing
- Subject and body rendering
- MIME structure (one text part, one PDF part)
- Request validation order and audit entries
- Transport failures, missing message ids, dry runs
"""

import base64
import smtplib
from email import message_from_string

import pytest

from billmail.mailer import (
    MSG_ARCHIVE_REQUIRED,
    MSG_ATTACHMENT_NOT_BASE64,
    MSG_ATTACHMENT_REQUIRED,
    MSG_EMAIL_INVALID,
    MSG_FILENAME_NOT_PDF,
    MSG_KEY_REQUIRED,
    MSG_NOT_AUTHORIZED,
    MSG_SEND_FAILED,
    MSG_SENDER_INVALID,
    BodyRenderer,
    MailError,
    OutgoingMail,
    SendRequest,
    SendService,
    SmtpTransport,
    build_message,
    build_subject,
    encode_attachment,
    mask_email,
    sanitize_error,
)
from billmail.config import MailSettings
from billmail.models import LogStatus

PDF = b"%PDF-1.4 bill"


def _request(**overrides):
    defaults = dict(
        archive_filename="bills.zip",
        account_key="PR20",
        trade_date="2024-01-05",
        to_email="alice@example.com",
        to_name="Alice",
        filename="Bill_PR20_2024-01-05.pdf",
        attachment_base64=encode_attachment(PDF),
    )
    defaults.update(overrides)
    return SendRequest(**defaults)


# ============================================================================
# Masking
# ============================================================================

class TestMasking:

    @pytest.mark.parametrize("email, masked", [
        ("john@example.com", "jo***@example.com"),
        ("John.Doe@Example.COM", "jo***@example.com"),
        ("ab@example.com", "a***@example.com"),
        ("a@example.com", "a***@example.com"),
        ("no-at-sign", "***"),
        ("", "***"),
    ])
    def test_mask_email(self, email, masked):
        assert mask_email(email) == masked

    def test_sanitize_masks_every_address(self):
        text = "Recipient john@example.com rejected, cc Mary.Smith@corp.example.org too"
        cleaned = sanitize_error(text)
        assert "john@example.com" not in cleaned
        assert "jo***@example.com" in cleaned
        assert "ma***@corp.example.org" in cleaned

    def test_sanitize_blank_falls_back(self):
        assert sanitize_error("") == MSG_SEND_FAILED
        assert sanitize_error(None) == MSG_SEND_FAILED


# ============================================================================
# Content
# ============================================================================

class TestContent:

    def test_subject(self):
        assert build_subject("PR20", "2024-01-05") == "Bill PR20 2024-01-05"
        assert build_subject("PR20") == "Bill PR20"

    def test_body_greets_by_name(self):
        body = BodyRenderer().render("PR20", "Alice", "2024-01-05", "Billing Team")
        assert body.startswith("Hi Alice,")
        assert "Attached is your bill for 2024-01-05." in body
        assert "Billing Team" in body

    def test_body_falls_back_to_key(self):
        body = BodyRenderer().render("PR20", None, None, "Billing Team")
        assert body.startswith("Hi PR20,")
        assert "Attached is your bill." in body

    def test_message_structure(self):
        msg = build_message(OutgoingMail(
            sender_email="billing@example.com",
            sender_name="Billing",
            to_email="alice@example.com",
            to_name='Ali"ce',
            subject="Bill PR20",
            body="Hi",
            attachment_filename='Bill_"PR20".pdf',
            attachment=PDF,
        ))
        parsed = message_from_string(msg.as_string())
        parts = parsed.get_payload()

        assert parsed.get_content_type() == "multipart/mixed"
        assert [p.get_content_type() for p in parts] == ["text/plain", "application/pdf"]
        assert parts[1].get_filename() == "Bill_PR20.pdf"
        assert parts[1].get_payload(decode=True) == PDF
        assert parsed["To"] == "Alice <alice@example.com>"


# ============================================================================
# SendService
# ============================================================================

class TestSendService:

    def test_success_logs_sent(self, service, transport, send_log):
        response = service.send(_request())

        assert response.ok
        assert response.message_id == "<msg-1@example.com>"
        mail = transport.sent[0]
        assert mail.to_email == "alice@example.com"
        assert mail.subject == "Bill PR20 2024-01-05"
        assert mail.attachment == PDF

        entry = send_log.history()[0]
        assert entry.status is LogStatus.SENT
        assert entry.account_key == "PR20"
        assert entry.to_email == "alice@example.com"
        assert entry.message_id == "<msg-1@example.com>"
        assert entry.sender_identity == "user-1"

    def test_transport_error_is_masked_and_logged(self, service, transport, send_log):
        transport.fail_with = MailError("550 mailbox john.doe@example.com unavailable")
        response = service.send(_request())

        assert not response.ok
        assert "john.doe@example.com" not in response.error
        assert "jo***@example.com" in response.error
        entry = send_log.history()[0]
        assert entry.status is LogStatus.FAILED
        assert entry.error == response.error

    def test_missing_message_id(self, service, transport, send_log):
        transport.message_id = ""
        response = service.send(_request())
        assert response.error == MSG_SEND_FAILED
        assert send_log.history()[0].status is LogStatus.FAILED

    @pytest.mark.parametrize("overrides, error", [
        ({"to_email": "not-an-email"}, MSG_EMAIL_INVALID),
        ({"filename": "bill.txt"}, MSG_FILENAME_NOT_PDF),
        ({"attachment_base64": ""}, MSG_ATTACHMENT_REQUIRED),
        ({"attachment_base64": "%%%not base64%%%"}, MSG_ATTACHMENT_NOT_BASE64),
        ({"attachment_base64": "===="}, MSG_ATTACHMENT_NOT_BASE64),
    ])
    def test_validation_failures_are_logged(self, service, transport, send_log, overrides, error):
        response = service.send(_request(**overrides))

        assert response.error == error
        assert transport.sent == []
        entry = send_log.history()[0]
        assert entry.status is LogStatus.FAILED
        assert entry.error == error

    def test_blank_attachment_is_required(self, service, transport):
        assert service.send(_request(attachment_base64="   ")).error == MSG_ATTACHMENT_REQUIRED
        assert transport.sent == []

    @pytest.mark.parametrize("overrides, error", [
        ({"archive_filename": "  "}, MSG_ARCHIVE_REQUIRED),
        ({"account_key": ""}, MSG_KEY_REQUIRED),
    ])
    def test_unkeyed_requests_are_not_logged(self, service, send_log, overrides, error):
        assert service.send(_request(**overrides)).error == error
        assert send_log.history() == []

    def test_missing_sender_is_logged(self, config, transport, send_log, admin):
        config.mail.sender_email = ""
        service = SendService(config.mail, transport, send_log, admin)

        assert service.send(_request()).error == MSG_SENDER_INVALID
        assert transport.sent == []
        assert send_log.history()[0].error == MSG_SENDER_INVALID

    def test_not_authorized(self, config, transport, send_log, viewer):
        service = SendService(config.mail, transport, send_log, viewer)
        assert service.send(_request()).error == MSG_NOT_AUTHORIZED
        assert transport.sent == []

    def test_dry_run(self, service, transport, send_log):
        response = service.send(_request(), dry_run=True)
        assert response.ok and response.dry_run
        assert transport.sent == []
        assert send_log.history() == []

    def test_audit_write_failure_does_not_change_outcome(self, service, send_log, monkeypatch):
        monkeypatch.setattr(send_log, "append", lambda entry: False)
        assert service.send(_request()).ok

    def test_normalizes_recipient(self, service, transport):
        service.send(_request(to_email="  Alice@Example.COM ", to_name="  "))
        assert transport.sent[0].to_email == "alice@example.com"
        assert transport.sent[0].to_name is None


# ============================================================================
# SmtpTransport
# ============================================================================

class _FakeSMTP:
    instances = []
    login_error = None

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.calls = []
        _FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, user, password):
        if _FakeSMTP.login_error:
            raise _FakeSMTP.login_error
        self.calls.append(("login", user))

    def sendmail(self, sender, recipients, raw):
        self.calls.append(("sendmail", sender, tuple(recipients)))
        self.raw = raw
        return {}


class TestSmtpTransport:

    @pytest.fixture(autouse=True)
    def fake_smtp(self, monkeypatch):
        _FakeSMTP.instances = []
        _FakeSMTP.login_error = None
        monkeypatch.setattr(smtplib, "SMTP", _FakeSMTP)

    def _mail(self):
        return OutgoingMail(
            sender_email="billing@example.com",
            to_email="alice@example.com",
            subject="Bill PR20",
            body="Hi",
            attachment_filename="Bill_PR20.pdf",
            attachment=PDF,
        )

    def test_send_returns_message_id(self):
        settings = MailSettings(username="u", password="p")
        message_id = SmtpTransport(settings).send(self._mail())

        server = _FakeSMTP.instances[0]
        assert message_id.endswith("@example.com>")
        assert server.calls[0] == "starttls"
        assert ("login", "u") in server.calls
        assert ("sendmail", "billing@example.com", ("alice@example.com",)) in server.calls
        assert f"Message-ID: {message_id}" in server.raw

    def test_auth_failure_becomes_mail_error(self):
        _FakeSMTP.login_error = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with pytest.raises(MailError, match="authentication failed"):
            SmtpTransport(MailSettings(username="u", password="p")).send(self._mail())

    def test_decoded_payload_round_trip(self):
        SmtpTransport(MailSettings(use_tls=False)).send(self._mail())
        parsed = message_from_string(_FakeSMTP.instances[0].raw)
        assert base64.b64decode(parsed.get_payload()[1].get_payload()) == PDF
