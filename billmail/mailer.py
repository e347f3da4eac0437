"""
Bill Mailer -- Mail Sending

Turns one send request into one outgoing message and exactly one audit
entry.  The message is always multipart/mixed with a single plain-text
part and a single PDF attachment part.

    SendRequest --validate--> OutgoingMail --transport--> message id
                                   |                          |
                                   +------> SendLog.append <--+

Pieces:
  - ``mask_email`` / ``sanitize_error``: scrub addresses out of error text
    before it is shown to the operator or stored
  - ``build_subject`` / ``BodyRenderer``: subject and plain-text body
    (Jinja2 template ``templates/bill_email.txt``)
  - ``SmtpTransport``: delivers through an SMTP relay
  - ``SendService``: request validation, transport call, audit entry

Usage:
    service = SendService(cfg.mail, SmtpTransport(cfg.mail), send_log, identity)
    response = service.send(SendRequest(...))
    if not response.ok:
        print(response.error)
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import smtplib
import ssl
from dataclasses import dataclass
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from .archive_parser import normalize_account_key
from .auth import IdentityProvider
from .config import TEMPLATE_DIR, MailSettings, is_valid_email
from .models import LogStatus, SendLogEntry
from .send_log import SendLog

logger = logging.getLogger(__name__)

BODY_TEMPLATE = "bill_email.txt"

_EMAIL_IN_TEXT = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE)

MSG_NOT_AUTHORIZED = "Not authorized."
MSG_SEND_FAILED = "Failed to send email."
MSG_ARCHIVE_REQUIRED = "Archive filename is required."
MSG_KEY_REQUIRED = "Account key is required."
MSG_EMAIL_INVALID = "Recipient email must be a valid email address."
MSG_FILENAME_NOT_PDF = "Attachment filename must end with .pdf."
MSG_ATTACHMENT_REQUIRED = "Attachment is required."
MSG_ATTACHMENT_NOT_BASE64 = "Attachment must be valid base64."
MSG_ATTACHMENT_EMPTY = "Attachment must be non-empty."
MSG_SENDER_INVALID = "Sender email is missing or invalid."


class MailError(RuntimeError):
    """Raised by a transport when the relay rejects a message."""


# ---------------------------------------------------------------------------
# Error scrubbing
# ---------------------------------------------------------------------------

def mask_email(email: str) -> str:
    """Hide most of the local part of an address.

    >>> mask_email("John.Doe@Example.com")
    'jo***@example.com'
    >>> mask_email("a@example.com")
    'a***@example.com'
    """
    normalized = (email or "").strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or not domain:
        return "***"
    if len(local) <= 2:
        return f"{local[0]}***@{domain}"
    return f"{local[:2]}***@{domain}"


def sanitize_error(message: object) -> str:
    """Error text safe to display and store: every address is masked."""
    text = str(message or "").strip() or MSG_SEND_FAILED
    return _EMAIL_IN_TEXT.sub(lambda m: mask_email(m.group(0)), text)


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------

def build_subject(account_key: str, trade_date: str | None = None) -> str:
    """``Bill {key}``, suffixed with the trade date when known."""
    return f"Bill {account_key} {trade_date}" if trade_date else f"Bill {account_key}"


class BodyRenderer:
    """Renders the plain-text body from a Jinja2 template file."""

    def __init__(self, template_dir: str | Path | None = None):
        self.template_dir = Path(template_dir) if template_dir else TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # plain-text mail
            keep_trailing_newline=True,
        )

    def render(
        self,
        account_key: str,
        to_name: str | None = None,
        trade_date: str | None = None,
        signature: str = "",
    ) -> str:
        template = self.env.get_template(BODY_TEMPLATE)
        return template.render(
            greeting_name=to_name or account_key,
            account_key=account_key,
            trade_date=trade_date,
            signature=signature,
        )


@dataclass
class OutgoingMail:
    """Everything a transport needs to deliver one bill."""

    sender_email: str
    to_email: str
    subject: str
    body: str
    attachment_filename: str
    attachment: bytes
    sender_name: str = ""
    to_name: str | None = None


def build_message(mail: OutgoingMail) -> MIMEMultipart:
    """One text/plain part and one application/pdf attachment."""
    msg = MIMEMultipart("mixed")
    msg["From"] = formataddr((mail.sender_name, mail.sender_email)) if mail.sender_name else mail.sender_email
    msg["To"] = formataddr((mail.to_name.replace('"', ""), mail.to_email)) if mail.to_name else mail.to_email
    msg["Subject"] = mail.subject
    msg["Date"] = formatdate(localtime=False)

    msg.attach(MIMEText(mail.body, "plain", "utf-8"))

    safe_filename = mail.attachment_filename.replace('"', "")
    pdf_part = MIMEBase("application", "pdf", name=safe_filename)
    pdf_part.set_payload(mail.attachment)
    encoders.encode_base64(pdf_part)
    pdf_part.add_header("Content-Disposition", "attachment", filename=safe_filename)
    msg.attach(pdf_part)

    return msg


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class SmtpTransport:
    """Delivers messages through an SMTP relay (STARTTLS + login).

    ``send`` returns the Message-ID it stamped on the message; a relay
    refusal raises :class:`MailError`, connection problems raise the
    underlying ``smtplib``/``OSError`` exception.
    """

    def __init__(self, settings: MailSettings):
        self.settings = settings

    def send(self, mail: OutgoingMail) -> str:
        msg = build_message(mail)
        domain = mail.sender_email.partition("@")[2] or None
        message_id = make_msgid(domain=domain)
        msg["Message-ID"] = message_id

        try:
            with smtplib.SMTP(self.settings.host, int(self.settings.port),
                              timeout=self.settings.timeout_seconds) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.settings.username:
                    server.login(self.settings.username, self.settings.password)
                server.sendmail(mail.sender_email, [mail.to_email], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise MailError("SMTP authentication failed. Check the mail credentials in Settings.") from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise MailError(f"Recipient refused: {exc.recipients}") from exc

        logger.info("Delivered %s to %s", mail.attachment_filename, mask_email(mail.to_email))
        return message_id


# ---------------------------------------------------------------------------
# Send request surface
# ---------------------------------------------------------------------------

@dataclass
class SendRequest:
    """One logical send.  ``attachment_base64`` is the transport-encoded PDF."""

    archive_filename: str
    account_key: str
    to_email: str
    filename: str
    attachment_base64: str
    trade_date: str | None = None
    to_name: str | None = None


@dataclass
class SendResponse:
    ok: bool
    message_id: str | None = None
    error: str | None = None
    dry_run: bool = False


def encode_attachment(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class SendService:
    """Validates a request, hands it to the transport and records the outcome.

    Exactly one audit entry is appended per request that carries an
    archive filename and an account key; requests missing either are
    rejected with no entry, since the entry could not be looked up later.
    Dry runs validate fully and then stop, with no transport call and no
    entry.
    """

    def __init__(
        self,
        settings: MailSettings,
        transport,
        send_log: SendLog,
        identity: IdentityProvider,
        renderer: BodyRenderer | None = None,
    ):
        self.settings = settings
        self.transport = transport
        self.send_log = send_log
        self.identity = identity
        self.renderer = renderer or BodyRenderer()

    def send(self, request: SendRequest, dry_run: bool = False) -> SendResponse:
        actor = self.identity()
        if not actor.is_admin:
            return SendResponse(ok=False, error=MSG_NOT_AUTHORIZED)

        archive_filename = (request.archive_filename or "").strip()
        account_key = normalize_account_key(request.account_key)
        trade_date = (request.trade_date or "").strip() or None
        to_email = (request.to_email or "").strip().lower()
        to_name = (request.to_name or "").strip() or None
        filename = (request.filename or "").strip()

        def conclude(status: LogStatus, error: str | None = None, message_id: str | None = None) -> SendResponse:
            self.send_log.append(SendLogEntry(
                archive_filename=archive_filename,
                account_key=account_key,
                trade_date=trade_date,
                to_email=to_email,
                to_name=to_name,
                status=status,
                error=error,
                message_id=message_id,
                sender_identity=actor.identity,
            ))
            if status is LogStatus.SENT:
                return SendResponse(ok=True, message_id=message_id)
            return SendResponse(ok=False, error=error)

        if not archive_filename:
            return SendResponse(ok=False, error=MSG_ARCHIVE_REQUIRED)
        if not account_key:
            return SendResponse(ok=False, error=MSG_KEY_REQUIRED)

        attachment, error = self._validate(to_email, filename, request.attachment_base64)
        if error:
            logger.warning("Rejected send for %s: %s", account_key, error)
            return conclude(LogStatus.FAILED, error=error)

        sender_email = (self.settings.sender_email or "").strip()
        if not is_valid_email(sender_email):
            logger.error("Cannot send %s: %s", account_key, MSG_SENDER_INVALID)
            return conclude(LogStatus.FAILED, error=MSG_SENDER_INVALID)

        if dry_run:
            logger.info("Dry run: %s to %s validated", filename, mask_email(to_email))
            return SendResponse(ok=True, dry_run=True)

        mail = OutgoingMail(
            sender_email=sender_email,
            sender_name=self.settings.sender_name,
            to_email=to_email,
            to_name=to_name,
            subject=build_subject(account_key, trade_date),
            body=self.renderer.render(account_key, to_name, trade_date, self.settings.signature),
            attachment_filename=filename,
            attachment=attachment,
        )

        try:
            message_id = self.transport.send(mail)
        except Exception as exc:
            message = sanitize_error(exc)
            logger.warning(
                "Send failed for %s to %s: %s", account_key, mask_email(to_email), message,
            )
            return conclude(LogStatus.FAILED, error=message)

        if not message_id:
            return conclude(LogStatus.FAILED, error=MSG_SEND_FAILED)

        return conclude(LogStatus.SENT, message_id=message_id)

    @staticmethod
    def _validate(to_email: str, filename: str, attachment_base64: str | None) -> tuple[bytes, str | None]:
        """Decoded attachment and the first validation error, if any."""
        if not is_valid_email(to_email):
            return b"", MSG_EMAIL_INVALID
        if not filename.lower().endswith(".pdf"):
            return b"", MSG_FILENAME_NOT_PDF

        encoded = (attachment_base64 or "").strip()
        if not encoded:
            return b"", MSG_ATTACHMENT_REQUIRED
        try:
            attachment = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return b"", MSG_ATTACHMENT_NOT_BASE64
        if not attachment:
            return b"", MSG_ATTACHMENT_EMPTY
        return attachment, None
