# ==============================================================================
# CONTACT FORM EMAIL RELAY
# ==============================================================================

# --- Standard Library Imports ---
import logging
import smtplib
import socket
from dataclasses import dataclass
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Mapping, Optional

# --- Third-Party Imports ---
from markupsafe import escape
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# Upper bounds applied before anything else touches the submission.
MAX_SHORT_FIELD = 200
MAX_MESSAGE = 5000

SMTP_TIMEOUT_SECONDS = 10

REQUIRED_MESSAGES = {
    "name": "Name is required",
    "email": "Email is required",
    "message": "Message is required",
}
HEADER_LINE_BREAK = "Must not contain line breaks"


class ContactRelayError(Exception):
    """Raised when the mail provider could not accept the message."""


def _clip(value, limit: int) -> str:
    if value is None:
        return ""
    return str(value).strip()[:limit]


class ContactRequest(BaseModel):
    name: str = Field("", min_length=1, validate_default=True)
    email: str = Field("", min_length=1, validate_default=True)
    message: str = Field("", min_length=1, validate_default=True)
    phone: Optional[str] = None
    subject: Optional[str] = None

    @field_validator("name", "email", "phone", "subject", mode="before")
    @classmethod
    def clip_short_field(cls, value):
        return _clip(value, MAX_SHORT_FIELD)

    @field_validator("message", mode="before")
    @classmethod
    def clip_message(cls, value):
        return _clip(value, MAX_MESSAGE)

    @field_validator("name", "email", "phone", "subject")
    @classmethod
    def single_line(cls, value):
        # These values end up in mail headers
        if value and ("\r" in value or "\n" in value):
            raise ValueError(HEADER_LINE_BREAK)
        return value


def parse_contact_body(body):
    """
    Validates a decoded contact-form body.

    Args:
        body: Whatever the request JSON decoded to (may be None or a list).

    Returns:
        tuple: (ContactRequest, None) when valid, otherwise (None, errors)
               where errors maps each offending field to a message.
    """
    if not isinstance(body, dict):
        body = {}
    try:
        return ContactRequest(**body), None
    except ValidationError as e:
        errors = {}
        for err in e.errors():
            field = str(err["loc"][0]) if err["loc"] else "body"
            if err["type"] in ("string_too_short", "missing"):
                message = REQUIRED_MESSAGES.get(field, err["msg"])
            else:
                message = err["msg"].removeprefix("Value error, ")
            errors.setdefault(field, message)
        return None, errors


@dataclass(frozen=True)
class MailSettings:
    smtp_host: str
    smtp_port: int
    username: str
    password: str
    to_address: str
    brand: str = "HILBU"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "MailSettings":
        return cls(
            smtp_host=environ.get("SMTP_HOST", "smtp.office365.com"),
            smtp_port=int(environ.get("SMTP_PORT", "587")),
            username=environ.get("EMAIL_USER", ""),
            password=environ.get("EMAIL_PASS", ""),
            to_address=environ.get("CONTACT_TO_EMAIL", ""),
            brand=environ.get("BRAND_NAME", "HILBU"),
        )

    def missing(self) -> list:
        """Names of the required environment variables that are not set."""
        required = {
            "SMTP_HOST": self.smtp_host,
            "EMAIL_USER": self.username,
            "EMAIL_PASS": self.password,
            "CONTACT_TO_EMAIL": self.to_address,
        }
        return [name for name, value in required.items() if not value]


def build_contact_message(contact: ContactRequest, settings: MailSettings) -> MIMEMultipart:
    subject = contact.subject or "Website enquiry"
    rows = [
        f"<p><strong>Name:</strong> {escape(contact.name)}</p>",
        f"<p><strong>Email:</strong> {escape(contact.email)}</p>",
    ]
    if contact.phone:
        rows.append(f"<p><strong>Phone:</strong> {escape(contact.phone)}</p>")
    rows.append(f"<p><strong>Subject:</strong> {escape(subject)}</p>")
    body_html = str(escape(contact.message)).replace("\n", "<br/>")
    html = (
        '<div style="font-family:Arial,sans-serif;line-height:1.6">'
        f'<h2 style="margin:0 0 10px">New Contact Message ({escape(settings.brand)} Website)</h2>'
        + "".join(rows)
        + f"<hr/><p>{body_html}</p></div>"
    )

    msg = MIMEMultipart("alternative")
    msg["Subject"] = f"{settings.brand} Contact: {subject}"
    msg["From"] = formataddr((f"{settings.brand} Contact", settings.username))
    msg["To"] = settings.to_address
    msg["Reply-To"] = contact.email
    msg.attach(MIMEText(html, "html", "utf-8"))
    return msg


def send_contact_email(contact: ContactRequest, settings: MailSettings) -> None:
    """
    Sends exactly one email for an accepted contact submission.

    Raises:
        ContactRelayError: The SMTP server could not be reached or refused
                           the message. Details are logged here only.
    """
    try:
        msg = build_contact_message(contact, settings)
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            server.starttls()
            server.login(settings.username, settings.password)
            server.sendmail(settings.username, [settings.to_address], msg.as_string())
    except (MessageError, smtplib.SMTPException, socket.timeout, OSError) as e:
        logger.error(f"Contact email relay failed: {e}", exc_info=True)
        raise ContactRelayError("Email send failed") from e
    logger.info("Contact message relayed to %s", settings.to_address)
