"""
Tests for the public contact relay
"""
import smtplib
from email import message_from_string
from email.errors import HeaderParseError

import pytest

import app as app_module
import contact_relay
from contact_relay import MAX_MESSAGE, MAX_SHORT_FIELD, MailSettings, parse_contact_body


class RecordingSMTP:
    """Stands in for smtplib.SMTP and remembers every message handed to it."""

    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        if RecordingSMTP.fail_with:
            raise RecordingSMTP.fail_with

    def sendmail(self, from_addr, to_addrs, msg):
        RecordingSMTP.sent.append((from_addr, to_addrs, message_from_string(msg)))


@pytest.fixture
def smtp(monkeypatch):
    RecordingSMTP.sent = []
    RecordingSMTP.fail_with = None
    monkeypatch.setattr(contact_relay.smtplib, "SMTP", RecordingSMTP)
    return RecordingSMTP


VALID = {"name": "Sara", "email": "sara@example.com", "message": "hello", "subject": "Tow request"}


def test_valid_submission_sends_one_email(client, smtp):
    response = client.post("/api/contact", json=VALID)
    assert response.status_code == 200
    assert response.get_json() == {"ok": True}
    assert len(smtp.sent) == 1
    from_addr, to_addrs, msg = smtp.sent[0]
    assert from_addr == "relay@hilbu.test"
    assert to_addrs == ["support@hilbu.test"]
    assert msg["Reply-To"] == "sara@example.com"
    assert msg["Subject"] == "HILBU Contact: Tow request"
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_empty_name_is_400_and_nothing_sent(client, smtp):
    response = client.post("/api/contact", json={"name": "", "email": "a@b.com", "message": "hello"})
    assert response.status_code == 400
    body = response.get_json()
    assert body["ok"] is False
    assert body["error"] == "Name is required"
    assert set(body["fields"]) == {"name"}
    assert smtp.sent == []


def test_whitespace_only_fields_are_missing(client, smtp):
    response = client.post("/api/contact", json={"name": "  ", "email": " ", "message": "\n"})
    assert response.status_code == 400
    assert set(response.get_json()["fields"]) == {"name", "email", "message"}


def test_omitted_required_field_is_400(client, smtp):
    response = client.post("/api/contact", json={"email": "a@b.com", "message": "hello"})
    assert response.status_code == 400
    body = response.get_json()
    assert body["fields"] == {"name": "Name is required"}
    assert smtp.sent == []


def test_empty_object_names_every_required_field(client, smtp):
    response = client.post("/api/contact", json={})
    assert response.status_code == 400
    assert set(response.get_json()["fields"]) == {"name", "email", "message"}
    assert smtp.sent == []


@pytest.mark.parametrize("field", ["email", "name", "subject"])
def test_line_breaks_in_header_fields_are_400(client, smtp, field):
    body = dict(VALID)
    body[field] = "a@b.com\nBcc: victim@evil.test"
    response = client.post("/api/contact", json=body)
    assert response.status_code == 400
    assert response.get_json()["fields"] == {field: "Must not contain line breaks"}
    assert smtp.sent == []


def test_message_may_span_lines():
    contact, errors = parse_contact_body({"name": "x", "email": "e@x.com", "message": "line one\r\nline two"})
    assert errors is None
    assert "\n" in contact.message


def test_non_json_body_is_400(client, smtp):
    response = client.post("/api/contact", data="name=x", content_type="application/x-www-form-urlencoded")
    assert response.status_code == 400
    assert smtp.sent == []


def test_missing_mail_settings_named(client, smtp, monkeypatch):
    monkeypatch.setitem(
        app_module.app.config, "MAIL_SETTINGS",
        MailSettings(smtp_host="smtp.test.local", smtp_port=587, username="", password="", to_address="x@y.z"),
    )
    response = client.post("/api/contact", json=VALID)
    assert response.status_code == 500
    error = response.get_json()["error"]
    assert "EMAIL_USER" in error and "EMAIL_PASS" in error
    assert smtp.sent == []


def test_provider_failure_is_generic_500(client, smtp):
    smtp.fail_with = smtplib.SMTPAuthenticationError(535, b"5.7.3 Authentication unsuccessful")
    response = client.post("/api/contact", json=VALID)
    assert response.status_code == 500
    error = response.get_json()["error"]
    assert error == "Failed to send message. Please try again later."
    assert "535" not in error


def test_preflight(client):
    response = client.options("/api/contact")
    assert response.status_code == 204
    assert response.headers["Access-Control-Allow-Methods"] == "POST,OPTIONS"


def test_get_is_405(client):
    response = client.get("/api/contact")
    assert response.status_code == 405
    assert response.get_json()["ok"] is False


def test_fields_are_clipped():
    contact, errors = parse_contact_body({
        "name": "n" * 500,
        "email": "e@x.com",
        "message": "m" * 6000,
        "subject": "s" * 300,
    })
    assert errors is None
    assert len(contact.name) == MAX_SHORT_FIELD
    assert len(contact.subject) == MAX_SHORT_FIELD
    assert len(contact.message) == MAX_MESSAGE


def test_message_html_is_escaped(mail_settings):
    contact, _ = parse_contact_body({"name": "<b>x</b>", "email": "e@x.com", "message": "<script>1</script>"})
    msg = contact_relay.build_contact_message(contact, mail_settings)
    html = msg.get_payload()[0].get_payload(decode=True).decode("utf-8")
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_default_subject(mail_settings):
    contact, _ = parse_contact_body({"name": "x", "email": "e@x.com", "message": "hi"})
    msg = contact_relay.build_contact_message(contact, mail_settings)
    assert msg["Subject"] == "HILBU Contact: Website enquiry"


def test_mail_settings_from_env_defaults():
    settings = MailSettings.from_env({"EMAIL_USER": "u", "EMAIL_PASS": "p"})
    assert settings.smtp_host == "smtp.office365.com"
    assert settings.smtp_port == 587
    assert settings.missing() == ["CONTACT_TO_EMAIL"]


def test_header_build_failure_becomes_relay_error(mail_settings, smtp, monkeypatch):
    def broken_build(contact, settings):
        raise HeaderParseError("header value appears to contain an embedded header")

    monkeypatch.setattr(contact_relay, "build_contact_message", broken_build)
    contact, _ = parse_contact_body({"name": "x", "email": "e@x.com", "message": "hi"})
    with pytest.raises(contact_relay.ContactRelayError):
        contact_relay.send_contact_email(contact, mail_settings)
    assert smtp.sent == []
