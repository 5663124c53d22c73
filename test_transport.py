import smtplib
import socket

import pytest

from stronghold.notifications import transport as transport_module
from stronghold.notifications.config import SmtpSettings
from stronghold.notifications.exceptions import PermanentDeliveryError, TransientDeliveryError
from stronghold.notifications.transport import SmtpEmailTransport


class FakeSMTP:
    """Stands in for smtplib.SMTP; records the conversation."""

    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.calls.append("quit")
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def send_message(self, msg):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.calls.append("send")
        self.sent.append(msg)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(transport_module.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def _settings(**overrides):
    values = dict(
        SMTP_HOST="smtp.example.com",
        SMTP_PORT=587,
        SMTP_USERNAME="noreply@stronghold.ba",
        SMTP_PASSWORD="secret",
        SMTP_USE_SSL=True,
    )
    values.update(overrides)
    return SmtpSettings(_env_file=None, **values)


def test_send_uses_starttls_and_login(fake_smtp):
    SmtpEmailTransport(_settings()).send("amra@example.com", "Vas termin je sutra!", "<p>Zdravo</p>")

    server = fake_smtp.instances[0]
    assert (server.host, server.port) == ("smtp.example.com", 587)
    assert server.calls == ["starttls", ("login", "noreply@stronghold.ba"), "send", "quit"]

    msg = server.sent[0]
    assert msg["To"] == "amra@example.com"
    assert msg["Subject"] == "Vas termin je sutra!"
    assert "noreply@stronghold.ba" in msg["From"]
    assert msg.get_content_type() == "text/html"


def test_send_without_ssl_skips_starttls(fake_smtp):
    SmtpEmailTransport(_settings(SMTP_USE_SSL=False)).send("amra@example.com", "s", "b")

    assert "starttls" not in fake_smtp.instances[0].calls


def test_from_address_override(fake_smtp):
    SmtpEmailTransport(_settings(SMTP_FROM="clanstvo@stronghold.ba")).send("amra@example.com", "s", "b")

    assert "clanstvo@stronghold.ba" in fake_smtp.instances[0].sent[0]["From"]


def test_invalid_recipient_is_permanent(fake_smtp):
    with pytest.raises(PermanentDeliveryError):
        SmtpEmailTransport(_settings()).send("not-an-address", "s", "b")
    assert fake_smtp.instances == []


@pytest.mark.parametrize(
    "error, expected",
    [
        (smtplib.SMTPRecipientsRefused({"amra@example.com": (550, b"no such user")}), PermanentDeliveryError),
        (smtplib.SMTPRecipientsRefused({"amra@example.com": (450, b"mailbox busy")}), TransientDeliveryError),
        (smtplib.SMTPDataError(554, b"message rejected"), PermanentDeliveryError),
        (smtplib.SMTPDataError(451, b"local error"), TransientDeliveryError),
        (smtplib.SMTPServerDisconnected("connection unexpectedly closed"), TransientDeliveryError),
        (smtplib.SMTPAuthenticationError(535, b"bad credentials"), TransientDeliveryError),
        (socket.timeout("timed out"), TransientDeliveryError),
        (ConnectionRefusedError(111, "Connection refused"), TransientDeliveryError),
    ],
)
def test_smtp_errors_are_classified(fake_smtp, error, expected):
    fake_smtp.fail_with = error

    with pytest.raises(expected):
        SmtpEmailTransport(_settings()).send("amra@example.com", "s", "b")
