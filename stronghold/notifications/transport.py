import logging
import smtplib
import socket
import ssl
from email.mime.text import MIMEText
from email.utils import formataddr, parseaddr
from typing import Protocol

from .config import SmtpSettings
from .exceptions import PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)


class EmailTransport(Protocol):
    def send(self, recipient_address: str, subject: str, html_body: str) -> None:
        ...


def _classify_smtp_error(e: smtplib.SMTPException) -> Exception:
    """Map an smtplib error onto the retry taxonomy."""
    if isinstance(e, smtplib.SMTPRecipientsRefused):
        codes = [code for code, _ in e.recipients.values()]
        if codes and all(400 <= code < 500 for code in codes):
            return TransientDeliveryError(f"Recipient temporarily refused: {e.recipients}")
        return PermanentDeliveryError(f"Recipient refused: {e.recipients}")
    if isinstance(e, smtplib.SMTPServerDisconnected):
        return TransientDeliveryError(f"SMTP server disconnected: {e}")
    if isinstance(e, smtplib.SMTPAuthenticationError):
        # Bad credentials are a deployment problem; keep the message around
        return TransientDeliveryError(f"SMTP authentication failed: {e.smtp_code}")
    code = getattr(e, "smtp_code", None)
    if isinstance(code, int) and 500 <= code < 600:
        return PermanentDeliveryError(f"SMTP error {code}: {e}")
    return TransientDeliveryError(f"SMTP error: {e}")


class SmtpEmailTransport:
    """Sends one pre-rendered HTML email per call over SMTP."""

    def __init__(self, settings: SmtpSettings):
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = int(settings.SMTP_PORT)
        self.smtp_username = settings.SMTP_USERNAME
        self.smtp_password = settings.SMTP_PASSWORD
        self.use_ssl = settings.SMTP_USE_SSL
        self.from_email = settings.from_address
        self.timeout = settings.SMTP_TIMEOUT_SECONDS

    def _build_message(self, recipient_address: str, subject: str, html_body: str) -> MIMEText:
        _, address = parseaddr(recipient_address)
        if not address or "@" not in address:
            raise PermanentDeliveryError(f"Invalid recipient address: {recipient_address!r}")
        msg = MIMEText(html_body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr(("Stronghold", self.from_email))
        msg["To"] = address
        return msg

    def send(self, recipient_address: str, subject: str, html_body: str) -> None:
        msg = self._build_message(recipient_address, subject, html_body)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_ssl:
                    server.starttls(context=ssl.create_default_context())
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
        except smtplib.SMTPException as e:
            raise _classify_smtp_error(e) from e
        except (socket.timeout, OSError) as e:
            raise TransientDeliveryError(f"SMTP connection to {self.smtp_host}:{self.smtp_port} failed: {e}") from e
        logger.debug(f"[SMTP] Handed message to {self.smtp_host} for {msg['To']}")
