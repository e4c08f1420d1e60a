"""
mail/dispatcher.py -- Email Dispatcher: render and deliver account emails.

Interface:
    dispatcher.send(kind, recipient, data) -> bool

  kind is one of MESSAGE_KINDS. data fills the Jinja2 template of the same
  name under mail/templates/. send() never raises for delivery problems; it
  logs and returns False. Account flows must not fail because mail did.

Implementations:
  SmtpDispatcher    -- smtplib + STARTTLS, one connection per message.
  MemoryDispatcher  -- keeps messages in a list; used when SMTP_HOST is empty
                       (development) and by the tests.

Outbox wraps a dispatcher for fire-and-forget delivery on a small thread
pool, so a slow SMTP server never holds up a login response.

Layer rule: imports core/ only.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from email.message import EmailMessage
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from core.config import Settings

logger = logging.getLogger("quicklearn.mail")

OTP = "otp"
LOGIN_ALERT = "login_alert"
PASSWORD_RESET = "password_reset"

MESSAGE_KINDS = (OTP, LOGIN_ALERT, PASSWORD_RESET)

_SUBJECTS: dict[str, str] = {
    OTP: "{app_name} - Verify your email",
    LOGIN_ALERT: "{app_name} - New Login Detected",
    PASSWORD_RESET: "{app_name} - Reset your password",
}

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


def render(kind: str, data: dict, app_name: str) -> tuple[str, str]:
    """Return (subject, html) for a message kind. Raises ValueError for unknown kinds."""
    if kind not in _SUBJECTS:
        raise ValueError(f"Unknown email kind: {kind!r}")
    try:
        template = _templates.get_template(f"{kind}.html")
    except TemplateNotFound as exc:
        raise ValueError(f"No template for email kind {kind!r}") from exc
    html = template.render(app_name=app_name, **data)
    return _SUBJECTS[kind].format(app_name=app_name), html


class EmailDispatcher(Protocol):
    def send(self, kind: str, recipient: str, data: dict) -> bool: ...


class SmtpDispatcher:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.sender = settings.smtp_from
        self.app_name = settings.app_name
        self.timeout = settings.smtp_timeout_seconds

    def send(self, kind: str, recipient: str, data: dict) -> bool:
        try:
            subject, html = render(kind, data, self.app_name)
        except ValueError:
            logger.exception("Cannot render %s email", kind)
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.app_name} <{self.sender}>"
        msg["To"] = recipient
        msg.set_content(f"{subject}\n\nOpen this message in an HTML-capable mail client.")
        msg.add_alternative(html, subtype="html")

        try:
            ctx = ssl.create_default_context()
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls(context=ctx)
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send %s email via %s:%s", kind, self.host, self.port)
            return False
        logger.info("Sent %s email", kind)
        return True


@dataclass
class SentEmail:
    kind: str
    recipient: str
    subject: str
    data: dict = field(default_factory=dict)


class MemoryDispatcher:
    """Records messages instead of sending them.

    With log_payload=True (debug mode) the template data is logged so a
    developer can finish the OTP and reset flows without an SMTP server.
    """

    def __init__(self, app_name: str = "QuickLearn", log_payload: bool = False) -> None:
        self.app_name = app_name
        self.log_payload = log_payload
        self.sent: list[SentEmail] = []
        self._lock = threading.Lock()

    def send(self, kind: str, recipient: str, data: dict) -> bool:
        try:
            subject, _html = render(kind, data, self.app_name)
        except ValueError:
            logger.exception("Cannot render %s email", kind)
            return False
        with self._lock:
            self.sent.append(SentEmail(kind=kind, recipient=recipient, subject=subject, data=dict(data)))
        if self.log_payload:
            logger.info("[dev mail] %s to %s: %s", kind, recipient, data)
        return True

    def last(self, kind: str | None = None, recipient: str | None = None) -> SentEmail | None:
        with self._lock:
            for message in reversed(self.sent):
                if (kind is None or message.kind == kind) and (recipient is None or message.recipient == recipient):
                    return message
        return None


def build_dispatcher(settings: Settings) -> EmailDispatcher:
    if settings.smtp_host:
        return SmtpDispatcher(settings)
    logger.warning("SMTP_HOST not set -- emails are recorded in memory, not delivered")
    return MemoryDispatcher(app_name=settings.app_name, log_payload=settings.debug)


class Outbox:
    """Fire-and-forget wrapper around a dispatcher.

    inline=True delivers on the calling thread (tests, scripts). Either way
    the caller never sees an exception from delivery.
    """

    def __init__(self, dispatcher: EmailDispatcher, inline: bool = False, max_workers: int = 2) -> None:
        self.dispatcher = dispatcher
        self.inline = inline
        self._executor = None if inline else ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="outbox")

    def post(self, kind: str, recipient: str, data: dict) -> None:
        if self._executor is None:
            self._deliver(kind, recipient, data)
            return
        try:
            self._executor.submit(self._deliver, kind, recipient, data)
        except RuntimeError:
            # Executor already shut down during application teardown.
            logger.warning("Outbox closed; dropped %s email", kind)

    def _deliver(self, kind: str, recipient: str, data: dict) -> None:
        try:
            if not self.dispatcher.send(kind, recipient, data):
                logger.warning("Delivery of %s email failed", kind)
        except Exception:
            logger.exception("Dispatcher raised while sending %s email", kind)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
