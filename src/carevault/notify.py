"""
Notification Delivery

Notifiers deliver short messages (OTP codes) to a destination. The auth core
treats delivery as fire-and-forget: a failure is logged and audited but never
fails the flow that asked for the message.
"""

import logging
import smtplib
from email.mime.text import MIMEText
from typing import List, Optional, Protocol, Tuple

from .exceptions import NotifierError
from .integration.event_logger import get_subject_hash


logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, destination: str, message: str) -> None:
        """Deliver `message` to `destination`; raise NotifierError on failure."""


class SmtpNotifier:
    """Sends notifications as plain-text email over SMTP with STARTTLS."""

    def __init__(self, host: str, port: int = 587,
                 username: Optional[str] = None,
                 password: Optional[str] = None,
                 sender: Optional[str] = None,
                 subject: str = "Your verification code",
                 timeout: float = 10.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username
        self.subject = subject
        self.timeout = timeout

    def send(self, destination: str, message: str) -> None:
        mail = MIMEText(message, "plain")
        mail["From"] = self.sender
        mail["To"] = destination
        mail["Subject"] = self.subject

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(mail)
        except (smtplib.SMTPException, OSError) as e:
            raise NotifierError(f"SMTP delivery failed: {type(e).__name__}") from e


class LoggingNotifier:
    """Development notifier: records that a message was sent, never its body."""

    def __init__(self):
        self.sent: List[Tuple[str, int]] = []

    def send(self, destination: str, message: str) -> None:
        self.sent.append((destination, len(message)))
        logger.info("Notification for %s (%d chars) accepted", get_subject_hash(destination)[:12], len(message))
