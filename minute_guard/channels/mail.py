"""
Email alert channel.

Sends a plain-text email to the tenant's configured recipients over SMTP.
"""

import smtplib
from email.message import EmailMessage
from typing import Callable, Optional

from minute_guard.config.loader import AlertChannelKind, LimitConfig
from minute_guard.core.errors import ChannelDeliveryFailure
from minute_guard.storage.models import Alert

from .base import AlertChannel


class EmailChannel(AlertChannel):
    """Delivers alerts by email.

    ``sender`` receives the built message; by default it is sent through
    ``smtplib`` to ``smtp_host``.
    """

    kind = AlertChannelKind.EMAIL

    def __init__(
        self,
        from_address: str = "alerts@minute-guard.local",
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        timeout: float = 5.0,
        sender: Optional[Callable[[EmailMessage], None]] = None
    ):
        self.from_address = from_address
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.timeout = timeout
        self.sender = sender or self._send_smtp

    def build_message(self, alert: Alert, config: LimitConfig) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.from_address
        message["To"] = ", ".join(config.email_recipients)
        message["Subject"] = f"[{alert.severity.upper()}] {alert.title}"
        message.set_content(alert.message)
        return message

    def deliver(self, alert: Alert, config: LimitConfig) -> bool:
        if not config.email_recipients:
            raise ChannelDeliveryFailure(self.name, "no email recipients configured")
        message = self.build_message(alert, config)
        try:
            self.sender(message)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelDeliveryFailure(self.name, str(e)) from e
        return True

    def _send_smtp(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            smtp.send_message(message)
