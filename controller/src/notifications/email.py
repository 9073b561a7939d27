"""
Email channel - plain-text mail over SMTP
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional

from .base import NotificationChannel


logger = logging.getLogger(__name__)


class EmailChannel(NotificationChannel):
    """Send notifications by mail.

    Requires an SMTP relay; credentials and STARTTLS are optional.
    """

    name = "email"

    def __init__(
        self,
        host: str,
        port: int = 25,
        sender: str = "conveyor@localhost",
        username: Optional[str] = None,
        password: Optional[str] = None,
        starttls: bool = False,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def build_message(self, recipients: List[str], subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(body)
        return message

    async def send(self, recipients: List[str], subject: str, body: str):
        if not recipients:
            logger.info("Email notification has no recipients, skipping")
            return
        message = self.build_message(recipients, subject, body)
        await asyncio.to_thread(self._deliver, message)

    def _deliver(self, message: EmailMessage):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.starttls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)
        logger.info(f"Mail sent to {message['To']}")
