"""
Notification channel - abstract interface
"""

from abc import ABC, abstractmethod
from typing import List


class NotificationChannel(ABC):
    """Abstract base class for notification channels"""

    name = "channel"

    @abstractmethod
    async def send(self, recipients: List[str], subject: str, body: str):
        """Deliver one message.

        Args:
            recipients: Channel-specific addresses (mail addresses, Slack channels)
            subject: One-line summary
            body: Plain-text details

        Raises:
            Exception: on delivery failure
        """
        pass
