"""
Slack channel - send notifications via Slack Webhook
"""

import logging
from typing import List, Optional

import httpx

from .base import NotificationChannel


logger = logging.getLogger(__name__)


class SlackChannel(NotificationChannel):
    """Slack notification sender via Incoming Webhook

    Requires:
        - SLACK_WEBHOOK_URL: Incoming webhook URL from Slack app
    """

    name = "slack"

    STATUS_COLOR = {
        "succeeded": "#28a745",
        "unstable": "#ff9800",
        "failed": "#dc3545",
        "aborted": "#6c757d",
    }

    def __init__(self, webhook_url: str, channel: Optional[str] = None):
        self.webhook_url = webhook_url
        self.channel = channel

    def build_payload(self, channel: Optional[str], subject: str, body: str) -> dict:
        status = subject.split("]")[0].strip("[").lower() if subject.startswith("[") else ""
        payload = {
            "attachments": [{
                "color": self.STATUS_COLOR.get(status, "#36a64f"),
                "title": subject,
                "text": body,
            }]
        }
        if channel:
            payload["channel"] = channel
        return payload

    async def send(self, recipients: List[str], subject: str, body: str):
        channels = recipients or [self.channel]

        async with httpx.AsyncClient(timeout=30.0) as client:
            for channel in channels:
                response = await client.post(
                    self.webhook_url,
                    json=self.build_payload(channel, subject, body),
                )
                if response.status_code != 200:
                    raise RuntimeError(f"Slack webhook error: {response.status_code} - {response.text}")
