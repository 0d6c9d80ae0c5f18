"""
Fire-and-forget webhook notifications for terminal run states.
"""

from typing import Optional
import httpx
import logging

from core.config import settings

logger = logging.getLogger(__name__)

# severity -> (icon, attachment color)
SEVERITY_STYLES = {
    "success": (":smiley:", "#008952"),
    "error": (":fearful:", "#ff0000"),
    "info": (":warning:", "#2D9EE0"),
}


class Notifier:
    """
    Post a message to a Slack-compatible incoming webhook.

    Delivery failures are logged and never raised: a run must not fail
    because its notification could not be sent.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        author: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.SLACK_WEBHOOK_URL
        self.author = author or settings.NOTIFY_AUTHOR
        self._client = client
        self.timeout = timeout

    def build_payload(self, text: str, title: str, severity: str) -> dict:
        icon, color = SEVERITY_STYLES.get(severity, SEVERITY_STYLES["success"])
        return {
            "icon_emoji": icon,
            "username": self.author,
            "attachments": [{
                "color": color,
                "title": title,
                "text": text,
            }],
        }

    async def notify(self, text: str, title: str, severity: str = "info") -> bool:
        """Send a notification; returns True when the webhook accepted it."""
        if not self.webhook_url:
            logger.debug(f"No webhook configured, skipping notification: {title}")
            return False

        payload = self.build_payload(text, title, severity)
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Notification '{title}' not delivered: {e}")
            return False
