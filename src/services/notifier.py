"""
Outbound notification delivery.

HttpNotifier posts to a mail relay; LogNotifier records the notification
in the log and returns a synthetic delivery id (used when no relay URL is
configured). Both make a single attempt; the send_notification action
applies the retry policy.
"""

import uuid
from typing import Optional

import httpx
import structlog

from src.core.config import settings
from src.core.exceptions import NotificationDeliveryError

log = structlog.get_logger(__name__)


class HttpNotifier:
    """Deliver notifications through an HTTP relay.

    The relay accepts ``{"from", "to", "subject", "body", "thread_id"}``
    and answers with ``{"id": <delivery id>}``.
    """

    def __init__(
        self,
        relay_url: str,
        sender: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.relay_url = relay_url
        self.sender = sender or settings.notification_sender
        self.timeout = timeout or settings.notification_timeout_seconds

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        thread_id: Optional[str] = None,
    ) -> str:
        if not recipient:
            raise NotificationDeliveryError("Notification has no recipient")

        payload = {
            "from": self.sender,
            "to": recipient,
            "subject": subject,
            "body": body,
            "thread_id": thread_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.relay_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryError(
                f"Relay rejected notification (HTTP {e.response.status_code})"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise NotificationDeliveryError(f"Relay call failed: {e}") from e

        delivery_id = str(data.get("id") or uuid.uuid4())
        log.info("notification_sent", delivery_id=delivery_id, thread_id=thread_id)
        return delivery_id


class LogNotifier:
    """Write notifications to the log instead of delivering them."""

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        thread_id: Optional[str] = None,
    ) -> str:
        if not recipient:
            raise NotificationDeliveryError("Notification has no recipient")
        delivery_id = f"log-{uuid.uuid4().hex[:12]}"
        log.info(
            "notification_logged",
            delivery_id=delivery_id,
            recipient=recipient,
            subject=subject,
            body_length=len(body),
            thread_id=thread_id,
        )
        return delivery_id


def get_notifier():
    if settings.notification_relay_url:
        return HttpNotifier(settings.notification_relay_url)
    return LogNotifier()
