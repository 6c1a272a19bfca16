"""Notification channel implementations.

Each channel handles delivery for one transport. The engine ships a
logging channel and a generic webhook channel; email, SMS and push
delivery live behind the webhook in the municipal messaging service.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from core.utils import isoformat, utc_now

logger = logging.getLogger(__name__)


# ─── Data Types ────────────────────────────────────────────────

class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationChannel(str, Enum):
    LOG = "log"
    WEBHOOK = "webhook"
    MEMORY = "memory"


@dataclass
class Notification:
    """A notification to be delivered to one recipient."""
    title: str
    message: str
    recipient: str
    template_key: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: isoformat(utc_now()))


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    channel: NotificationChannel
    recipient: str
    message: str = ""
    error: Optional[str] = None
    delivered_at: Optional[str] = None


# ─── Base Channel ──────────────────────────────────────────────

class BaseChannel(ABC):
    """Abstract base for notification channels."""

    channel_type: NotificationChannel

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryResult:
        """Send a notification through this channel."""
        ...


# ─── Logging Channel ───────────────────────────────────────────

class LoggingChannel(BaseChannel):
    """Writes notifications to the application log. Always registered."""

    channel_type = NotificationChannel.LOG

    async def send(self, notification: Notification) -> DeliveryResult:
        logger.info(
            "[notify:%s] to=%s %s",
            notification.template_key, notification.recipient, notification.title,
        )
        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=notification.recipient,
            delivered_at=isoformat(utc_now()),
        )


# ─── Webhook Channel ───────────────────────────────────────────

class WebhookChannel(BaseChannel):
    """POST notifications to the messaging service.

    Config:
        url: Target URL
        headers: Additional headers
        timeout: Request timeout in seconds (default 15)
    """

    channel_type = NotificationChannel.WEBHOOK

    def __init__(self, config: dict = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or {}
        self._client = client

    async def send(self, notification: Notification) -> DeliveryResult:
        """Send webhook notification. Never raises."""
        url = self.config.get("url")
        if not url:
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error="No webhook URL",
            )

        headers = {
            "Content-Type": "application/json",
            "X-Workflow-Event": notification.template_key,
            **self.config.get("headers", {}),
        }
        payload = {
            "recipient": notification.recipient,
            "template_key": notification.template_key,
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority.value,
            "metadata": notification.metadata,
            "timestamp": notification.created_at,
        }

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.get("timeout", 15)) as client:
                    response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook send failed for {notification.recipient}: {e}")
            return DeliveryResult(
                success=False,
                channel=self.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )

        return DeliveryResult(
            success=True,
            channel=self.channel_type,
            recipient=notification.recipient,
            message=f"Webhook delivered (HTTP {response.status_code})",
            delivered_at=isoformat(utc_now()),
        )
