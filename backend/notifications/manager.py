"""Notification Manager: renders workflow events and fans them out to channels.

``notify(recipients, template_key, context)`` is the engine's only egress
for messages. Delivery failures are logged and reported as failed
``DeliveryResult``s; they are never retried or raised.
"""

import logging
from typing import Iterable, Optional

from app.config import Settings
from notifications.channels import (
    BaseChannel,
    DeliveryResult,
    LoggingChannel,
    Notification,
    NotificationChannel,
    NotificationPriority,
    WebhookChannel,
)

logger = logging.getLogger(__name__)


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


# template_key -> (title, message, priority)
TEMPLATES: dict[str, tuple[str, str, NotificationPriority]] = {
    "task_assigned": (
        "New task: {step_name}",
        "You have been assigned '{step_name}' in {workflow_name} for {related_entity_id}. Due: {due_date}.",
        NotificationPriority.NORMAL,
    ),
    "task_escalated": (
        "Escalated: {step_name}",
        "'{step_name}' in {workflow_name} for {related_entity_id} was escalated to you (level {escalation_level}).",
        NotificationPriority.HIGH,
    ),
    "task_reminder": (
        "Reminder: {step_name}",
        "'{step_name}' in {workflow_name} for {related_entity_id} is still waiting for you. Due: {due_date}.",
        NotificationPriority.NORMAL,
    ),
    "step_timeout": (
        "Timed out: {workflow_name}",
        "{workflow_name} for {related_entity_id} timed out and was closed.",
        NotificationPriority.HIGH,
    ),
    "workflow_completed": (
        "Completed: {workflow_name}",
        "{workflow_name} for {related_entity_id} completed.",
        NotificationPriority.NORMAL,
    ),
    "workflow_failed": (
        "Failed: {workflow_name}",
        "{workflow_name} for {related_entity_id} ended on the failure path.",
        NotificationPriority.HIGH,
    ),
    "workflow_cancelled": (
        "Cancelled: {workflow_name}",
        "{workflow_name} for {related_entity_id} was cancelled: {reason}.",
        NotificationPriority.NORMAL,
    ),
}

_FALLBACK = ("{workflow_name}: {template_key}", "{workflow_name} for {related_entity_id}", NotificationPriority.NORMAL)


class NotificationManager:
    """Central notification dispatcher."""

    def __init__(self, channels: Optional[Iterable[BaseChannel]] = None):
        self._channels: dict[NotificationChannel, BaseChannel] = {}
        for channel in channels or (LoggingChannel(),):
            self.register_channel(channel)

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationManager":
        manager = cls()
        if settings.NOTIFICATION_WEBHOOK_URL:
            manager.register_channel(WebhookChannel({"url": settings.NOTIFICATION_WEBHOOK_URL}))
        return manager

    def register_channel(self, channel: BaseChannel) -> None:
        """Register a notification channel."""
        self._channels[channel.channel_type] = channel
        logger.info(f"Notification channel registered: {channel.channel_type.value}")

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def render(self, template_key: str, context: dict) -> Notification:
        title, message, priority = TEMPLATES.get(template_key, _FALLBACK)
        values = _SafeDict({k: ("" if v is None else v) for k, v in context.items()})
        values.setdefault("template_key", template_key)
        return Notification(
            title=title.format_map(values),
            message=message.format_map(values),
            recipient="",
            template_key=template_key,
            priority=priority,
            metadata=dict(context),
        )

    async def notify(self, recipients: Iterable[str], template_key: str, context: dict) -> list[DeliveryResult]:
        """Send one notification per recipient to every registered channel."""
        rendered = self.render(template_key, context or {})
        results = []
        for recipient in recipients:
            notification = Notification(
                title=rendered.title,
                message=rendered.message,
                recipient=recipient,
                template_key=template_key,
                priority=rendered.priority,
                metadata=rendered.metadata,
            )
            for channel in self._channels.values():
                results.append(await self._send(channel, notification))
        return results

    async def _send(self, channel: BaseChannel, notification: Notification) -> DeliveryResult:
        try:
            result = await channel.send(notification)
        except Exception as e:
            logger.exception(f"Notification channel {channel.channel_type.value} crashed")
            return DeliveryResult(
                success=False,
                channel=channel.channel_type,
                recipient=notification.recipient,
                error=str(e),
            )
        if not result.success:
            logger.warning(
                f"Notification failed via {channel.channel_type.value} to {notification.recipient}: {result.error}"
            )
        return result
