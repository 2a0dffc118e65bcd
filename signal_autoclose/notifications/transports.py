"""
Notification transports.

A transport delivers one notification over one channel and raises
DeliveryError when it cannot. Configure the webhook channel with
notifications.webhook_url; when no URL is configured, WEBHOOK is simply not
registered and sends to it fail as undeliverable.
"""
from typing import Dict, Optional

import requests

from signal_autoclose.domain.models import ExpirationNotification, NotificationChannel
from signal_autoclose.domain.protocols import NotificationTransport
from signal_autoclose.exceptions import DeliveryError
from signal_autoclose.monitoring.logger import get_logger

logger = get_logger(__name__)


class InAppTransport:
    """The persisted record is the in-app delivery; nothing leaves the process."""

    def send(self, notification: ExpirationNotification) -> None:
        logger.debug("In-app notification stored", notification_id=notification.id, user_id=notification.user_id)


class WebhookTransport:
    """POST the notification as JSON to a webhook endpoint."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def send(self, notification: ExpirationNotification) -> None:
        payload = {
            "id": notification.id,
            "user_id": notification.user_id,
            "type": notification.type.value,
            "title": notification.title,
            "message": notification.message,
            "data": notification.data,
        }
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e
        if resp.status_code >= 400:
            raise DeliveryError(f"Webhook returned HTTP {resp.status_code}: {resp.text[:200]}")


class TransportRegistry:
    """Channel → transport lookup."""

    def __init__(self, transports: Optional[Dict[NotificationChannel, NotificationTransport]] = None):
        self._transports: Dict[NotificationChannel, NotificationTransport] = dict(transports or {})

    def register(self, channel: NotificationChannel, transport: NotificationTransport) -> None:
        self._transports[channel] = transport

    def get(self, channel: NotificationChannel) -> NotificationTransport:
        transport = self._transports.get(channel)
        if transport is None:
            raise DeliveryError(f"No transport registered for channel {channel.value}")
        return transport

    def send(self, notification: ExpirationNotification) -> None:
        self.get(notification.channel).send(notification)

    @classmethod
    def from_config(cls, config) -> "TransportRegistry":
        """Build from a NotificationsConfig section."""
        registry = cls({NotificationChannel.IN_APP: InAppTransport()})
        if config.webhook_url:
            registry.register(
                NotificationChannel.WEBHOOK,
                WebhookTransport(config.webhook_url, timeout_seconds=config.webhook_timeout_seconds),
            )
        return registry
