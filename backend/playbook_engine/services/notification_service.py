"""Notification Service - Outbound delivery for send_notification actions

Delivery is fire-and-forget from the engine's point of view: callers log
failures and move on.
"""
from typing import Any, Dict, Optional, Protocol
import httpx

from ..config.settings import settings
from ..domain.errors import ExternalServiceError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """External notifier consumed by the engine"""

    async def send(
        self,
        channel: str,
        recipient: str,
        template: str,
        payload: Dict[str, Any]
    ) -> None:
        ...


class LoggingNotifier:
    """Notifier that only records the notification in the application log"""

    async def send(
        self,
        channel: str,
        recipient: str,
        template: str,
        payload: Dict[str, Any]
    ) -> None:
        logger.info(f"Notification [{channel}] {template} -> {recipient}")


class WebhookNotifier:
    """Notifier that POSTs notifications to a webhook endpoint"""

    def __init__(self, url: str, timeout: Optional[float] = None):
        self.url = url
        self.timeout = timeout or settings.http_timeout_seconds

    async def send(
        self,
        channel: str,
        recipient: str,
        template: str,
        payload: Dict[str, Any]
    ) -> None:
        body = {
            "channel": channel,
            "recipient": recipient,
            "template": template,
            "payload": payload,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Notification delivery failed: {e}",
                details={"channel": channel, "template": template},
            )
        logger.info(f"Notification [{channel}] {template} delivered to webhook")


def get_default_notifier() -> Notifier:
    """Webhook delivery when configured, log-only otherwise"""
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url)
    return LoggingNotifier()
