"""Service modules - Business logic layer

RunService is imported from its module directly; it depends on the engine,
which itself depends on the notification service here.
"""
from .notification_service import Notifier, LoggingNotifier, WebhookNotifier, get_default_notifier
from .idempotency_service import IdempotencyService, IdempotentResult

__all__ = [
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "get_default_notifier",
    "IdempotencyService",
    "IdempotentResult",
]
