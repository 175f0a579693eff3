"""
Payment notifier adapters.
"""
from application.ports.notifier import NullNotifier, PaymentNotifier
from core.config import NotificationSettings

from .webhook import WebhookNotifier


def create_notifier(config: NotificationSettings) -> PaymentNotifier:
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url, config.secret, timeout=config.timeout)
    return NullNotifier()


__all__ = ["WebhookNotifier", "create_notifier"]
