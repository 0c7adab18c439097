from __future__ import annotations

from spendwatch.app.notifications.channels import (
    DeliveryOutcome,
    LogChannel,
    NotificationChannel,
    Recipient,
    WebhookChannel,
    webhook_url,
)


def get_channel() -> NotificationChannel:
    if webhook_url():
        return WebhookChannel()
    return LogChannel()


__all__ = [
    "DeliveryOutcome",
    "LogChannel",
    "NotificationChannel",
    "Recipient",
    "WebhookChannel",
    "get_channel",
]
