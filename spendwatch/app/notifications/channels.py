from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from spendwatch.app.errors import AlertDeliveryFailed

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TIMEOUT = 10.0


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class DeliveryOutcome:
    recipient: Recipient
    delivered: bool
    error: Optional[str] = None
    logged: bool = False

    @property
    def status(self) -> str:
        if self.delivered:
            return "sent"
        return "logged" if self.logged else "failed"


class NotificationChannel(Protocol):
    name: str

    def send(self, recipient: Recipient, payload: Dict[str, Any]) -> DeliveryOutcome:
        ...


def webhook_url() -> Optional[str]:
    return (os.getenv("ALERT_WEBHOOK_URL") or "").strip() or None


def webhook_timeout() -> float:
    raw = os.getenv("ALERT_WEBHOOK_TIMEOUT")
    if not raw:
        return DEFAULT_WEBHOOK_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring non-numeric ALERT_WEBHOOK_TIMEOUT=%r", raw)
        return DEFAULT_WEBHOOK_TIMEOUT


class WebhookChannel:
    """
    Posts one JSON document per recipient to an email relay. Transport errors
    are retried once, then surface as AlertDeliveryFailed.
    """

    name = "webhook"

    def __init__(self, *, url: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.url = url or webhook_url()
        if not self.url:
            raise RuntimeError("ALERT_WEBHOOK_URL must be configured for the webhook channel.")
        self._client = client or httpx.Client(timeout=webhook_timeout())

    def send(self, recipient: Recipient, payload: Dict[str, Any]) -> DeliveryOutcome:
        body = {
            "to": recipient.email,
            "recipient_name": recipient.name,
            "subject": payload.get("title"),
            "payload": payload,
        }
        for attempt in range(2):
            try:
                response = self._client.post(self.url, json=body)
                response.raise_for_status()
                return DeliveryOutcome(recipient=recipient, delivered=True)
            except httpx.HTTPError as exc:
                if attempt == 0:
                    logger.warning("webhook delivery to %s failed, retrying: %s", recipient.email, exc)
                    continue
                raise AlertDeliveryFailed(f"webhook delivery to {recipient.email} failed: {exc}") from exc
        raise AlertDeliveryFailed(f"webhook delivery to {recipient.email} failed")


class LogChannel:
    """Fallback when no relay is configured. Nothing leaves the process; outcomes are recorded as "logged"."""

    name = "log"

    def send(self, recipient: Recipient, payload: Dict[str, Any]) -> DeliveryOutcome:
        logger.info("alert '%s' for %s (%s)", payload.get("title"), recipient.email, recipient.user_id)
        return DeliveryOutcome(recipient=recipient, delivered=False, logged=True)
