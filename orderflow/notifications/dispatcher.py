from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from orderflow.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_PAID = "order_paid"
ORDER_SHIPPED = "order_shipped"
ORDER_DELIVERED = "order_delivered"
ORDER_CANCELLED = "order_cancelled"
ORDER_REFUNDED = "order_refunded"


class Notifier(Protocol):
    backend: str

    def notify(self, event_kind: str, snapshot: dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    backend = "log"

    def notify(self, event_kind: str, snapshot: dict[str, Any]) -> None:
        logger.info(
            "order notification: kind=%s order=%s status=%s",
            event_kind,
            snapshot.get("order_number"),
            snapshot.get("status"),
        )


class WebhookNotifier:
    """POSTs each event as JSON. Delivery failures are logged and dropped."""

    backend = "webhook"

    def __init__(self, url: str, timeout_seconds: int = 5):
        self.url = url
        self.timeout = max(1, timeout_seconds)

    def notify(self, event_kind: str, snapshot: dict[str, Any]) -> None:
        body = {
            "kind": event_kind,
            "sent_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "order": snapshot,
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "order notification delivery failed: kind=%s order=%s error=%s",
                event_kind,
                snapshot.get("order_number"),
                exc,
            )


def build_notifier(settings: Settings | None = None) -> Notifier:
    cfg = settings or get_settings()
    if cfg.notifier_backend == "webhook":
        if cfg.notifier_webhook_url:
            return WebhookNotifier(cfg.notifier_webhook_url, cfg.notifier_timeout_seconds)
        logger.warning("webhook notifier selected without OF_NOTIFIER_WEBHOOK_URL, falling back to log")
    return LoggingNotifier()
