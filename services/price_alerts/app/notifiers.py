"""Simulated delivery channels subscribed to the notification bus at startup."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from .clients import WebhookNotifier
from .config import PriceAlertSettings
from .events import NotificationBus, TriggerEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SimulatedDelivery:
    channel: str
    recipient: str
    subject: str
    body: str
    alert_id: str
    delivered_at: datetime


def render_message(event: TriggerEvent) -> str:
    comparison = "risen above" if event.direction.value == "ABOVE" else "fallen below"
    return (
        f"Hi {event.user_name}, {event.asset_name} ({event.asset_symbol}) has {comparison} "
        f"your target of ${event.target_price}. Current price: ${event.triggered_price}."
    )


class _SimulatedChannel:
    channel = "simulated"

    def __init__(self, history_size: int = 100) -> None:
        self.deliveries: deque[SimulatedDelivery] = deque(maxlen=history_size)

    def _deliver(self, recipient: str, subject: str, event: TriggerEvent) -> SimulatedDelivery:
        delivery = SimulatedDelivery(
            channel=self.channel,
            recipient=recipient,
            subject=subject,
            body=render_message(event),
            alert_id=event.alert_id,
            delivered_at=datetime.utcnow(),
        )
        self.deliveries.append(delivery)
        logger.info(
            "[dry-run] Would send %s notification to %s",
            self.channel,
            recipient,
            extra={"alert_id": event.alert_id, "channel": self.channel},
        )
        return delivery


class EmailNotificationSimulator(_SimulatedChannel):
    channel = "email"

    async def __call__(self, event: TriggerEvent) -> None:
        subject = f"Price alert: {event.asset_symbol} {event.direction.value.lower()} {event.target_price}"
        self._deliver(event.user_email, subject, event)


class PushNotificationSimulator(_SimulatedChannel):
    channel = "push"

    async def __call__(self, event: TriggerEvent) -> None:
        self._deliver(event.user_id, f"{event.asset_symbol} alert", event)


def register_default_handlers(
    bus: NotificationBus, settings: PriceAlertSettings
) -> list[object]:
    """Subscribe the delivery channels enabled by ``settings`` and return them."""

    handlers: list[object] = [EmailNotificationSimulator(), PushNotificationSimulator()]
    if settings.notification_url:
        handlers.append(
            WebhookNotifier(
                settings.notification_url, timeout=settings.notification_timeout_seconds
            )
        )
    for handler in handlers:
        bus.subscribe(handler)  # type: ignore[arg-type]
    return handlers


__all__ = [
    "EmailNotificationSimulator",
    "PushNotificationSimulator",
    "SimulatedDelivery",
    "register_default_handlers",
    "render_message",
]
