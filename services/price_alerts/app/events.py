"""In-process fan-out of alert trigger events to notification handlers."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Union

from libs.observability.metrics import NOTIFICATION_HANDLER_FAILURES

from .models import Alert, AlertDirection

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """Snapshot of a triggered alert taken at trigger time."""

    alert_id: str
    user_id: str
    asset_id: str
    asset_symbol: str
    asset_name: str
    direction: AlertDirection
    target_price: Decimal
    triggered_price: Decimal
    triggered_at: datetime
    user_email: str
    user_name: str

    @classmethod
    def from_alert(cls, alert: Alert, price: Decimal, triggered_at: datetime) -> "TriggerEvent":
        asset = alert.asset
        user = alert.user
        return cls(
            alert_id=alert.id,
            user_id=alert.user_id,
            asset_id=alert.asset_id,
            asset_symbol=asset.symbol,
            asset_name=asset.name,
            direction=AlertDirection(alert.direction),
            target_price=alert.target_price,
            triggered_price=price,
            triggered_at=triggered_at,
            user_email=user.email,
            user_name=user.display_name,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "user_id": self.user_id,
            "asset_id": self.asset_id,
            "asset_symbol": self.asset_symbol,
            "asset_name": self.asset_name,
            "direction": self.direction.value,
            "target_price": str(self.target_price),
            "triggered_price": str(self.triggered_price),
            "triggered_at": self.triggered_at.isoformat(),
            "user_email": self.user_email,
            "user_name": self.user_name,
        }


TriggerHandler = Callable[[TriggerEvent], Union[Awaitable[None], None]]


def _handler_name(handler: TriggerHandler) -> str:
    name = getattr(handler, "__qualname__", None)
    if name is None:
        name = type(handler).__name__
    return name


class NotificationBus:
    """Publish/subscribe channel between the evaluator and delivery handlers.

    Every subscribed handler receives every event, in registration order.
    A failing handler is logged and skipped; publishing never raises and
    nothing is queued when there are no subscribers.
    """

    def __init__(self) -> None:
        self._handlers: list[TriggerHandler] = []

    def subscribe(self, handler: TriggerHandler) -> Callable[[], None]:
        self._handlers.append(handler)
        logger.info("Notification handler subscribed: %s", _handler_name(handler))

        def _unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                return
            logger.info("Notification handler unsubscribed: %s", _handler_name(handler))

        return _unsubscribe

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: TriggerEvent) -> int:
        """Deliver ``event`` to every handler and return how many succeeded."""

        delivered = 0
        for handler in list(self._handlers):
            name = _handler_name(handler)
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                NOTIFICATION_HANDLER_FAILURES.labels(name).inc()
                logger.exception(
                    "Notification handler %s failed",
                    name,
                    extra={"alert_id": event.alert_id, "handler": name},
                )
                continue
            delivered += 1
        logger.debug(
            "Trigger event published",
            extra={
                "alert_id": event.alert_id,
                "delivered": delivered,
                "handlers": len(self._handlers),
            },
        )
        return delivered


__all__ = ["NotificationBus", "TriggerEvent", "TriggerHandler"]
