from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

from libs.observability.metrics import ALERT_TRIGGERS

from .events import NotificationBus, TriggerEvent
from .models import Alert, AlertDirection, to_decimal
from .repository import AlertRepository

logger = logging.getLogger(__name__)


class AlertEvaluator:
    """Trigger untriggered alerts on an asset whose threshold the new price crosses.

    Boundaries are inclusive: ``ABOVE`` fires at ``price >= target`` and
    ``BELOW`` at ``price <= target``. An alert fires at most once; the
    conditional ``mark_triggered`` write decides which concurrent evaluation
    wins, and only the winner publishes.
    """

    def __init__(
        self,
        repository: AlertRepository,
        bus: NotificationBus,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._repository = repository
        self._bus = bus
        self._clock = clock

    @staticmethod
    def should_trigger(direction: AlertDirection | str, target_price: Decimal, price: Decimal) -> bool:
        direction = AlertDirection(direction)
        if direction is AlertDirection.ABOVE:
            return price >= target_price
        if direction is AlertDirection.BELOW:
            return price <= target_price
        return False

    async def evaluate(self, asset_id: str, current_price: Decimal | float | int) -> list[TriggerEvent]:
        price = to_decimal(current_price)
        if not price.is_finite() or price <= 0:
            raise ValueError(f"current_price must be a positive number, got {current_price!r}")
        alerts = await self._repository.find_untriggered(asset_id)
        due = [
            alert
            for alert in alerts
            if self.should_trigger(alert.direction, alert.target_price, price)
        ]
        logger.debug(
            "Checked alerts for asset",
            extra={"asset_id": asset_id, "price": str(price), "checked": len(alerts), "due": len(due)},
        )
        if not due:
            return []

        results = await asyncio.gather(*(self._trigger(alert, price) for alert in due))
        return [event for event in results if event is not None]

    async def _trigger(self, alert: Alert, price: Decimal) -> TriggerEvent | None:
        try:
            triggered_at = self._clock()
            if not await self._repository.mark_triggered(alert.id, price, triggered_at):
                logger.info(
                    "Alert %s already triggered, skipping notification",
                    alert.id,
                    extra={"alert_id": alert.id},
                )
                return None
            event = TriggerEvent.from_alert(alert, price, triggered_at)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to process triggered alert %s",
                alert.id,
                extra={"alert_id": alert.id, "asset_id": alert.asset_id},
            )
            return None

        ALERT_TRIGGERS.labels(event.direction.value).inc()
        logger.info(
            "Alert %s triggered",
            alert.id,
            extra={
                "alert_id": alert.id,
                "user_id": alert.user_id,
                "asset_id": alert.asset_id,
                "direction": event.direction.value,
                "target_price": str(event.target_price),
                "triggered_price": str(price),
            },
        )
        await self._bus.publish(event)
        return event


__all__ = ["AlertEvaluator"]
