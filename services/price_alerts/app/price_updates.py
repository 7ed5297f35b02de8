from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from libs.observability.metrics import PRICE_UPDATE_CYCLE_DURATION, PRICE_UPDATES

from .clients import MarketDataClient
from .evaluator import AlertEvaluator
from .models import Asset
from .repository import AssetRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleReport:
    """Outcome of one price update pass over a set of assets."""

    total: int = 0
    updated: int = 0
    failed: int = 0
    triggered: int = 0
    unpriced: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class PriceStatus:
    total: int
    last_updated: datetime | None
    assets: Sequence[Asset]


class PriceUpdateService:
    """Fetch prices for tracked assets, store them and evaluate alerts per asset."""

    def __init__(
        self,
        assets: AssetRepository,
        market_client: MarketDataClient,
        evaluator: AlertEvaluator,
        *,
        max_concurrency: int = 8,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._assets = assets
        self._market_client = market_client
        self._evaluator = evaluator
        self._max_concurrency = max(1, max_concurrency)
        self._clock = clock

    async def run_cycle(self) -> CycleReport:
        """Update every tracked asset. ``ExternalServiceError`` propagates unhandled."""

        assets = await self._assets.list_all()
        if not assets:
            logger.warning("No assets found, skipping price update")
            return CycleReport()
        return await self._update(assets)

    async def update_prices_for(self, asset_ids: Iterable[str]) -> CycleReport:
        ids = list(asset_ids)
        assets = await self._assets.list_by_ids(ids)
        if not assets:
            logger.warning("No assets found for requested ids", extra={"asset_ids": ids})
            return CycleReport()
        return await self._update(assets)

    async def get_status(self) -> PriceStatus:
        assets = await self._assets.list_recently_updated()
        last_updated = assets[0].last_updated if assets else None
        return PriceStatus(total=len(assets), last_updated=last_updated, assets=assets)

    async def get_realtime_prices(self, asset_ids: Iterable[str] | None = None) -> dict[str, Decimal]:
        """Fetch current prices straight from the market data source without storing them."""

        if asset_ids is None:
            ids = [asset.id for asset in await self._assets.list_all()]
        else:
            ids = list(asset_ids)
        if not ids:
            return {}
        return await self._market_client.fetch_prices(ids)

    async def _update(self, assets: Sequence[Asset]) -> CycleReport:
        started = time.perf_counter()
        report = CycleReport(total=len(assets))
        logger.info("Starting price update", extra={"asset_count": len(assets)})

        prices = await self._market_client.fetch_prices(asset.id for asset in assets)

        semaphore = asyncio.Semaphore(self._max_concurrency)
        jobs = []
        for asset in assets:
            price = prices.get(asset.id)
            if price is None or price <= 0:
                report.unpriced.append(asset.id)
                continue
            jobs.append(self._process_asset(semaphore, asset.id, price))

        for outcome in await asyncio.gather(*jobs):
            if outcome is None:
                report.failed += 1
            else:
                report.updated += 1
                report.triggered += outcome

        PRICE_UPDATE_CYCLE_DURATION.observe(time.perf_counter() - started)
        logger.info(
            "Price update completed",
            extra={
                "asset_count": report.total,
                "updated": report.updated,
                "failed": report.failed,
                "triggered": report.triggered,
                "unpriced": len(report.unpriced),
            },
        )
        return report

    async def _process_asset(
        self, semaphore: asyncio.Semaphore, asset_id: str, price: Decimal
    ) -> int | None:
        async with semaphore:
            try:
                await self._assets.update_price(asset_id, price, self._clock())
            except Exception:  # noqa: BLE001
                logger.exception("Failed to store price for %s", asset_id, extra={"asset_id": asset_id})
                return None
            PRICE_UPDATES.inc()
            try:
                events = await self._evaluator.evaluate(asset_id, price)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to evaluate alerts for %s", asset_id, extra={"asset_id": asset_id})
                return 0
            return len(events)


__all__ = ["CycleReport", "PriceStatus", "PriceUpdateService"]
