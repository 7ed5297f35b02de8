from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import Any

import httpx

from libs.observability.metrics import MARKET_DATA_FALLBACKS

from .errors import ExternalServiceError
from .events import TriggerEvent
from .models import to_decimal

logger = logging.getLogger(__name__)

_MAX_LISTING_PAGE_SIZE = 250


def _positive_price(value: Any) -> Decimal | None:
    try:
        price = to_decimal(value)
    except ValueError:
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class MarketDataClient:
    """Fetch USD prices from a CoinGecko-compatible market data API.

    A bulk ``/simple/price`` lookup is tried first; any failure falls back to
    the ``/coins/markets`` listing, which is slower but returns the same
    prices inside richer per-asset records.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        *,
        primary_timeout: float = 10.0,
        fallback_timeout: float = 15.0,
        user_agent: str = "PriceAlertService/1.0",
    ) -> None:
        self._own_client = client is None
        self._client = client or httpx.AsyncClient()
        self._base_url = base_url.rstrip("/")
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._primary_timeout = primary_timeout
        self._fallback_timeout = fallback_timeout

    async def fetch_prices(self, asset_ids: Iterable[str]) -> dict[str, Decimal]:
        """Return ``asset_id -> price`` for every requested asset with a positive price.

        Raises ``ExternalServiceError`` when both endpoints fail.
        """

        ids = sorted({asset_id for asset_id in asset_ids if asset_id})
        if not ids:
            return {}

        try:
            prices = await self._fetch_simple_prices(ids)
        except (httpx.HTTPError, ValueError, TypeError) as primary_error:
            logger.warning(
                "Primary price endpoint failed, trying fallback: %s",
                primary_error,
                extra={"asset_count": len(ids)},
            )
            try:
                prices = await self._fetch_market_listing(ids)
            except (httpx.HTTPError, ValueError, TypeError) as fallback_error:
                logger.error(
                    "Both price endpoints failed",
                    extra={
                        "primary_error": str(primary_error),
                        "fallback_error": str(fallback_error),
                        "asset_count": len(ids),
                    },
                )
                raise ExternalServiceError(primary_error, fallback_error) from fallback_error
            MARKET_DATA_FALLBACKS.inc()
            logger.info(
                "Fetched prices from fallback endpoint",
                extra={"asset_count": len(ids), "priced": len(prices)},
            )
            return prices

        logger.debug(
            "Fetched prices from primary endpoint",
            extra={"asset_count": len(ids), "priced": len(prices)},
        )
        return prices

    async def _fetch_simple_prices(self, ids: list[str]) -> dict[str, Decimal]:
        response = await self._client.get(
            f"{self._base_url}/simple/price",
            params={"ids": ",".join(ids), "vs_currencies": "usd"},
            timeout=self._primary_timeout,
            headers=self._headers,
        )
        response.raise_for_status()
        data = response.json(parse_float=Decimal)
        if not isinstance(data, dict):
            raise TypeError("Simple price response must be a JSON object")

        prices: dict[str, Decimal] = {}
        for asset_id in ids:
            entry = data.get(asset_id)
            if not isinstance(entry, dict):
                continue
            price = _positive_price(entry.get("usd"))
            if price is not None:
                prices[asset_id] = price
        return prices

    async def _fetch_market_listing(self, ids: list[str]) -> dict[str, Decimal]:
        response = await self._client.get(
            f"{self._base_url}/coins/markets",
            params={
                "vs_currency": "usd",
                "ids": ",".join(ids),
                "order": "market_cap_desc",
                "per_page": min(max(len(ids), 100), _MAX_LISTING_PAGE_SIZE),
                "page": 1,
                "sparkline": "false",
            },
            timeout=self._fallback_timeout,
            headers=self._headers,
        )
        response.raise_for_status()
        data = response.json(parse_float=Decimal)
        if not isinstance(data, list):
            raise TypeError("Market listing response must be a JSON array")

        requested = set(ids)
        prices: dict[str, Decimal] = {}
        for record in data:
            if not isinstance(record, dict):
                continue
            asset_id = record.get("id")
            if asset_id not in requested:
                continue
            price = _positive_price(record.get("current_price"))
            if price is not None:
                prices[asset_id] = price
        return prices

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()


class WebhookNotifier:
    """Notification handler forwarding trigger events to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 5.0,
    ) -> None:
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._url = url

    async def __call__(self, event: TriggerEvent) -> None:
        response = await self._client.post(self._url, json=event.to_dict())
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()


__all__ = ["MarketDataClient", "WebhookNotifier"]
