from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from services.price_alerts.app.clients import MarketDataClient
from services.price_alerts.app.config import PriceAlertSettings
from services.price_alerts.app.database import create_session_factory
from services.price_alerts.app.events import NotificationBus, TriggerEvent
from services.price_alerts.app.models import Alert, AlertDirection, Asset, User
from services.price_alerts.app.repository import AlertRepository, AssetRepository, UserRepository


class FakeMarketDataClient(MarketDataClient):
    """Serve prices from a mutable mapping instead of the network."""

    def __init__(self, prices: dict[str, Decimal] | None = None) -> None:
        self._own_client = False
        self._client = None
        self.prices: dict[str, Decimal] = dict(prices or {})
        self.error: Exception | None = None
        self.requests: list[list[str]] = []

    async def fetch_prices(self, asset_ids: Iterable[str]) -> dict[str, Decimal]:
        ids = sorted(set(asset_ids))
        self.requests.append(ids)
        if self.error is not None:
            raise self.error
        return {asset_id: self.prices[asset_id] for asset_id in ids if asset_id in self.prices}

    async def aclose(self) -> None:  # pragma: no cover - interface requirement
        return None


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[TriggerEvent] = []

    async def __call__(self, event: TriggerEvent) -> None:
        self.events.append(event)


@pytest.fixture()
def session_factory(tmp_path: Path) -> Iterator[sessionmaker[Session]]:
    settings = PriceAlertSettings(database_url=f"sqlite:///{tmp_path / 'price_alerts.db'}")
    factory = create_session_factory(settings)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture()
def asset_repository(session_factory: sessionmaker[Session]) -> AssetRepository:
    return AssetRepository(session_factory)


@pytest.fixture()
def alert_repository(session_factory: sessionmaker[Session]) -> AlertRepository:
    return AlertRepository(session_factory)


@pytest.fixture()
def user_repository(session_factory: sessionmaker[Session]) -> UserRepository:
    return UserRepository(session_factory)


@pytest.fixture()
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture()
def recorder(bus: NotificationBus) -> RecordingHandler:
    handler = RecordingHandler()
    bus.subscribe(handler)
    return handler


@pytest.fixture()
def trigger_event() -> TriggerEvent:
    return TriggerEvent(
        alert_id="alert-1",
        user_id="user-1",
        asset_id="bitcoin",
        asset_symbol="BTC",
        asset_name="Bitcoin",
        direction=AlertDirection.ABOVE,
        target_price=Decimal("60000"),
        triggered_price=Decimal("60125.5"),
        triggered_at=datetime(2024, 5, 1, 12, 30),
        user_email="ada@example.com",
        user_name="Ada",
    )


@pytest.fixture()
def market_client() -> FakeMarketDataClient:
    return FakeMarketDataClient()


@pytest.fixture()
def seed(session_factory: sessionmaker[Session]):
    """Insert rows synchronously and return them detached."""

    class _Seeder:
        def asset(
            self,
            asset_id: str,
            *,
            symbol: str | None = None,
            name: str | None = None,
            price: str | None = None,
        ) -> Asset:
            asset = Asset(
                id=asset_id,
                symbol=symbol or asset_id.upper(),
                name=name or asset_id.title(),
                current_price=Decimal(price) if price is not None else None,
            )
            return self._add(asset)

        def user(self, email: str = "ada@example.com", first_name: str | None = "Ada") -> User:
            return self._add(User(email=email, first_name=first_name))

        def alert(
            self,
            user: User,
            asset_id: str,
            direction: AlertDirection,
            target: str,
            *,
            triggered: bool = False,
        ) -> Alert:
            return self._add(
                Alert(
                    user_id=user.id,
                    asset_id=asset_id,
                    direction=direction,
                    target_price=Decimal(target),
                    triggered=triggered,
                )
            )

        def _add(self, row):
            with session_factory() as session:
                session.add(row)
                session.commit()
                session.refresh(row)
            return row

        def get_alert(self, alert_id: str) -> Alert:
            with session_factory() as session:
                return session.get(Alert, alert_id)

        def get_asset(self, asset_id: str) -> Asset:
            with session_factory() as session:
                return session.get(Asset, asset_id)

    return _Seeder()
