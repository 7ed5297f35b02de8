from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal

import pytest

from services.price_alerts.app.errors import ConflictError, NotFoundError
from services.price_alerts.app.models import AlertDirection, Asset, User
from services.price_alerts.app.repository import AlertRepository, AssetRepository, UserRepository


def test_list_all_orders_assets_by_name(seed, asset_repository: AssetRepository) -> None:
    seed.asset("solana", name="Solana")
    seed.asset("bitcoin", name="Bitcoin")
    seed.asset("ethereum", name="Ethereum")

    assets = asyncio.run(asset_repository.list_all())

    assert [asset.id for asset in assets] == ["bitcoin", "ethereum", "solana"]
    assert all(asset.current_price is None for asset in assets)


def test_update_price_sets_price_and_timestamp(seed, asset_repository: AssetRepository) -> None:
    seed.asset("bitcoin")
    stamp = datetime(2024, 5, 1, 9, 0)

    asyncio.run(asset_repository.update_price("bitcoin", Decimal("64000.25"), stamp))

    stored = seed.get_asset("bitcoin")
    assert stored.current_price == Decimal("64000.25")
    assert stored.last_updated == stamp


def test_update_price_for_missing_asset_raises(asset_repository: AssetRepository) -> None:
    with pytest.raises(NotFoundError):
        asyncio.run(asset_repository.update_price("ghost", Decimal("1"), datetime.utcnow()))


def test_adding_duplicate_asset_conflicts(seed, asset_repository: AssetRepository) -> None:
    seed.asset("bitcoin")

    with pytest.raises(ConflictError):
        asyncio.run(asset_repository.add(Asset(id="bitcoin", symbol="BTC", name="Bitcoin")))


def test_find_untriggered_returns_denormalised_rows(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin", symbol="BTC", name="Bitcoin")
    seed.asset("ethereum")
    user = seed.user("grace@example.com", first_name=None)
    pending = seed.alert(user, "bitcoin", AlertDirection.ABOVE, "70000")
    seed.alert(user, "bitcoin", AlertDirection.BELOW, "50000", triggered=True)
    seed.alert(user, "ethereum", AlertDirection.ABOVE, "4000")

    alerts = asyncio.run(alert_repository.find_untriggered("bitcoin"))

    assert [alert.id for alert in alerts] == [pending.id]
    assert alerts[0].asset.symbol == "BTC"
    assert alerts[0].user.email == "grace@example.com"
    assert alerts[0].user.display_name == "grace@example.com"


def test_mark_triggered_is_conditional(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin")
    user = seed.user()
    alert = seed.alert(user, "bitcoin", AlertDirection.ABOVE, "100")
    first_at = datetime(2024, 5, 1, 10, 0)

    first = asyncio.run(alert_repository.mark_triggered(alert.id, Decimal("101"), first_at))
    second = asyncio.run(
        alert_repository.mark_triggered(alert.id, Decimal("150"), datetime(2024, 5, 1, 11, 0))
    )

    assert first is True
    assert second is False
    stored = seed.get_alert(alert.id)
    assert stored.triggered is True
    assert stored.triggered_price == Decimal("101")
    assert stored.triggered_at == first_at


def test_mark_triggered_unknown_alert_returns_false(alert_repository: AlertRepository) -> None:
    assert asyncio.run(
        alert_repository.mark_triggered("missing", Decimal("1"), datetime.utcnow())
    ) is False


def test_create_requires_existing_asset_and_positive_target(
    seed, alert_repository: AlertRepository
) -> None:
    seed.asset("bitcoin")
    user = seed.user()

    with pytest.raises(NotFoundError):
        asyncio.run(alert_repository.create(user.id, "ghost", AlertDirection.ABOVE, Decimal("1")))
    with pytest.raises(ValueError):
        asyncio.run(alert_repository.create(user.id, "bitcoin", AlertDirection.ABOVE, Decimal("0")))

    created = asyncio.run(
        alert_repository.create(user.id, "bitcoin", AlertDirection.BELOW, Decimal("25000.5"))
    )
    assert created.triggered is False
    assert created.triggered_price is None
    assert created.target_price == Decimal("25000.5")


def test_ownership_scoped_reads_and_writes(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin")
    owner = seed.user("owner@example.com")
    other = seed.user("other@example.com")
    alert = seed.alert(owner, "bitcoin", AlertDirection.ABOVE, "100")

    assert asyncio.run(alert_repository.find_by_id(alert.id, other.id)) is None
    assert asyncio.run(alert_repository.find_by_id(alert.id, owner.id)).id == alert.id
    with pytest.raises(NotFoundError):
        asyncio.run(alert_repository.update(alert.id, other.id, {"target_price": Decimal("5")}))
    with pytest.raises(NotFoundError):
        asyncio.run(alert_repository.delete(alert.id, other.id))

    asyncio.run(alert_repository.delete(alert.id, owner.id))
    assert asyncio.run(alert_repository.find_by_id(alert.id, owner.id)) is None


def test_triggered_alert_cannot_be_edited(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin")
    user = seed.user()
    alert = seed.alert(user, "bitcoin", AlertDirection.ABOVE, "100")
    asyncio.run(alert_repository.mark_triggered(alert.id, Decimal("120"), datetime(2024, 1, 1)))

    with pytest.raises(ConflictError):
        asyncio.run(
            alert_repository.update(
                alert.id, user.id, {"target_price": Decimal("130"), "direction": "BELOW"}
            )
        )

    stored = seed.get_alert(alert.id)
    assert stored.target_price == Decimal("100")
    assert stored.direction is AlertDirection.ABOVE
    assert stored.triggered is True
    assert stored.triggered_price == Decimal("120")


def test_update_untriggered_alert(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin")
    user = seed.user()
    alert = seed.alert(user, "bitcoin", AlertDirection.ABOVE, "100")

    updated = asyncio.run(
        alert_repository.update(
            alert.id, user.id, {"target_price": Decimal("130"), "direction": "BELOW"}
        )
    )

    assert updated.target_price == Decimal("130")
    assert updated.direction is AlertDirection.BELOW
    assert updated.triggered is False
    assert updated.asset.id == "bitcoin"
    with pytest.raises(ValueError):
        asyncio.run(alert_repository.update(alert.id, user.id, {}))


def test_update_rejects_non_editable_fields(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin")
    user = seed.user()
    alert = seed.alert(user, "bitcoin", AlertDirection.ABOVE, "100")

    with pytest.raises(ValueError):
        asyncio.run(alert_repository.update(alert.id, user.id, {"triggered": False}))


def test_list_for_user_filters_triggered(seed, alert_repository: AlertRepository) -> None:
    seed.asset("bitcoin")
    user = seed.user()
    open_alert = seed.alert(user, "bitcoin", AlertDirection.ABOVE, "100")
    done = seed.alert(user, "bitcoin", AlertDirection.BELOW, "90")
    asyncio.run(alert_repository.mark_triggered(done.id, Decimal("80"), datetime(2024, 1, 1)))

    everything = asyncio.run(alert_repository.list_for_user(user.id))
    triggered = asyncio.run(alert_repository.list_for_user(user.id, triggered=True))
    pending = asyncio.run(alert_repository.list_for_user(user.id, triggered=False))

    assert {alert.id for alert in everything} == {open_alert.id, done.id}
    assert [alert.id for alert in triggered] == [done.id]
    assert [alert.id for alert in pending] == [open_alert.id]


def test_get_asset_returns_none_for_unknown_id(seed, asset_repository: AssetRepository) -> None:
    seed.asset("bitcoin", symbol="BTC")

    assert asyncio.run(asset_repository.get("bitcoin")).symbol == "BTC"
    assert asyncio.run(asset_repository.get("ghost")) is None


def test_user_emails_are_unique(user_repository: UserRepository) -> None:
    created = asyncio.run(user_repository.add(User(email="lin@example.com", last_name="Lin")))

    assert created.id
    assert asyncio.run(user_repository.get(created.id)).display_name == "lin@example.com"
    with pytest.raises(ConflictError):
        asyncio.run(user_repository.add(User(email="lin@example.com")))
