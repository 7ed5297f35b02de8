from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from .errors import ConflictError, NotFoundError
from .models import Alert, AlertDirection, Asset, User, to_decimal

_EDITABLE_ALERT_FIELDS = frozenset({"direction", "target_price"})

T = TypeVar("T")


class _Repository:
    """Run blocking SQLAlchemy work in a worker thread with its own session."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def _run(self, work: Callable[[Session], T]) -> T:
        def _call() -> T:
            with self._session_factory() as session:
                return work(session)

        return await asyncio.to_thread(_call)


class AssetRepository(_Repository):
    """Catalog of tracked assets and their last known price."""

    async def list_all(self) -> Sequence[Asset]:
        def _query(session: Session) -> Sequence[Asset]:
            stmt = select(Asset).order_by(Asset.name, Asset.id)
            return session.execute(stmt).scalars().all()

        return await self._run(_query)

    async def list_by_ids(self, asset_ids: Iterable[str]) -> Sequence[Asset]:
        ids = list(asset_ids)

        def _query(session: Session) -> Sequence[Asset]:
            stmt = select(Asset).where(Asset.id.in_(ids)).order_by(Asset.name, Asset.id)
            return session.execute(stmt).scalars().all()

        return await self._run(_query)

    async def list_recently_updated(self) -> Sequence[Asset]:
        def _query(session: Session) -> Sequence[Asset]:
            stmt = select(Asset).order_by(Asset.last_updated.desc().nulls_last(), Asset.name)
            return session.execute(stmt).scalars().all()

        return await self._run(_query)

    async def get(self, asset_id: str) -> Asset | None:
        return await self._run(lambda session: session.get(Asset, asset_id))

    async def add(self, asset: Asset) -> Asset:
        def _add(session: Session) -> Asset:
            if session.get(Asset, asset.id) is not None:
                raise ConflictError(f"Asset {asset.id!r} already exists")
            session.add(asset)
            session.commit()
            session.refresh(asset)
            return asset

        return await self._run(_add)

    async def update_price(self, asset_id: str, price: Decimal, timestamp: datetime) -> None:
        def _update(session: Session) -> None:
            stmt = (
                update(Asset)
                .where(Asset.id == asset_id)
                .values(current_price=price, last_updated=timestamp, updated_at=timestamp)
            )
            result = session.execute(stmt)
            session.commit()
            if result.rowcount == 0:
                raise NotFoundError("Asset", asset_id)

        await self._run(_update)


class UserRepository(_Repository):
    async def add(self, user: User) -> User:
        def _add(session: Session) -> User:
            session.add(user)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"User {user.email!r} already exists") from error
            session.refresh(user)
            return user

        return await self._run(_add)

    async def get(self, user_id: str) -> User | None:
        return await self._run(lambda session: session.get(User, user_id))


class AlertRepository(_Repository):
    """Persistence for price alerts, scoped by asset and by owning user."""

    @staticmethod
    def _with_details():
        return select(Alert).options(joinedload(Alert.asset), joinedload(Alert.user))

    async def find_untriggered(self, asset_id: str) -> Sequence[Alert]:
        def _query(session: Session) -> Sequence[Alert]:
            stmt = self._with_details().where(
                Alert.asset_id == asset_id, Alert.triggered.is_(False)
            )
            return session.execute(stmt).scalars().all()

        return await self._run(_query)

    async def find_by_id(self, alert_id: str, user_id: str) -> Alert | None:
        def _query(session: Session) -> Alert | None:
            stmt = self._with_details().where(Alert.id == alert_id, Alert.user_id == user_id)
            return session.execute(stmt).scalar_one_or_none()

        return await self._run(_query)

    async def list_for_user(
        self, user_id: str, *, triggered: bool | None = None
    ) -> Sequence[Alert]:
        def _query(session: Session) -> Sequence[Alert]:
            stmt = self._with_details().where(Alert.user_id == user_id)
            if triggered is None:
                stmt = stmt.order_by(Alert.created_at.desc())
            elif triggered:
                stmt = stmt.where(Alert.triggered.is_(True)).order_by(Alert.triggered_at.desc())
            else:
                stmt = stmt.where(Alert.triggered.is_(False)).order_by(Alert.created_at.desc())
            return session.execute(stmt).scalars().all()

        return await self._run(_query)

    async def create(
        self,
        user_id: str,
        asset_id: str,
        direction: AlertDirection,
        target_price: Decimal,
    ) -> Alert:
        target = to_decimal(target_price)
        if not target.is_finite() or target <= 0:
            raise ValueError("target_price must be a positive number")

        def _create(session: Session) -> Alert:
            if session.get(Asset, asset_id) is None:
                raise NotFoundError("Asset", asset_id)
            if session.get(User, user_id) is None:
                raise NotFoundError("User", user_id)
            alert = Alert(
                user_id=user_id,
                asset_id=asset_id,
                direction=AlertDirection(direction),
                target_price=target,
            )
            session.add(alert)
            session.commit()
            session.refresh(alert)
            return alert

        return await self._run(_create)

    async def update(
        self, alert_id: str, user_id: str, values: Mapping[str, object]
    ) -> Alert:
        unknown = set(values) - _EDITABLE_ALERT_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if not values:
            raise ValueError("No editable fields supplied")
        changes = dict(values)
        if "target_price" in changes:
            target = to_decimal(changes["target_price"])
            if not target.is_finite() or target <= 0:
                raise ValueError("target_price must be a positive number")
            changes["target_price"] = target
        if "direction" in changes:
            changes["direction"] = AlertDirection(changes["direction"])

        def _update(session: Session) -> Alert:
            result = session.execute(
                update(Alert)
                .where(
                    Alert.id == alert_id,
                    Alert.user_id == user_id,
                    Alert.triggered.is_(False),
                )
                .values(**changes)
            )
            session.commit()
            if result.rowcount != 1:
                owned = session.execute(
                    select(Alert.id).where(Alert.id == alert_id, Alert.user_id == user_id)
                ).scalar_one_or_none()
                if owned is None:
                    raise NotFoundError("Alert", alert_id)
                raise ConflictError(f"Alert {alert_id!r} has already triggered and cannot be edited")
            return session.execute(
                self._with_details()
                .where(Alert.id == alert_id)
                .execution_options(populate_existing=True)
            ).scalar_one()

        return await self._run(_update)

    async def delete(self, alert_id: str, user_id: str) -> None:
        def _delete(session: Session) -> None:
            alert = session.execute(
                select(Alert).where(Alert.id == alert_id, Alert.user_id == user_id)
            ).scalar_one_or_none()
            if alert is None:
                raise NotFoundError("Alert", alert_id)
            session.delete(alert)
            session.commit()

        await self._run(_delete)

    async def mark_triggered(self, alert_id: str, price: Decimal, timestamp: datetime) -> bool:
        """Flip ``triggered`` to true unless another writer already did.

        Returns ``False`` when no untriggered row matched, which callers treat
        as "already triggered" rather than as an error.
        """

        def _mark(session: Session) -> bool:
            stmt = (
                update(Alert)
                .where(Alert.id == alert_id, Alert.triggered.is_(False))
                .values(
                    triggered=True,
                    triggered_price=price,
                    triggered_at=timestamp,
                    updated_at=timestamp,
                )
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

        return await self._run(_mark)


__all__ = ["AlertRepository", "AssetRepository", "UserRepository"]
