from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base

PRICE_TYPE = Numeric(24, 8, asdecimal=True)


class AlertDirection(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


def to_decimal(value: object) -> Decimal:
    """Convert a numeric value to ``Decimal`` going through ``str`` for floats.

    Raises ``ValueError`` for booleans and anything that is not a number.
    """

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Not a numeric price: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as error:
        raise ValueError(f"Not a numeric price: {value!r}") from error


def _new_id() -> str:
    return uuid.uuid4().hex


class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    current_price: Mapped[Decimal | None] = mapped_column(PRICE_TYPE, nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    alerts: Mapped[list["Alert"]] = relationship(
        "Alert", back_populates="asset", cascade="all, delete-orphan"
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    alerts: Mapped[list["Alert"]] = relationship(
        "Alert", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return self.first_name or self.email


class Alert(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    asset_id: Mapped[str] = mapped_column(ForeignKey("assets.id", ondelete="CASCADE"), index=True)
    direction: Mapped[AlertDirection] = mapped_column(
        SAEnum(AlertDirection, native_enum=False, length=8), nullable=False
    )
    target_price: Mapped[Decimal] = mapped_column(PRICE_TYPE, nullable=False)
    triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    triggered_price: Mapped[Decimal | None] = mapped_column(PRICE_TYPE, nullable=True)
    triggered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    asset: Mapped[Asset] = relationship("Asset", back_populates="alerts")
    user: Mapped[User] = relationship("User", back_populates="alerts")
