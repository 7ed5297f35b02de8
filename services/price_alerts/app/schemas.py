from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .models import AlertDirection


class AssetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    symbol: str
    name: str
    current_price: Decimal | None
    last_updated: datetime | None


class AlertCreate(BaseModel):
    asset_id: str = Field(..., min_length=1, max_length=64)
    direction: AlertDirection
    target_price: Decimal = Field(..., gt=0, allow_inf_nan=False)


class AlertUpdate(BaseModel):
    direction: AlertDirection | None = None
    target_price: Decimal | None = Field(default=None, gt=0, allow_inf_nan=False)

    def to_update_mapping(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class AlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    asset_id: str
    direction: AlertDirection
    target_price: Decimal
    triggered: bool
    triggered_price: Decimal | None
    triggered_at: datetime | None
    created_at: datetime
    updated_at: datetime


class SchedulerStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_running: bool
    next_update: datetime | None
    interval_minutes: float
    last_tick_started: datetime | None = None
    last_tick_succeeded: bool | None = None


class PriceStatusRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    last_updated: datetime | None
    assets: list[AssetRead]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: str
    scheduler: SchedulerStatusRead
    prices: PriceStatusRead | None = None
    error: str | None = None


class RefreshResponse(BaseModel):
    status: PriceStatusRead
    scheduler: SchedulerStatusRead
