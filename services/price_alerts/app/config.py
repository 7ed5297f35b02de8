from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_ENV_PREFIX = "PRICE_ALERTS_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _positive_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s%s=%r", _ENV_PREFIX, name, raw)
        return default
    return value


@dataclass(slots=True)
class PriceAlertSettings:
    """Application settings for the price alerts service."""

    service_name: str = "price-alerts"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./price_alerts.db"
    market_data_url: str = "https://api.coingecko.com/api/v3"
    primary_timeout_seconds: float = 10.0
    fallback_timeout_seconds: float = 15.0
    update_interval_minutes: float = 1.0
    max_concurrency: int = 8
    notification_url: str = ""
    notification_timeout_seconds: float = 5.0
    user_agent: str = "PriceAlertService/1.0"

    @classmethod
    def from_env(cls) -> "PriceAlertSettings":
        defaults = cls()
        return cls(
            service_name=_env("SERVICE_NAME", defaults.service_name),
            log_level=_env("LOG_LEVEL", defaults.log_level).upper(),
            database_url=_env("DATABASE_URL", defaults.database_url),
            market_data_url=_env("MARKET_DATA_URL", defaults.market_data_url).rstrip("/"),
            primary_timeout_seconds=_positive_float(
                "PRIMARY_TIMEOUT_SECONDS", defaults.primary_timeout_seconds
            ),
            fallback_timeout_seconds=_positive_float(
                "FALLBACK_TIMEOUT_SECONDS", defaults.fallback_timeout_seconds
            ),
            update_interval_minutes=_positive_float(
                "UPDATE_INTERVAL_MINUTES", defaults.update_interval_minutes
            ),
            max_concurrency=int(_positive_float("MAX_CONCURRENCY", defaults.max_concurrency)),
            notification_url=_env("NOTIFICATION_URL", defaults.notification_url).strip(),
            notification_timeout_seconds=_positive_float(
                "NOTIFICATION_TIMEOUT_SECONDS", defaults.notification_timeout_seconds
            ),
            user_agent=_env("USER_AGENT", defaults.user_agent),
        )
