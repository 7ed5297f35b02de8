from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from libs.observability.logging import RequestContextMiddleware, configure_logging
from libs.observability.metrics import setup_metrics

from .clients import MarketDataClient
from .config import PriceAlertSettings
from .database import create_session_factory, ping
from .errors import ConflictError, ExternalServiceError, NotFoundError
from .evaluator import AlertEvaluator
from .events import NotificationBus
from .notifiers import register_default_handlers
from .price_updates import PriceUpdateService
from .repository import AlertRepository, AssetRepository
from .scheduler import UpdateScheduler
from .schemas import (
    AlertCreate,
    AlertRead,
    AlertUpdate,
    AssetRead,
    HealthResponse,
    PriceStatusRead,
    RefreshResponse,
    SchedulerStatusRead,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: PriceAlertSettings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    market_client: MarketDataClient | None = None,
    bus: NotificationBus | None = None,
    start_background_tasks: bool = True,
) -> FastAPI:
    settings = settings or PriceAlertSettings.from_env()
    session_factory = session_factory or create_session_factory(settings)
    market_client = market_client or MarketDataClient(
        settings.market_data_url,
        primary_timeout=settings.primary_timeout_seconds,
        fallback_timeout=settings.fallback_timeout_seconds,
        user_agent=settings.user_agent,
    )
    bus = bus or NotificationBus()

    assets = AssetRepository(session_factory)
    alerts = AlertRepository(session_factory)
    evaluator = AlertEvaluator(alerts, bus)
    price_service = PriceUpdateService(
        assets,
        market_client,
        evaluator,
        max_concurrency=settings.max_concurrency,
    )
    scheduler = UpdateScheduler(
        price_service.run_cycle,
        interval_minutes=settings.update_interval_minutes,
    )

    app = FastAPI(title="Price Alerts")
    app.add_middleware(RequestContextMiddleware)
    setup_metrics(app, service_name=settings.service_name)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.bus = bus
    app.state.evaluator = evaluator
    app.state.price_service = price_service
    app.state.scheduler = scheduler
    app.state.clients = [market_client]

    if start_background_tasks:

        @app.on_event("startup")
        async def _startup() -> None:  # pragma: no cover - FastAPI wiring
            configure_logging(settings.service_name, settings.log_level)
            handlers = register_default_handlers(bus, settings)
            app.state.clients.extend(h for h in handlers if hasattr(h, "aclose"))
            await scheduler.initialize()
            logger.info("Price alerts service started")

        @app.on_event("shutdown")
        async def _shutdown() -> None:  # pragma: no cover - FastAPI wiring
            await scheduler.stop()
            for client in app.state.clients:
                await client.aclose()

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(ExternalServiceError)
    async def _upstream(request: Request, exc: ExternalServiceError) -> JSONResponse:
        logger.error("Market data unavailable: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": "Market data service unavailable"},
        )

    @app.get("/health", response_model=HealthResponse, tags=["system"])
    async def health(response: Response) -> HealthResponse:
        scheduler_status = SchedulerStatusRead.model_validate(scheduler.status())
        try:
            await asyncio.to_thread(ping, session_factory)
            price_status = await price_service.get_status()
        except Exception as error:  # noqa: BLE001
            logger.error("Health check failed: %s", error)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="ERROR",
                timestamp=datetime.utcnow(),
                database="disconnected",
                scheduler=scheduler_status,
                error=str(error),
            )
        return HealthResponse(
            status="OK",
            timestamp=datetime.utcnow(),
            database="connected",
            scheduler=scheduler_status,
            prices=PriceStatusRead.model_validate(price_status),
        )

    @app.get("/health/scheduler", response_model=SchedulerStatusRead, tags=["system"])
    async def scheduler_health() -> SchedulerStatusRead:
        return SchedulerStatusRead.model_validate(scheduler.status())

    @app.get("/assets", response_model=list[AssetRead])
    async def list_assets() -> list[AssetRead]:
        return [AssetRead.model_validate(asset) for asset in await assets.list_all()]

    @app.get("/assets/{asset_id}", response_model=AssetRead)
    async def get_asset(asset_id: str) -> AssetRead:
        asset = await assets.get(asset_id)
        if asset is None:
            raise NotFoundError("Asset", asset_id)
        return AssetRead.model_validate(asset)

    @app.get("/prices/status", response_model=PriceStatusRead)
    async def price_status() -> PriceStatusRead:
        return PriceStatusRead.model_validate(await price_service.get_status())

    @app.post("/prices/refresh", response_model=RefreshResponse)
    async def refresh_prices() -> RefreshResponse:
        if not await scheduler.run_once():
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="A price update is already running.",
            )
        return RefreshResponse(
            status=PriceStatusRead.model_validate(await price_service.get_status()),
            scheduler=SchedulerStatusRead.model_validate(scheduler.status()),
        )

    @app.get("/prices/realtime", response_model=dict[str, str])
    async def realtime_prices(ids: str | None = None) -> dict[str, str]:
        asset_ids = None
        if ids is not None:
            asset_ids = [part.strip() for part in ids.split(",") if part.strip()]
        prices = await price_service.get_realtime_prices(asset_ids)
        return {asset_id: str(price) for asset_id, price in prices.items()}

    @app.get("/users/{user_id}/alerts", response_model=list[AlertRead])
    async def list_alerts(user_id: str) -> list[AlertRead]:
        return [AlertRead.model_validate(a) for a in await alerts.list_for_user(user_id)]

    @app.get("/users/{user_id}/alerts/triggered", response_model=list[AlertRead])
    async def list_triggered_alerts(user_id: str) -> list[AlertRead]:
        rows = await alerts.list_for_user(user_id, triggered=True)
        return [AlertRead.model_validate(a) for a in rows]

    @app.post(
        "/users/{user_id}/alerts",
        response_model=AlertRead,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_alert(user_id: str, payload: AlertCreate) -> AlertRead:
        created = await alerts.create(
            user_id, payload.asset_id.strip(), payload.direction, payload.target_price
        )
        return AlertRead.model_validate(created)

    @app.get("/users/{user_id}/alerts/{alert_id}", response_model=AlertRead)
    async def get_alert(user_id: str, alert_id: str) -> AlertRead:
        alert = await alerts.find_by_id(alert_id, user_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return AlertRead.model_validate(alert)

    @app.put("/users/{user_id}/alerts/{alert_id}", response_model=AlertRead)
    async def update_alert(user_id: str, alert_id: str, payload: AlertUpdate) -> AlertRead:
        values = payload.to_update_mapping()
        if not values:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="No editable fields supplied.",
            )
        updated = await alerts.update(alert_id, user_id, values)
        return AlertRead.model_validate(updated)

    @app.delete("/users/{user_id}/alerts/{alert_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_alert(user_id: str, alert_id: str) -> Response:
        await alerts.delete(alert_id, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app
