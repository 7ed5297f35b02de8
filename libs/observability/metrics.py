"""Prometheus metrics for the price alerts service."""

from __future__ import annotations

import time

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

_REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    labelnames=("service", "method", "path", "status"),
)
_REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    labelnames=("service", "method", "path"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

PRICE_UPDATE_CYCLES = Counter(
    "price_update_cycles_total",
    "Scheduled price update cycles by outcome",
    labelnames=("outcome",),
)
PRICE_UPDATE_CYCLE_DURATION = Histogram(
    "price_update_cycle_duration_seconds",
    "Wall time of a full price update cycle",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)
PRICE_UPDATES = Counter(
    "price_updates_total",
    "Asset prices written to the store",
)
MARKET_DATA_FALLBACKS = Counter(
    "market_data_fallback_total",
    "Price fetches served by the fallback market listing endpoint",
)
ALERT_TRIGGERS = Counter(
    "alert_triggers_total",
    "Alerts transitioned to the triggered state",
    labelnames=("direction",),
)
NOTIFICATION_HANDLER_FAILURES = Counter(
    "notification_handler_failures_total",
    "Notification handler invocations that raised",
    labelnames=("handler",),
)
SCHEDULER_TICKS_SKIPPED = Counter(
    "scheduler_ticks_skipped_total",
    "Ticks skipped because the previous tick was still running",
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collect basic request metrics for Prometheus."""

    def __init__(self, app: ASGIApp, *, service_name: str) -> None:
        super().__init__(app)
        self._service_name = service_name

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        route = request.scope.get("route")
        path_template: str = getattr(route, "path", request.url.path)
        method = request.method.upper()
        start = time.perf_counter()
        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(getattr(response, "status_code", 500))
            return response
        finally:
            duration = time.perf_counter() - start
            _REQUEST_COUNTER.labels(self._service_name, method, path_template, status_code).inc()
            _REQUEST_LATENCY.labels(self._service_name, method, path_template).observe(duration)


def setup_metrics(app: FastAPI, *, service_name: str) -> None:
    """Attach Prometheus metrics middleware and endpoint."""

    if getattr(app.state, "_metrics_configured", False):
        return

    app.add_middleware(MetricsMiddleware, service_name=service_name)

    async def metrics_endpoint() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.add_api_route(
        "/metrics",
        metrics_endpoint,
        methods=["GET"],
        include_in_schema=False,
        name="metrics",
    )
    app.state._metrics_configured = True
