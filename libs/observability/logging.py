"""Structured logging helpers for the price alerts service."""

from __future__ import annotations

import contextvars
import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

_CORRELATION_ID_CTX: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
_CYCLE_ID_CTX: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "cycle_id", default=None
)
_CONFIGURED_SERVICES: set[str] = set()

_RESERVED_LOG_KEYS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class ContextFilter(logging.Filter):
    """Inject service name, request correlation id and cycle id into log records."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self._service_name
        record.correlation_id = _CORRELATION_ID_CTX.get()
        record.cycle_id = _CYCLE_ID_CTX.get()
        return True


class JsonLogFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "service": getattr(record, "service", self._service_name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info

        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_KEYS or key in payload or value is None:
                continue
            try:
                json.dumps(value)
                payload[key] = value
            except TypeError:
                payload[key] = str(value)
        return json.dumps(payload, default=str)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Populate a correlation identifier for each request."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        correlation_header: str = "X-Correlation-ID",
    ) -> None:
        super().__init__(app)
        self._correlation_header = correlation_header

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get(self._correlation_header) or uuid.uuid4().hex
        token = _CORRELATION_ID_CTX.set(correlation_id)
        request.state.correlation_id = correlation_id
        try:
            response = await call_next(request)
            response.headers.setdefault(self._correlation_header, correlation_id)
            return response
        finally:
            _CORRELATION_ID_CTX.reset(token)


@contextmanager
def cycle_context(cycle_id: str | None = None) -> Iterator[str]:
    """Tag every log record emitted inside the block with a price update cycle id."""

    value = cycle_id or uuid.uuid4().hex[:12]
    token = _CYCLE_ID_CTX.set(value)
    try:
        yield value
    finally:
        _CYCLE_ID_CTX.reset(token)


def configure_logging(service_name: str, level: str | int = logging.INFO) -> None:
    """Configure structured logging for the current service."""

    if service_name in _CONFIGURED_SERVICES:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter(service_name))
    handler.addFilter(ContextFilter(service_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx"):
        logger = logging.getLogger(logger_name)
        logger.handlers = [handler]
        logger.propagate = False
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _CONFIGURED_SERVICES.add(service_name)


def get_correlation_id() -> Optional[str]:
    return _CORRELATION_ID_CTX.get()


def get_cycle_id() -> Optional[str]:
    """Return the id of the price update cycle running in the current context."""

    return _CYCLE_ID_CTX.get()
