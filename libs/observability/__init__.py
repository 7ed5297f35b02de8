"""Logging and metrics helpers shared by the service packages."""

from .logging import (
    RequestContextMiddleware,
    configure_logging,
    cycle_context,
    get_correlation_id,
    get_cycle_id,
)
from .metrics import setup_metrics

__all__ = [
    "RequestContextMiddleware",
    "configure_logging",
    "cycle_context",
    "get_correlation_id",
    "get_cycle_id",
    "setup_metrics",
]
