"""Error taxonomy shared by the stores, the market data client and the HTTP layer."""

from __future__ import annotations


class PriceAlertError(Exception):
    """Base class for errors raised by the price alerts service."""


class NotFoundError(PriceAlertError):
    """Referenced asset or alert does not exist or is not owned by the caller."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(f"{resource} {identifier!r} not found")
        self.resource = resource
        self.identifier = identifier


class ConflictError(PriceAlertError):
    """Raised when creating a record whose key already exists."""


class ExternalServiceError(PriceAlertError):
    """Both market data endpoints failed for the same request."""

    def __init__(self, primary_error: BaseException, fallback_error: BaseException) -> None:
        super().__init__(
            "Failed to fetch prices from market data service: "
            f"primary endpoint: {primary_error}; fallback endpoint: {fallback_error}"
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error


__all__ = ["ConflictError", "ExternalServiceError", "NotFoundError", "PriceAlertError"]
