"""Exception hierarchy shared by the catalog client, the rate gate and the harvester."""
from __future__ import annotations

from . import config


class HarvestError(Exception):
    """Base class for harvester failures."""


class AuthenticationError(HarvestError):
    """Token exchange failed; the run cannot continue."""


class CatalogAPIError(HarvestError):
    """Non-retryable error response from the catalog API."""

    def __init__(self, method: str, path: str, status: int, body: str = "") -> None:
        self.method = method
        self.path = path
        self.status = status
        self.body = (body or "")[: config.MAX_ERROR_BODY]
        super().__init__(f"{method} {path} failed with status {status}: {self.body}")


class CatalogDecodeError(CatalogAPIError):
    """Response body could not be decoded as the expected JSON document."""


class HarvestCancelled(HarvestError):
    """Raised when a wait or a pass is interrupted by the cancellation event."""
