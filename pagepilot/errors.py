from __future__ import annotations

from typing import Optional


class PagePilotError(RuntimeError):
    """Generic error raised when the agent cannot continue."""


class DriverError(PagePilotError):
    """Raised when an operation cannot be carried out against the page."""


class OracleError(PagePilotError):
    """Raised when the decision oracle is unavailable or misconfigured."""


class OracleResponseError(OracleError):
    """Raised when the oracle returns an unusable response, with the raw text attached."""

    def __init__(self, message: str, *, raw_response: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response
