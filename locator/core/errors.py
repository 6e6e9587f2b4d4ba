"""Error taxonomy for location resolution.

Only PermissionDenied and LocationUnavailable ever reach callers of the
resolver; the others are recovery signals raised and handled inside the
strategy chain.
"""
from __future__ import annotations


class LocationError(Exception):
    """Base class for resolver errors."""


class PermissionDenied(LocationError):
    """The user or OS declined location access."""


class StrategyTimeout(LocationError):
    """A single strategy exceeded its timebox."""

    def __init__(self, strategy: str, timeout: float) -> None:
        super().__init__(f"strategy {strategy} timed out after {timeout:g}s")
        self.strategy = strategy
        self.timeout = timeout


class InvalidCoordinates(LocationError):
    """A result failed bounding-box, radius or sentinel validation."""


class ServiceUnreachable(LocationError):
    """An IP geolocation service could not be reached or answered with an error."""

    def __init__(self, service: str, reason: str) -> None:
        super().__init__(f"{service}: {reason}")
        self.service = service
        self.reason = reason


class LocationUnavailable(LocationError):
    """Every strategy failed and no fallback was allowed."""
