"""Device positioning interface consumed by the resolver.

The shape mirrors the browser Geolocation API: one-shot fixes with
accuracy/timeout/cache hints, a watch stream, and an optional permission
query.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Optional, Protocol

from locator.core.models import Coordinates, now_ms


class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"


class PositionErrorCode(IntEnum):
    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3


class PositionError(Exception):
    """Failure reported by the device for a position request."""

    def __init__(self, code: PositionErrorCode, message: str = "") -> None:
        super().__init__(message or code.name.lower())
        self.code = code


@dataclass(frozen=True, slots=True)
class PositionOptions:
    """Per-request hints; timeout and maximum_age are in seconds."""

    enable_high_accuracy: bool = False
    timeout: float = 10.0
    maximum_age: float = 0.0


@dataclass(frozen=True, slots=True)
class DevicePosition:
    latitude: float
    longitude: float
    accuracy_m: float
    timestamp_ms: int = field(default_factory=now_ms)

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(latitude=self.latitude, longitude=self.longitude)


PositionCallback = Callable[[DevicePosition], None]
ErrorCallback = Callable[[PositionError], None]


class DevicePositioning(Protocol):
    async def query_permission(self) -> Optional[PermissionState]:
        """Return the permission state, or None when no permission API exists."""

    async def get_current_position(self, options: PositionOptions) -> DevicePosition:
        """Return one fix or raise PositionError."""

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        """Start a position stream and return its watch id."""

    def clear_watch(self, watch_id: int) -> None:
        """Stop the stream identified by watch_id."""


class UnavailableDevice:
    """Host without positioning hardware; only IP lookup and fallback can answer."""

    async def query_permission(self) -> Optional[PermissionState]:
        return None

    async def get_current_position(self, options: PositionOptions) -> DevicePosition:
        raise PositionError(PositionErrorCode.POSITION_UNAVAILABLE, "no positioning hardware")

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        on_error(PositionError(PositionErrorCode.POSITION_UNAVAILABLE, "no positioning hardware"))
        return 0

    def clear_watch(self, watch_id: int) -> None:
        return None
