"""Continuous position monitoring with automatic unsubscription."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from locator.core.geometry import is_valid_for_region
from locator.core.models import LocationEstimate, LocationMethod, Region
from locator.device.positioning import (
    DevicePosition,
    DevicePositioning,
    PositionError,
    PositionErrorCode,
    PositionOptions,
)
from locator.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

WatchCallback = Callable[[LocationEstimate], None]


class WatchHandle:
    """Subscription to a device position stream.

    The callback only sees samples that strictly improve on the best accuracy
    so far. The underlying device watch is cleared exactly once, whichever of
    target reached, time limit, sample limit, permission loss or cancel()
    comes first.
    """

    def __init__(
        self,
        device: DevicePositioning,
        callback: WatchCallback,
        *,
        region: Region,
        target_accuracy_m: float,
        max_samples: Optional[int],
        method: LocationMethod,
        metrics: MetricsRegistry,
    ) -> None:
        self._device = device
        self._callback = callback
        self._region = region
        self._target_accuracy_m = target_accuracy_m
        self._max_samples = max_samples
        self._method = method
        self._metrics = metrics
        self._done = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None
        self.watch_id: Optional[int] = None
        self.best: Optional[LocationEstimate] = None
        self.samples = 0
        self.stop_reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return not self._done.is_set()

    def _start(self, options: PositionOptions, max_duration_s: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max_duration_s, self._stop, "max_duration")
        watch_id = self._device.watch_position(self._on_position, self._on_error, options)
        self.watch_id = watch_id
        if self._done.is_set():
            # Stopped by a sample delivered synchronously during subscription.
            self._device.clear_watch(watch_id)

    def _on_position(self, position: DevicePosition) -> None:
        if self._done.is_set():
            return
        self.samples += 1
        estimate = LocationEstimate(
            coordinates=position.coordinates,
            accuracy_m=position.accuracy_m,
            method=self._method,
            timestamp_ms=position.timestamp_ms,
            source="watch",
        )
        if not is_valid_for_region(estimate.coordinates, self._region):
            self._metrics.incr("invalid_coordinates")
            LOGGER.info("watch_sample_rejected", latitude=estimate.latitude, longitude=estimate.longitude)
        elif self.best is None or estimate.accuracy_m < self.best.accuracy_m:
            self.best = estimate
            self._metrics.incr("watch_updates")
            LOGGER.info("watch_improved", accuracy_m=round(estimate.accuracy_m, 1), sample=self.samples)
            self._callback(estimate)
            if estimate.accuracy_m <= self._target_accuracy_m:
                self._stop("target_reached")
                return
        if self._max_samples is not None and self.samples >= self._max_samples:
            self._stop("max_samples")

    def _on_error(self, error: PositionError) -> None:
        LOGGER.warning("watch_error", code=error.code.name.lower(), message=str(error))
        if error.code == PositionErrorCode.PERMISSION_DENIED:
            self._stop("permission_denied")

    def _stop(self, reason: str) -> None:
        if self._done.is_set():
            return
        self.stop_reason = reason
        self._done.set()
        if self._timer is not None:
            self._timer.cancel()
        if self.watch_id is not None:
            self._device.clear_watch(self.watch_id)
        LOGGER.info(
            "watch_stopped",
            reason=reason,
            samples=self.samples,
            best_accuracy_m=self.best.accuracy_m if self.best else None,
        )

    def cancel(self) -> None:
        """Stop the subscription early. Safe to call more than once."""
        self._stop("cancelled")

    async def wait(self) -> Optional[LocationEstimate]:
        """Block until the watch stops and return the best estimate seen."""
        await self._done.wait()
        return self.best


def start_watch(
    device: DevicePositioning,
    callback: WatchCallback,
    *,
    region: Region,
    options: PositionOptions,
    max_duration_s: float,
    target_accuracy_m: float,
    max_samples: Optional[int] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> WatchHandle:
    """Subscribe to the device stream. Must run inside an event loop."""
    method = LocationMethod.HIGH_ACCURACY_GPS if options.enable_high_accuracy else LocationMethod.NETWORK_GPS
    handle = WatchHandle(
        device,
        callback,
        region=region,
        target_accuracy_m=target_accuracy_m,
        max_samples=max_samples,
        method=method,
        metrics=metrics or MetricsRegistry(),
    )
    handle._start(options, max_duration_s)
    return handle


def cancel(handle: WatchHandle) -> None:
    handle.cancel()
