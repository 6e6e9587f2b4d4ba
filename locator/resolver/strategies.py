"""Strategy chain construction.

A strategy is one way of obtaining an estimate. The chain is just an ordered
list of them; the resolver decides whether to run the list sequentially or
to race the device strategies.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
import structlog

from locator.config.settings import StrategiesSettings
from locator.core.errors import ServiceUnreachable, StrategyTimeout
from locator.core.models import LocationEstimate, LocationMethod, Region
from locator.device.positioning import DevicePositioning, PositionError, PositionErrorCode, PositionOptions
from locator.lookup.adapters import LookupAdapter
from locator.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

DEVICE_METHODS = {
    "high_accuracy": LocationMethod.HIGH_ACCURACY_GPS,
    "standard": LocationMethod.STANDARD_GPS,
    "network": LocationMethod.NETWORK_GPS,
}


@dataclass(frozen=True)
class Strategy:
    """A named, independently timeboxed way to get one estimate.

    ``timeout`` is None when the step bounds itself (IP lookups carry
    per-request HTTP timeouts).
    """

    name: str
    run: Callable[[], Awaitable[Optional[LocationEstimate]]]
    timeout: Optional[float]
    uses_device: bool


def device_strategy(name: str, device: DevicePositioning, options: PositionOptions) -> Strategy:
    method = DEVICE_METHODS[name]

    async def run() -> Optional[LocationEstimate]:
        try:
            position = await device.get_current_position(options)
        except PositionError as exc:
            if exc.code == PositionErrorCode.TIMEOUT:
                raise StrategyTimeout(name, options.timeout) from exc
            raise
        return LocationEstimate(
            coordinates=position.coordinates,
            accuracy_m=position.accuracy_m,
            method=method,
            timestamp_ms=position.timestamp_ms,
            source=name,
        )

    return Strategy(name=name, run=run, timeout=options.timeout, uses_device=True)


def ip_lookup_strategy(
    adapters: Sequence[LookupAdapter],
    client: httpx.AsyncClient,
    metrics: MetricsRegistry,
) -> Strategy:
    """Query services in priority order; the first usable answer wins."""

    async def run() -> Optional[LocationEstimate]:
        for adapter in adapters:
            try:
                estimate = await adapter.lookup(client)
            except ServiceUnreachable as exc:
                metrics.incr("services_unreachable")
                LOGGER.warning("service_unreachable", service=exc.service, reason=exc.reason)
                continue
            if estimate is not None:
                return estimate
        return None

    return Strategy(
        name="ip_lookup",
        run=run,
        timeout=None,
        uses_device=False,
    )


def fallback_estimate(region: Region) -> LocationEstimate:
    return LocationEstimate(
        coordinates=region.fallback,
        accuracy_m=region.fallback_accuracy_m,
        method=LocationMethod.FALLBACK,
        source=region.name,
    )


def build_strategies(
    order: Sequence[str],
    *,
    device: DevicePositioning,
    timings: StrategiesSettings,
    adapters: Sequence[LookupAdapter],
    client: Optional[httpx.AsyncClient],
    metrics: MetricsRegistry,
) -> List[Strategy]:
    strategies: List[Strategy] = []
    for name in order:
        if name in DEVICE_METHODS:
            timing = getattr(timings, name)
            strategies.append(device_strategy(name, device, timing.position_options()))
        elif name == "ip_lookup":
            if client is None or not adapters:
                LOGGER.debug("strategy_skipped", strategy=name, reason="no lookup services")
                continue
            strategies.append(ip_lookup_strategy(adapters, client, metrics))
        else:
            raise ValueError(f"Unknown strategy: {name}")
    return strategies
