"""Location resolution through an ordered fallback chain.

``LocationResolver`` is a plain configuration object: it holds the region,
the device, the lookup adapters and the timings, and nothing else. Each
``resolve()`` call builds its strategy list afresh, so calls are independent
and may run concurrently.

Default mode is sequential with early exit: strategies run in order and the
first valid result meeting ``desired_accuracy_m`` wins. Race mode runs the
device strategies concurrently and takes the first valid answer.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence, Tuple

import httpx
import structlog

from locator.config.settings import (
    STRATEGY_NAMES,
    AveragingSettings,
    LocatorSettings,
    ResolverSettings,
    StrategiesSettings,
    WatchSettings,
)
from locator.core.errors import (
    InvalidCoordinates,
    LocationError,
    LocationUnavailable,
    PermissionDenied,
    StrategyTimeout,
)
from locator.core.geometry import ensure_valid
from locator.core.models import LocationEstimate, Region
from locator.device.permission import ensure_permission
from locator.device.positioning import DevicePositioning, PositionError
from locator.lookup.adapters import LookupAdapter
from locator.observability.metrics import MetricsRegistry, record_duration
from locator.observability.tracing import (
    log_strategy_failed,
    log_strategy_result,
    span,
    trace_context,
)
from locator.resolver.averaging import collect_averaged
from locator.resolver.strategies import Strategy, build_strategies, fallback_estimate
from locator.resolver.watch import WatchCallback, WatchHandle, start_watch

LOGGER = structlog.get_logger(__name__)

SEQUENTIAL = "sequential"
RACE = "race"


@dataclass(frozen=True)
class ResolveOptions:
    """Per-call knobs for resolve()."""

    desired_accuracy_m: float = 50.0
    max_attempts: int = 1
    strategy_order: Tuple[str, ...] = field(default_factory=lambda: tuple(STRATEGY_NAMES))
    mode: str = SEQUENTIAL
    fallback_enabled: bool = True

    def __post_init__(self) -> None:
        if self.mode not in (SEQUENTIAL, RACE):
            raise ValueError(f"mode must be {SEQUENTIAL!r} or {RACE!r}, got {self.mode!r}")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        unknown = [name for name in self.strategy_order if name not in STRATEGY_NAMES]
        if unknown:
            raise ValueError(f"unknown strategies {unknown}; expected a subset of {list(STRATEGY_NAMES)}")
        if len(set(self.strategy_order)) != len(self.strategy_order):
            raise ValueError("strategy_order must not repeat a strategy")

    @classmethod
    def from_settings(cls, settings: ResolverSettings) -> "ResolveOptions":
        return cls(
            desired_accuracy_m=settings.desired_accuracy_m,
            max_attempts=settings.max_attempts,
            strategy_order=tuple(settings.strategy_order),
            mode=settings.mode,
            fallback_enabled=settings.fallback_enabled,
        )

    def with_overrides(self, **overrides: object) -> "ResolveOptions":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "strategy_order" in changes:
            changes["strategy_order"] = tuple(changes["strategy_order"])  # type: ignore[arg-type]
        return replace(self, **changes)


class LocationResolver:
    """Resolves a single validated location estimate for one region."""

    def __init__(
        self,
        region: Region,
        device: DevicePositioning,
        *,
        adapters: Sequence[LookupAdapter] = (),
        client: Optional[httpx.AsyncClient] = None,
        options: Optional[ResolveOptions] = None,
        timings: Optional[StrategiesSettings] = None,
        averaging: Optional[AveragingSettings] = None,
        watch_settings: Optional[WatchSettings] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.region = region
        self.device = device
        self.adapters = list(adapters)
        self.client = client
        self.options = options or ResolveOptions()
        self.timings = timings or StrategiesSettings()
        self.averaging = averaging or AveragingSettings()
        self.watch_settings = watch_settings or WatchSettings()
        self.metrics = metrics or MetricsRegistry()

    @classmethod
    def from_settings(
        cls,
        settings: LocatorSettings,
        device: DevicePositioning,
        *,
        adapters: Sequence[LookupAdapter] = (),
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> "LocationResolver":
        return cls(
            settings.region.to_region(),
            device,
            adapters=adapters,
            client=client,
            options=ResolveOptions.from_settings(settings.resolver),
            timings=settings.strategies,
            averaging=settings.averaging,
            watch_settings=settings.watch,
            metrics=metrics,
        )

    async def _require_permission(self) -> None:
        granted = await ensure_permission(self.device, self.timings.permission_probe.position_options())
        if not granted:
            self.metrics.incr("permission_denied")
            raise PermissionDenied("location permission was not granted")

    async def resolve(self, options: Optional[ResolveOptions] = None) -> LocationEstimate:
        """Return the best validated estimate the chain can produce.

        Raises PermissionDenied when location access is refused, and
        LocationUnavailable when the fallback is disabled and nothing
        upstream produced a valid result.
        """
        options = options or self.options
        self.metrics.incr("resolve_calls")
        with trace_context(operation="resolve"), record_duration(self.metrics, "resolve_duration_ms"):
            await self._require_permission()
            return await self._run_chain(options)

    async def resolve_averaged(
        self,
        samples: Optional[int] = None,
        *,
        delay_s: Optional[float] = None,
        options: Optional[ResolveOptions] = None,
    ) -> LocationEstimate:
        """Average several sequential chain runs, asking for permission once."""
        count = samples if samples is not None else self.averaging.samples
        delay = delay_s if delay_s is not None else self.averaging.delay_s
        options = options or self.options
        with trace_context(operation="resolve_averaged"):
            await self._require_permission()
            return await collect_averaged(
                lambda: self._run_chain(options),
                count,
                region=self.region,
                delay_s=delay,
                metrics=self.metrics,
            )

    async def watch(
        self,
        callback: WatchCallback,
        *,
        max_duration_s: Optional[float] = None,
        target_accuracy_m: Optional[float] = None,
        max_samples: Optional[int] = None,
    ) -> WatchHandle:
        """Stream improving estimates to callback until a stop condition hits."""
        await self._require_permission()
        return start_watch(
            self.device,
            callback,
            region=self.region,
            options=self.timings.watch.position_options(),
            max_duration_s=max_duration_s if max_duration_s is not None else self.watch_settings.max_duration_s,
            target_accuracy_m=(
                target_accuracy_m if target_accuracy_m is not None else self.watch_settings.target_accuracy_m
            ),
            max_samples=max_samples if max_samples is not None else self.watch_settings.max_samples,
            metrics=self.metrics,
        )

    async def _run_chain(self, options: ResolveOptions) -> LocationEstimate:
        strategies = build_strategies(
            options.strategy_order,
            device=self.device,
            timings=self.timings,
            adapters=self.adapters,
            client=self.client,
            metrics=self.metrics,
        )
        best: Optional[LocationEstimate] = None
        for attempt in range(1, options.max_attempts + 1):
            LOGGER.debug("chain_pass", attempt=attempt, mode=options.mode)
            pending: List[Strategy] = strategies
            if options.mode == RACE:
                winner = await self._race([s for s in strategies if s.uses_device])
                if winner is not None:
                    return winner
                pending = [s for s in strategies if not s.uses_device]
            for strategy in pending:
                estimate = await self._attempt(strategy)
                if estimate is None:
                    continue
                if options.mode == RACE or estimate.accuracy_m <= options.desired_accuracy_m:
                    return estimate
                if best is None or estimate.accuracy_m < best.accuracy_m:
                    best = estimate

        if best is not None:
            LOGGER.info("desired_accuracy_missed", accuracy_m=best.accuracy_m, desired_m=options.desired_accuracy_m)
            return best
        if options.fallback_enabled:
            self.metrics.incr("fallbacks_used")
            LOGGER.warning("fallback_used", region=self.region.name)
            return fallback_estimate(self.region)
        self.metrics.incr("locations_unavailable")
        raise LocationUnavailable("no strategy produced a valid location and fallback is disabled")

    async def _race(self, strategies: Sequence[Strategy]) -> Optional[LocationEstimate]:
        if not strategies:
            return None
        tasks = [asyncio.create_task(self._attempt(strategy)) for strategy in strategies]
        try:
            for next_done in asyncio.as_completed(tasks):
                estimate = await next_done
                if estimate is not None:
                    return estimate
            return None
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _attempt(self, strategy: Strategy) -> Optional[LocationEstimate]:
        """Run one strategy; every failure becomes None."""
        self.metrics.incr("strategy_attempts")
        try:
            with span(name="strategy", strategy=strategy.name):
                if strategy.timeout is None:
                    estimate = await strategy.run()
                else:
                    estimate = await asyncio.wait_for(strategy.run(), timeout=strategy.timeout)
        except (asyncio.TimeoutError, StrategyTimeout):
            self.metrics.incr("strategy_timeouts")
            log_strategy_failed(strategy=strategy.name, reason="timeout")
            return None
        except PositionError as exc:
            self.metrics.incr("strategy_failures")
            log_strategy_failed(strategy=strategy.name, reason=exc.code.name.lower())
            return None
        except LocationError as exc:
            self.metrics.incr("strategy_failures")
            log_strategy_failed(strategy=strategy.name, reason=str(exc))
            return None

        if estimate is None:
            self.metrics.incr("strategy_failures")
            log_strategy_failed(strategy=strategy.name, reason="no_result")
            return None
        try:
            ensure_valid(estimate.coordinates, self.region)
        except InvalidCoordinates as exc:
            self.metrics.incr("invalid_coordinates")
            LOGGER.warning("coordinates_rejected", strategy=strategy.name, reason=str(exc))
            return None

        self.metrics.incr("strategy_successes")
        log_strategy_result(
            strategy=strategy.name,
            latitude=estimate.latitude,
            longitude=estimate.longitude,
            accuracy_m=estimate.accuracy_m,
        )
        return estimate
