import asyncio
import time

import httpx
import pytest
from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars

from locator.config.settings import StrategiesSettings, StrategyTiming
from locator.core.errors import LocationUnavailable, PermissionDenied
from locator.core.models import LocationMethod
from locator.device.positioning import (
    DevicePosition,
    PermissionState,
    PositionError,
    PositionErrorCode,
    UnavailableDevice,
)
from locator.device.scripted import HANG, ScriptedDevice
from locator.lookup.adapters import IPLookupAdapter
from locator.observability.metrics import MetricsRegistry
from locator.resolver.chain import LocationResolver, ResolveOptions

UNAVAILABLE = PositionError(PositionErrorCode.POSITION_UNAVAILABLE)
TIMEOUT = PositionError(PositionErrorCode.TIMEOUT)


def fast_timings(timeout_s: float = 0.05) -> StrategiesSettings:
    timing = StrategyTiming(enable_high_accuracy=True, timeout_s=timeout_s, maximum_age_s=0)
    return StrategiesSettings(high_accuracy=timing, standard=timing, network=timing, permission_probe=timing)


def paris_transport(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"latitude": 48.8566, "longitude": 2.3522, "accuracy": 50})

    return httpx.MockTransport(handler)


def test_high_accuracy_fix_returned_unchanged(batna):
    async def _run():
        device = ScriptedDevice(
            permission=PermissionState.GRANTED,
            fixes=[DevicePosition(35.5600, 6.1750, 8.0)],
        )
        resolver = LocationResolver(batna, device)
        estimate = await resolver.resolve()
        assert estimate.latitude == 35.5600
        assert estimate.longitude == 6.1750
        assert estimate.accuracy_m == 8.0
        assert estimate.method is LocationMethod.HIGH_ACCURACY_GPS
        assert len(device.position_requests) == 1
        assert device.position_requests[0].enable_high_accuracy is True

    asyncio.run(_run())


def test_ip_result_outside_box_falls_back(batna):
    async def _run():
        calls = []
        metrics = MetricsRegistry()
        device = ScriptedDevice(permission=PermissionState.GRANTED, fixes=[HANG, TIMEOUT, HANG])
        async with httpx.AsyncClient(transport=paris_transport(calls)) as client:
            resolver = LocationResolver(
                batna,
                device,
                adapters=[IPLookupAdapter(name="ipapi.co", url="https://ipapi.co/json/")],
                client=client,
                timings=fast_timings(),
                metrics=metrics,
            )
            estimate = await resolver.resolve()
        assert len(calls) == 1
        assert estimate.coordinates == batna.fallback
        assert estimate.accuracy_m == 1000.0
        assert estimate.method is LocationMethod.FALLBACK
        assert metrics.get("strategy_timeouts") == 3
        assert metrics.get("invalid_coordinates") == 1
        assert metrics.get("fallbacks_used") == 1

    asyncio.run(_run())


def test_every_strategy_failing_returns_fallback(batna):
    async def _run():
        resolver = LocationResolver(batna, UnavailableDevice())
        first = await resolver.resolve()
        second = await resolver.resolve()
        assert first.coordinates == second.coordinates == batna.fallback
        assert first.accuracy_m == second.accuracy_m == batna.fallback_accuracy_m

    asyncio.run(_run())


def test_permission_denied_makes_no_calls(batna):
    async def _run():
        calls = []
        metrics = MetricsRegistry()
        device = ScriptedDevice(permission=PermissionState.DENIED, fixes=[DevicePosition(35.56, 6.175, 8.0)])
        async with httpx.AsyncClient(transport=paris_transport(calls)) as client:
            resolver = LocationResolver(
                batna,
                device,
                adapters=[IPLookupAdapter(name="ipapi.co", url="https://ipapi.co/json/")],
                client=client,
                metrics=metrics,
            )
            with pytest.raises(PermissionDenied):
                await resolver.resolve()
        assert device.device_calls == 0
        assert calls == []
        assert metrics.get("strategy_attempts") == 0
        assert metrics.get("permission_denied") == 1

    asyncio.run(_run())


def test_refused_prompt_raises_permission_denied(batna):
    async def _run():
        device = ScriptedDevice(fixes=[PositionError(PositionErrorCode.PERMISSION_DENIED)])
        with pytest.raises(PermissionDenied):
            await LocationResolver(batna, device).resolve()
        assert len(device.position_requests) == 1

    asyncio.run(_run())


def test_race_returns_first_valid_fix(batna):
    async def _run():
        device = ScriptedDevice(
            permission=PermissionState.GRANTED,
            fixes=[HANG, DevicePosition(35.5600, 6.1750, 20.0), UNAVAILABLE],
        )
        resolver = LocationResolver(batna, device, options=ResolveOptions(mode="race"))
        started = time.perf_counter()
        estimate = await resolver.resolve()
        assert time.perf_counter() - started < 5
        assert estimate.method is LocationMethod.STANDARD_GPS
        assert estimate.accuracy_m == 20.0

    asyncio.run(_run())


def test_race_falls_through_when_device_fails(batna):
    async def _run():
        device = ScriptedDevice(permission=PermissionState.GRANTED, fixes=[UNAVAILABLE, UNAVAILABLE, UNAVAILABLE])
        resolver = LocationResolver(batna, device, options=ResolveOptions(mode="race"))
        estimate = await resolver.resolve()
        assert estimate.method is LocationMethod.FALLBACK
        assert len(device.position_requests) == 3

    asyncio.run(_run())


def test_best_result_returned_when_target_missed(batna):
    async def _run():
        device = ScriptedDevice(
            permission=PermissionState.GRANTED,
            fixes=[
                DevicePosition(35.5560, 6.1740, 120.0),
                DevicePosition(35.5570, 6.1750, 80.0),
                UNAVAILABLE,
            ],
        )
        estimate = await LocationResolver(batna, device).resolve()
        assert estimate.method is LocationMethod.STANDARD_GPS
        assert estimate.accuracy_m == 80.0
        assert len(device.position_requests) == 3

    asyncio.run(_run())


def test_out_of_box_device_fix_is_skipped(batna):
    async def _run():
        metrics = MetricsRegistry()
        device = ScriptedDevice(
            permission=PermissionState.GRANTED,
            fixes=[DevicePosition(0.0, 0.0, 5.0), DevicePosition(35.5600, 6.1750, 30.0)],
        )
        estimate = await LocationResolver(batna, device, metrics=metrics).resolve()
        assert estimate.method is LocationMethod.STANDARD_GPS
        assert metrics.get("invalid_coordinates") == 1

    asyncio.run(_run())


def test_fallback_disabled_raises(batna):
    async def _run():
        metrics = MetricsRegistry()
        resolver = LocationResolver(batna, UnavailableDevice(), metrics=metrics)
        with pytest.raises(LocationUnavailable):
            await resolver.resolve(ResolveOptions(fallback_enabled=False))
        assert metrics.get("locations_unavailable") == 1
        assert metrics.get("fallbacks_used") == 0

    asyncio.run(_run())


def test_second_pass_runs_when_first_fails(batna):
    async def _run():
        device = ScriptedDevice(
            permission=PermissionState.GRANTED,
            fixes=[UNAVAILABLE, UNAVAILABLE, UNAVAILABLE, DevicePosition(35.5600, 6.1750, 8.0)],
        )
        estimate = await LocationResolver(batna, device).resolve(ResolveOptions(max_attempts=2))
        assert estimate.method is LocationMethod.HIGH_ACCURACY_GPS
        assert len(device.position_requests) == 4

    asyncio.run(_run())


def test_strategy_order_is_respected(batna):
    async def _run():
        device = ScriptedDevice(permission=PermissionState.GRANTED, fixes=[DevicePosition(35.5600, 6.1750, 40.0)])
        options = ResolveOptions(strategy_order=("network", "high_accuracy"))
        estimate = await LocationResolver(batna, device).resolve(options)
        assert estimate.method is LocationMethod.NETWORK_GPS
        assert device.position_requests[0].enable_high_accuracy is False

    asyncio.run(_run())


def test_resolve_averaged_asks_permission_once(batna):
    async def _run():
        device = ScriptedDevice(
            fixes=[
                UNAVAILABLE,
                DevicePosition(35.5600, 6.1750, 10.0),
                DevicePosition(35.5602, 6.1752, 10.0),
                DevicePosition(35.5604, 6.1754, 10.0),
            ],
        )
        resolver = LocationResolver(batna, device)
        estimate = await resolver.resolve_averaged(3, delay_s=0)
        assert device.permission_queries == 1
        assert estimate.method is LocationMethod.AVERAGED
        assert estimate.latitude == pytest.approx(35.5602)
        assert estimate.longitude == pytest.approx(6.1752)

    asyncio.run(_run())


def test_options_validate_mode():
    with pytest.raises(ValueError):
        ResolveOptions(mode="parallel")
    with pytest.raises(ValueError):
        ResolveOptions(max_attempts=0)
    options = ResolveOptions().with_overrides(mode="race", desired_accuracy_m=None, strategy_order=["network"])
    assert options.mode == "race"
    assert options.desired_accuracy_m == 50.0
    assert options.strategy_order == ("network",)


def test_options_reject_unknown_or_repeated_strategies():
    with pytest.raises(ValueError, match="unknown strategies"):
        ResolveOptions(strategy_order=("gps",))
    with pytest.raises(ValueError, match="must not repeat"):
        ResolveOptions(strategy_order=("network", "network"))
    with pytest.raises(ValueError):
        ResolveOptions().with_overrides(strategy_order=["high_accuracy", "satellite"])


def test_resolve_keeps_caller_log_context(batna):
    async def _run():
        device = ScriptedDevice(
            permission=PermissionState.GRANTED,
            fixes=[DevicePosition(35.5600, 6.1750, 8.0), DevicePosition(35.5600, 6.1750, 8.0)],
        )
        resolver = LocationResolver(batna, device)
        bind_contextvars(http_request_id="abc")
        try:
            await resolver.resolve()
            assert get_contextvars() == {"http_request_id": "abc"}
            await resolver.resolve_averaged(1, delay_s=0)
            assert get_contextvars() == {"http_request_id": "abc"}
        finally:
            unbind_contextvars("http_request_id")

    asyncio.run(_run())
