"""Command-line entrypoints for the location resolver."""
from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import orjson
from dotenv import load_dotenv

from locator.config.settings import STRATEGY_NAMES, LocatorSettings, load_settings
from locator.core.errors import LocationUnavailable, PermissionDenied
from locator.core.geometry import haversine_m, is_valid, is_valid_for_region
from locator.core.models import Coordinates, LocationEstimate
from locator.device.positioning import DevicePositioning, UnavailableDevice
from locator.device.scripted import load_track
from locator.lookup.adapters import build_adapters
from locator.lookup.session import create_lookup_client
from locator.observability.log import configure_logging
from locator.observability.metrics import MetricsRegistry
from locator.resolver.chain import LocationResolver, RACE, SEQUENTIAL

DEFAULT_SETTINGS = Path("config/settings.toml")
LOGGING_CONFIG = Path("config/logging.yaml")
NEUTRAL_MESSAGE = "Couldn't determine your location. Pick a point on the map instead."


def _dumps(payload: object) -> str:
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode()


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="locator", description="Best-effort location resolver")
    parser.add_argument("--config", default=str(DEFAULT_SETTINGS), help="Path to settings TOML")
    parser.add_argument("--track", help="YAML track replayed as the positioning device")
    parser.add_argument("--metrics-out", help="Write resolver counters to this JSON file")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve a single location estimate")
    resolve.add_argument("--mode", choices=[SEQUENTIAL, RACE], help="Strategy selection mode")
    resolve.add_argument("--desired-accuracy", type=float, help="Stop at the first result this accurate (meters)")
    resolve.add_argument("--max-attempts", type=int, help="Passes over the strategy chain")
    resolve.add_argument(
        "--strategy",
        action="append",
        choices=list(STRATEGY_NAMES),
        help="Strategy to run, repeat to set the order",
    )
    resolve.add_argument("--no-fallback", action="store_true", help="Fail instead of returning the region fallback")

    average = sub.add_parser("average", help="Average several sequential readings")
    average.add_argument("--samples", type=int, help="Number of readings")
    average.add_argument("--delay", type=float, help="Seconds between readings")

    watch = sub.add_parser("watch", help="Follow the device stream until accurate enough")
    watch.add_argument("--max-duration", type=float, help="Seconds before giving up")
    watch.add_argument("--target-accuracy", type=float, help="Stop once this accurate (meters)")
    watch.add_argument("--max-samples", type=int, help="Stop after this many samples")

    check = sub.add_parser("check", help="Validate a coordinate against the configured region")
    check.add_argument("--lat", type=float, required=True)
    check.add_argument("--lng", type=float, required=True)

    sub.add_parser("validate-config", help="Validate the settings file")

    return parser


def build_device(args: argparse.Namespace) -> DevicePositioning:
    if getattr(args, "track", None):
        try:
            return load_track(Path(args.track))
        except (OSError, ValueError) as exc:
            raise SystemExit(f"Failed to load track: {exc}")
    return UnavailableDevice()


async def run_resolver_command(
    args: argparse.Namespace,
    settings: LocatorSettings,
    *,
    device: DevicePositioning,
    metrics: MetricsRegistry,
) -> Dict[str, object]:
    """Execute resolve/average/watch against a freshly built resolver."""
    async with create_lookup_client(
        user_agent=settings.ip_lookup.user_agent,
        timeout=settings.ip_lookup.timeout_s,
    ) as client:
        resolver = LocationResolver.from_settings(
            settings,
            device,
            adapters=build_adapters(settings.ip_lookup, metrics=metrics),
            client=client,
            metrics=metrics,
        )
        if args.command == "resolve":
            options = resolver.options.with_overrides(
                mode=args.mode,
                desired_accuracy_m=args.desired_accuracy,
                max_attempts=args.max_attempts,
                strategy_order=args.strategy,
                fallback_enabled=False if args.no_fallback else None,
            )
            estimate = await resolver.resolve(options)
            return estimate.to_dict()

        if args.command == "average":
            estimate = await resolver.resolve_averaged(args.samples, delay_s=args.delay)
            return estimate.to_dict()

        updates: List[Dict[str, object]] = []

        def on_update(estimate: LocationEstimate) -> None:
            updates.append(estimate.to_dict())

        handle = await resolver.watch(
            on_update,
            max_duration_s=args.max_duration,
            target_accuracy_m=args.target_accuracy,
            max_samples=args.max_samples,
        )
        best = await handle.wait()
        return {
            "updates": updates,
            "best": best.to_dict() if best else None,
            "stop_reason": handle.stop_reason,
            "samples": handle.samples,
        }


def check_coordinates(settings: LocatorSettings, latitude: float, longitude: float) -> Dict[str, object]:
    region = settings.region.to_region()
    coords = Coordinates(latitude=latitude, longitude=longitude)
    return {
        "region": region.name,
        "coordinates": coords.to_dict(),
        "inside_box": is_valid(coords, region.bounding_box),
        "valid": is_valid_for_region(coords, region),
        "distance_to_fallback_m": round(haversine_m(coords, region.fallback), 1),
    }


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(LOGGING_CONFIG)

    try:
        settings = load_settings(Path(args.config))
    except (OSError, ValueError) as exc:
        if args.command == "validate-config":
            print(_dumps({"status": "FAIL", "detail": str(exc)}))
            raise SystemExit(1)
        raise SystemExit(f"Failed to load settings: {exc}")

    if args.command == "validate-config":
        adapters = build_adapters(settings.ip_lookup)
        print(_dumps({
            "status": "OK",
            "region": settings.region.name,
            "bounding_box": settings.region.to_region().bounding_box.to_dict(),
            "strategy_order": settings.resolver.strategy_order,
            "ip_services": [adapter.name for adapter in adapters],
        }))
        return

    if args.command == "check":
        print(_dumps(check_coordinates(settings, args.lat, args.lng)))
        return

    metrics = MetricsRegistry()
    device = build_device(args)
    try:
        payload = asyncio.run(run_resolver_command(args, settings, device=device, metrics=metrics))
    except (PermissionDenied, LocationUnavailable) as exc:
        print(_dumps({"error": type(exc).__name__, "message": NEUTRAL_MESSAGE}))
        raise SystemExit(1)
    finally:
        if args.metrics_out:
            run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
            metrics.export(path=Path(args.metrics_out), run_id=run_id)
    print(_dumps(payload))


if __name__ == "__main__":
    main()
