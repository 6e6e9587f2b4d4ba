"""IP geolocation adapters.

Every service is wrapped in the same `lookup(client)` interface so the IP
strategy can walk a prioritized list without per-provider branching. The
services disagree on field names, so coordinate and accuracy extraction
accepts every shape seen in the wild:

- ``{"latitude": .., "longitude": ..}`` (ipapi.co)
- ``{"lat": .., "lon": ..}`` (ip-api.com)
- ``{"loc": "lat,lng"}`` (ipinfo.io)
- ``{"location": {"lat": .., "lng": ..}, "accuracy": ..}`` (Google Geolocation API)
"""
from __future__ import annotations

import asyncio
import math
import os
from typing import Dict, List, Mapping, Optional, Protocol

import httpx
import structlog

from locator.config.settings import IPLookupSettings
from locator.core.errors import ServiceUnreachable
from locator.core.models import Coordinates, LocationEstimate, LocationMethod
from locator.observability.metrics import MetricsRegistry
from locator.observability.tracing import log_retry, span

LOGGER = structlog.get_logger(__name__)

_COORDINATE_KEYS = (
    ("latitude", "longitude"),
    ("lat", "lon"),
    ("lat", "lng"),
)


class LookupAdapter(Protocol):
    name: str

    async def lookup(self, client: httpx.AsyncClient) -> Optional[LocationEstimate]:
        ...


def _as_float(value: object) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def extract_coordinates(payload: Mapping[str, object]) -> Optional[Coordinates]:
    """Pull a coordinate pair out of a geolocation payload, whatever its schema."""
    for lat_key, lng_key in _COORDINATE_KEYS:
        if lat_key in payload and lng_key in payload:
            lat = _as_float(payload[lat_key])
            lng = _as_float(payload[lng_key])
            if lat is not None and lng is not None:
                return Coordinates(latitude=lat, longitude=lng)
    loc = payload.get("loc")
    if isinstance(loc, str) and "," in loc:
        lat_text, _, lng_text = loc.partition(",")
        lat = _as_float(lat_text.strip())
        lng = _as_float(lng_text.strip())
        if lat is not None and lng is not None:
            return Coordinates(latitude=lat, longitude=lng)
    location = payload.get("location")
    if isinstance(location, Mapping):
        return extract_coordinates(location)
    return None


def extract_accuracy(payload: Mapping[str, object]) -> Optional[float]:
    """Return the reported accuracy in meters, if the service gives one."""
    accuracy = _as_float(payload.get("accuracy"))
    if accuracy is not None and accuracy > 0:
        return accuracy
    # MaxMind-style radius is in kilometers.
    radius_km = _as_float(payload.get("accuracy_radius"))
    if radius_km is not None and radius_km > 0:
        return radius_km * 1000.0
    location = payload.get("location")
    if isinstance(location, Mapping):
        return extract_accuracy(location)
    return None


class IPLookupAdapter:
    """Queries one HTTP JSON geolocation endpoint."""

    def __init__(
        self,
        *,
        name: str,
        url: str,
        method: str = "GET",
        default_accuracy_m: float = 3000.0,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, object]] = None,
        timeout_s: float = 5.0,
        max_attempts: int = 1,
        backoff_s: float = 0.5,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.name = name
        self.url = url
        self.method = method
        self.default_accuracy_m = default_accuracy_m
        self._params = params
        self._json_body = json_body
        self._timeout_s = timeout_s
        self._max_attempts = max_attempts
        self._backoff_s = backoff_s
        self._metrics = metrics

    def __repr__(self) -> str:
        return f"IPLookupAdapter(name={self.name!r}, method={self.method!r})"

    async def _request(self, client: httpx.AsyncClient) -> httpx.Response:
        delay = self._backoff_s
        for attempt in range(1, self._max_attempts + 1):
            try:
                with span(name="ip_lookup", strategy=self.name):
                    response = await client.request(
                        self.method,
                        self.url,
                        params=self._params,
                        json=self._json_body,
                        timeout=self._timeout_s,
                    )
                response.raise_for_status()
                return response
            except httpx.HTTPError as exc:
                if attempt == self._max_attempts:
                    raise ServiceUnreachable(self.name, str(exc) or type(exc).__name__) from exc
                if self._metrics is not None:
                    self._metrics.incr("ip_lookup_retries")
                log_retry(attempt=attempt, service=self.name, reason=str(exc))
                await asyncio.sleep(delay)
                delay *= 2
        raise ServiceUnreachable(self.name, "no attempts made")

    def parse(self, payload: object) -> Optional[LocationEstimate]:
        """Turn a decoded response body into an estimate, or None when unusable."""
        if not isinstance(payload, Mapping):
            return None
        status = payload.get("status")
        if isinstance(status, str) and status.lower() == "fail":
            LOGGER.info("ip_lookup_refused", service=self.name, reason=payload.get("message"))
            return None
        if payload.get("error"):
            LOGGER.info("ip_lookup_refused", service=self.name, reason=payload.get("reason"))
            return None
        coords = extract_coordinates(payload)
        if coords is None:
            LOGGER.info("ip_lookup_no_coordinates", service=self.name, keys=sorted(payload)[:10])
            return None
        accuracy = extract_accuracy(payload) or self.default_accuracy_m
        return LocationEstimate(
            coordinates=coords,
            accuracy_m=accuracy,
            method=LocationMethod.IP_GEOLOCATION,
            source=self.name,
        )

    async def lookup(self, client: httpx.AsyncClient) -> Optional[LocationEstimate]:
        """Return an estimate, None for an unusable payload; raise ServiceUnreachable on transport errors."""
        response = await self._request(client)
        try:
            payload = response.json()
        except ValueError:
            LOGGER.info("ip_lookup_invalid_json", service=self.name)
            return None
        return self.parse(payload)


def build_adapters(
    settings: IPLookupSettings,
    *,
    environ: Optional[Mapping[str, str]] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> List[IPLookupAdapter]:
    """Instantiate the enabled services in priority order.

    Services needing an API key are skipped when the key is not in the environment.
    """
    environ = os.environ if environ is None else environ
    adapters: List[IPLookupAdapter] = []
    for service in settings.services:
        if not service.enabled:
            continue
        params: Optional[Dict[str, str]] = None
        if service.api_key_env:
            key = environ.get(service.api_key_env, "").strip()
            if not key:
                LOGGER.debug("ip_lookup_service_skipped", service=service.name, missing=service.api_key_env)
                continue
            params = {"key": key}
        adapters.append(
            IPLookupAdapter(
                name=service.name,
                url=str(service.url),
                method=service.method,
                default_accuracy_m=service.accuracy_m or settings.default_accuracy_m,
                params=params,
                json_body=service.json_body,
                timeout_s=settings.timeout_s,
                max_attempts=settings.max_attempts,
                backoff_s=settings.backoff_s,
                metrics=metrics,
            )
        )
    return adapters
