"""Geographic validation and distance helpers."""
from __future__ import annotations

import math
import statistics
from typing import Iterable

from locator.core.errors import InvalidCoordinates
from locator.core.models import Coordinates, GeoBoundingBox, Region

EARTH_RADIUS_M = 6371e3
METERS_PER_DEGREE = 111_000.0


def is_sentinel(coords: Coordinates) -> bool:
    """(0, 0) is what broken upstream responses tend to produce."""
    return coords.latitude == 0 and coords.longitude == 0


def is_valid(coords: Coordinates, box: GeoBoundingBox) -> bool:
    """Return True when coords are finite, not the sentinel and inside box (edges included)."""
    if not (math.isfinite(coords.latitude) and math.isfinite(coords.longitude)):
        return False
    if is_sentinel(coords):
        return False
    return box.contains(coords)


def haversine_m(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_valid_for_region(coords: Coordinates, region: Region) -> bool:
    if not is_valid(coords, region.bounding_box):
        return False
    if region.max_distance_m is not None:
        return haversine_m(coords, region.fallback) <= region.max_distance_m
    return True


def ensure_valid(coords: Coordinates, region: Region) -> Coordinates:
    """Raise InvalidCoordinates unless coords are plausible for region."""
    if not is_valid_for_region(coords, region):
        raise InvalidCoordinates(
            f"({coords.latitude:.6f}, {coords.longitude:.6f}) rejected for region {region.name}"
        )
    return coords


def spread_m(latitudes: Iterable[float], longitudes: Iterable[float]) -> float:
    """Larger of the latitude/longitude sample standard deviations, in meters."""
    lats = list(latitudes)
    lngs = list(longitudes)
    if len(lats) < 2:
        return 0.0
    return max(statistics.stdev(lats), statistics.stdev(lngs)) * METERS_PER_DEGREE
