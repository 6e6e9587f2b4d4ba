"""Value types shared by every stage of location resolution."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class LocationMethod(str, Enum):
    """How an estimate was obtained."""

    HIGH_ACCURACY_GPS = "high_accuracy_gps"
    STANDARD_GPS = "standard_gps"
    NETWORK_GPS = "network_gps"
    IP_GEOLOCATION = "ip_geolocation"
    AVERAGED = "averaged"
    FALLBACK = "fallback"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class Coordinates:
    """A WGS84 latitude/longitude pair in decimal degrees."""

    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass(frozen=True, slots=True)
class LocationEstimate:
    """A single location answer with its confidence radius.

    accuracy_m is the radius of the confidence circle in meters; lower is better.
    """

    coordinates: Coordinates
    accuracy_m: float
    method: LocationMethod
    timestamp_ms: int = field(default_factory=now_ms)
    source: Optional[str] = None

    @classmethod
    def at(
        cls,
        latitude: float,
        longitude: float,
        accuracy_m: float,
        method: LocationMethod,
        *,
        source: Optional[str] = None,
    ) -> "LocationEstimate":
        return cls(
            coordinates=Coordinates(latitude=float(latitude), longitude=float(longitude)),
            accuracy_m=float(accuracy_m),
            method=method,
            source=source,
        )

    @property
    def latitude(self) -> float:
        return self.coordinates.latitude

    @property
    def longitude(self) -> float:
        return self.coordinates.longitude

    @property
    def confidence(self) -> Confidence:
        if self.accuracy_m <= 10:
            return Confidence.HIGH
        if self.accuracy_m <= 50:
            return Confidence.MEDIUM
        return Confidence.LOW

    def to_dict(self) -> Dict[str, object]:
        return {
            "coordinates": self.coordinates.to_dict(),
            "accuracy_m": self.accuracy_m,
            "method": self.method.value,
            "confidence": self.confidence.value,
            "timestamp_ms": self.timestamp_ms,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class GeoBoundingBox:
    """Rectangular plausibility region. Antimeridian wraparound is not supported."""

    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        if not self.north > self.south:
            raise ValueError(f"north ({self.north}) must be greater than south ({self.south})")
        if not self.east > self.west:
            raise ValueError(f"east ({self.east}) must be greater than west ({self.west})")

    def contains(self, coords: Coordinates) -> bool:
        """Inclusive membership test."""
        return (
            self.south <= coords.latitude <= self.north
            and self.west <= coords.longitude <= self.east
        )

    def to_dict(self) -> Dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}


@dataclass(frozen=True, slots=True)
class Region:
    """Plausibility box plus the reference point used when nothing else works."""

    name: str
    bounding_box: GeoBoundingBox
    fallback: Coordinates
    fallback_accuracy_m: float = 1000.0
    max_distance_m: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.bounding_box.contains(self.fallback):
            raise ValueError(f"fallback point for region {self.name!r} lies outside its bounding box")
        if self.fallback_accuracy_m <= 0:
            raise ValueError("fallback_accuracy_m must be positive")


@dataclass(frozen=True, slots=True)
class ReadingSample:
    """An estimate paired with its inverse-squared-accuracy weight."""

    estimate: LocationEstimate
    weight: float
