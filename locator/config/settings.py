"""Validated settings for the resolver, loaded from TOML."""
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError, field_validator, model_validator

from locator.core.models import Coordinates, GeoBoundingBox, Region
from locator.device.positioning import PositionOptions

STRATEGY_NAMES = ("high_accuracy", "standard", "network", "ip_lookup")


class RegionSettings(BaseModel):
    """Plausibility box and fallback point for the deployment region."""

    name: str = Field(min_length=1)
    north: float = Field(ge=-90, le=90)
    south: float = Field(ge=-90, le=90)
    east: float = Field(ge=-180, le=180)
    west: float = Field(ge=-180, le=180)
    fallback_latitude: float = Field(ge=-90, le=90)
    fallback_longitude: float = Field(ge=-180, le=180)
    fallback_accuracy_m: float = Field(default=1000.0, gt=0)
    max_distance_m: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_geometry(self) -> "RegionSettings":
        if self.north <= self.south:
            raise ValueError("north must be greater than south")
        if self.east <= self.west:
            raise ValueError("east must be greater than west")
        if not (
            self.south <= self.fallback_latitude <= self.north
            and self.west <= self.fallback_longitude <= self.east
        ):
            raise ValueError("fallback point must lie inside the bounding box")
        return self

    def to_region(self) -> Region:
        return Region(
            name=self.name,
            bounding_box=GeoBoundingBox(north=self.north, south=self.south, east=self.east, west=self.west),
            fallback=Coordinates(latitude=self.fallback_latitude, longitude=self.fallback_longitude),
            fallback_accuracy_m=self.fallback_accuracy_m,
            max_distance_m=self.max_distance_m,
        )


class StrategyTiming(BaseModel):
    """Accuracy hint, timebox and cache tolerance for one device request."""

    enable_high_accuracy: bool
    timeout_s: float = Field(gt=0)
    maximum_age_s: float = Field(ge=0)

    def position_options(self) -> PositionOptions:
        return PositionOptions(
            enable_high_accuracy=self.enable_high_accuracy,
            timeout=self.timeout_s,
            maximum_age=self.maximum_age_s,
        )


class StrategiesSettings(BaseModel):
    high_accuracy: StrategyTiming = StrategyTiming(enable_high_accuracy=True, timeout_s=10, maximum_age_s=0)
    standard: StrategyTiming = StrategyTiming(enable_high_accuracy=True, timeout_s=15, maximum_age_s=30)
    network: StrategyTiming = StrategyTiming(enable_high_accuracy=False, timeout_s=8, maximum_age_s=120)
    permission_probe: StrategyTiming = StrategyTiming(enable_high_accuracy=False, timeout_s=5, maximum_age_s=300)
    watch: StrategyTiming = StrategyTiming(enable_high_accuracy=True, timeout_s=10, maximum_age_s=0)


class ResolverSettings(BaseModel):
    mode: Literal["sequential", "race"] = "sequential"
    desired_accuracy_m: float = Field(default=50.0, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    strategy_order: List[str] = Field(default_factory=lambda: list(STRATEGY_NAMES))
    fallback_enabled: bool = True

    @field_validator("strategy_order")
    @classmethod
    def _known_strategies(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in STRATEGY_NAMES]
        if unknown:
            raise ValueError(f"unknown strategies {unknown}; expected a subset of {list(STRATEGY_NAMES)}")
        if len(set(value)) != len(value):
            raise ValueError("strategy_order must not repeat a strategy")
        return value


class AveragingSettings(BaseModel):
    samples: int = Field(default=3, ge=1)
    delay_s: float = Field(default=2.5, ge=0)


class WatchSettings(BaseModel):
    max_duration_s: float = Field(default=60.0, gt=0)
    target_accuracy_m: float = Field(default=10.0, gt=0)
    max_samples: Optional[int] = Field(default=None, ge=1)


class IPServiceSettings(BaseModel):
    """One HTTP geolocation endpoint."""

    name: str = Field(min_length=1)
    url: HttpUrl
    method: Literal["GET", "POST"] = "GET"
    accuracy_m: Optional[float] = Field(default=None, gt=0)
    api_key_env: Optional[str] = None
    json_body: Optional[Dict[str, object]] = None
    enabled: bool = True


def _default_services() -> List[IPServiceSettings]:
    return [
        IPServiceSettings(
            name="google",
            url="https://www.googleapis.com/geolocation/v1/geolocate",
            method="POST",
            api_key_env="GOOGLE_GEOLOCATION_API_KEY",
            json_body={"considerIp": True, "wifiAccessPoints": [], "cellTowers": []},
        ),
        IPServiceSettings(name="ipapi.co", url="https://ipapi.co/json/"),
        IPServiceSettings(name="ip-api.com", url="http://ip-api.com/json/"),
        IPServiceSettings(name="ipinfo.io", url="https://ipinfo.io/json"),
    ]


class IPLookupSettings(BaseModel):
    timeout_s: float = Field(default=5.0, gt=0)
    default_accuracy_m: float = Field(default=3000.0, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    backoff_s: float = Field(default=0.5, ge=0)
    user_agent: str = "labconnect-locator/0.1"
    services: List[IPServiceSettings] = Field(default_factory=_default_services)


class LocatorSettings(BaseModel):
    """Root settings document."""

    region: RegionSettings
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    strategies: StrategiesSettings = Field(default_factory=StrategiesSettings)
    averaging: AveragingSettings = Field(default_factory=AveragingSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    ip_lookup: IPLookupSettings = Field(default_factory=IPLookupSettings)


def load_settings(path: Path) -> LocatorSettings:
    """Read and validate the TOML configuration file."""
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    try:
        return LocatorSettings(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings in {path}: {exc}") from exc
