"""Accuracy-weighted averaging of repeated readings."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

import structlog

from locator.core.errors import LocationUnavailable
from locator.core.geometry import is_valid_for_region, spread_m
from locator.core.models import Coordinates, LocationEstimate, LocationMethod, ReadingSample, Region
from locator.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

# Floor for weights so a bogus 0 m reading cannot divide by zero.
MIN_ACCURACY_M = 0.1


def to_samples(estimates: Sequence[LocationEstimate]) -> List[ReadingSample]:
    return [
        ReadingSample(estimate=estimate, weight=1.0 / max(estimate.accuracy_m, MIN_ACCURACY_M) ** 2)
        for estimate in estimates
    ]


def weighted_centroid(samples: Sequence[ReadingSample]) -> Coordinates:
    """Inverse-squared-accuracy weighted mean position."""
    if not samples:
        raise ValueError("weighted_centroid needs at least one sample")
    total = sum(sample.weight for sample in samples)
    latitude = sum(sample.estimate.latitude * sample.weight for sample in samples) / total
    longitude = sum(sample.estimate.longitude * sample.weight for sample in samples) / total
    return Coordinates(latitude=latitude, longitude=longitude)


def average_estimates(
    estimates: Sequence[LocationEstimate],
    region: Region,
    *,
    metrics: Optional[MetricsRegistry] = None,
) -> LocationEstimate:
    """Combine readings into one estimate.

    Readings outside the region are dropped, and so are static fallback
    answers whenever at least one real reading survives. The reported
    accuracy never claims more than the spread of the readings supports.
    """
    survivors: List[LocationEstimate] = []
    for estimate in estimates:
        if is_valid_for_region(estimate.coordinates, region):
            survivors.append(estimate)
            continue
        LOGGER.info(
            "sample_discarded",
            reason="invalid_coordinates",
            latitude=estimate.latitude,
            longitude=estimate.longitude,
        )
        if metrics is not None:
            metrics.incr("samples_discarded")

    readings = [estimate for estimate in survivors if estimate.method is not LocationMethod.FALLBACK]
    if readings:
        if metrics is not None:
            metrics.incr("samples_discarded", len(survivors) - len(readings))
        survivors = readings
    elif survivors:
        return survivors[0]

    if not survivors:
        raise LocationUnavailable("no valid readings to average")

    centroid = weighted_centroid(to_samples(survivors))
    best_accuracy = min(estimate.accuracy_m for estimate in survivors)
    spread = spread_m(
        (estimate.latitude for estimate in survivors),
        (estimate.longitude for estimate in survivors),
    )
    LOGGER.info(
        "averaged_location",
        samples=len(survivors),
        best_accuracy_m=round(best_accuracy, 1),
        spread_m=round(spread, 1),
    )
    return LocationEstimate(
        coordinates=centroid,
        accuracy_m=max(best_accuracy, spread),
        method=LocationMethod.AVERAGED,
        source=f"{len(survivors)} readings",
    )


async def collect_averaged(
    sample: Callable[[], Awaitable[LocationEstimate]],
    count: int,
    *,
    region: Region,
    delay_s: float,
    metrics: Optional[MetricsRegistry] = None,
) -> LocationEstimate:
    """Take ``count`` readings one after another, then average them.

    Readings are never taken concurrently: parallel requests land on the same
    positioning hardware and would not be independent.
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    estimates: List[LocationEstimate] = []
    for idx in range(count):
        try:
            estimates.append(await sample())
        except LocationUnavailable:
            LOGGER.info("sample_unavailable", index=idx + 1, total=count)
        if idx < count - 1 and delay_s > 0:
            await asyncio.sleep(delay_s)
    return average_estimates(estimates, region, metrics=metrics)
