import asyncio

import pytest

from locator.core.errors import LocationUnavailable
from locator.core.models import Coordinates, GeoBoundingBox, LocationEstimate, LocationMethod, Region
from locator.observability.metrics import MetricsRegistry
from locator.resolver.averaging import average_estimates, collect_averaged, to_samples, weighted_centroid

GPS = LocationMethod.HIGH_ACCURACY_GPS


@pytest.fixture()
def tropics():
    return Region(
        name="tropics",
        bounding_box=GeoBoundingBox(north=11, south=9, east=11, west=9),
        fallback=Coordinates(10.0, 10.0),
    )


def test_equal_accuracy_gives_midpoint():
    samples = to_samples([
        LocationEstimate.at(35.55, 6.15, 10, GPS),
        LocationEstimate.at(35.57, 6.17, 10, GPS),
    ])
    centroid = weighted_centroid(samples)
    assert centroid.latitude == pytest.approx(35.56)
    assert centroid.longitude == pytest.approx(6.16)


def test_accurate_sample_dominates():
    samples = to_samples([
        LocationEstimate.at(35.55, 6.15, 1, GPS),
        LocationEstimate.at(35.57, 6.17, 1000, GPS),
    ])
    centroid = weighted_centroid(samples)
    assert centroid.latitude == pytest.approx(35.55, abs=1e-6)
    assert centroid.longitude == pytest.approx(6.15, abs=1e-6)


def test_zero_accuracy_does_not_divide_by_zero():
    samples = to_samples([LocationEstimate.at(35.55, 6.15, 0, GPS)])
    assert samples[0].weight == pytest.approx(100.0)
    centroid = weighted_centroid(samples)
    assert centroid.latitude == pytest.approx(35.55)
    assert centroid.longitude == pytest.approx(6.15)


def test_weighted_centroid_requires_samples():
    with pytest.raises(ValueError):
        weighted_centroid([])


def test_invalid_sample_discarded_and_average_weighted(tropics):
    metrics = MetricsRegistry()
    result = average_estimates(
        [
            LocationEstimate.at(10, 10, 10, GPS),
            LocationEstimate.at(10.0001, 10.0001, 5, GPS),
            LocationEstimate.at(50, 50, 5, GPS),
        ],
        tropics,
        metrics=metrics,
    )
    assert metrics.get("samples_discarded") == 1
    assert result.method is LocationMethod.AVERAGED
    assert 10 < result.latitude < 10.0001
    assert result.latitude - 10 > 10.0001 - result.latitude
    assert result.longitude - 10 > 10.0001 - result.longitude
    assert result.accuracy_m >= 5


def test_reported_accuracy_reflects_spread(batna):
    result = average_estimates(
        [LocationEstimate.at(35.55, 6.15, 10, GPS), LocationEstimate.at(35.57, 6.15, 10, GPS)],
        batna,
    )
    assert result.accuracy_m == pytest.approx(0.0141421 * 111_000, rel=1e-4)


def test_fallback_samples_dropped_when_real_readings_exist(batna):
    fallback = LocationEstimate.at(35.5559, 6.1743, 1000, LocationMethod.FALLBACK)
    real = LocationEstimate.at(35.5600, 6.1750, 20, LocationMethod.NETWORK_GPS)
    result = average_estimates([fallback, real], batna)
    assert result.latitude == pytest.approx(35.5600)
    assert result.longitude == pytest.approx(6.1750)
    assert result.accuracy_m == 20
    assert result.method is LocationMethod.AVERAGED


def test_only_fallback_samples_returned_as_is(batna):
    fallback = LocationEstimate.at(35.5559, 6.1743, 1000, LocationMethod.FALLBACK)
    assert average_estimates([fallback, fallback], batna) is fallback


def test_no_samples_is_unavailable(batna):
    with pytest.raises(LocationUnavailable):
        average_estimates([], batna)
    with pytest.raises(LocationUnavailable):
        average_estimates([LocationEstimate.at(48.8566, 2.3522, 5, GPS)], batna)


def test_collect_skips_unavailable_samples(batna):
    async def _run():
        answers = [
            LocationEstimate.at(35.5600, 6.1750, 10, GPS),
            LocationUnavailable("nothing"),
            LocationEstimate.at(35.5600, 6.1760, 10, GPS),
        ]
        calls = []

        async def sample():
            calls.append(len(calls))
            answer = answers[len(calls) - 1]
            if isinstance(answer, Exception):
                raise answer
            return answer

        result = await collect_averaged(sample, 3, region=batna, delay_s=0)
        assert len(calls) == 3
        assert result.longitude == pytest.approx(6.1755)

    asyncio.run(_run())


def test_collect_rejects_zero_count(batna):
    async def _run():
        async def sample():
            raise AssertionError("should not be called")

        with pytest.raises(ValueError):
            await collect_averaged(sample, 0, region=batna, delay_s=0)

    asyncio.run(_run())
