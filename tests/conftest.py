import pytest

from locator.core.models import Coordinates, GeoBoundingBox, Region


@pytest.fixture()
def batna():
    return Region(
        name="Batna",
        bounding_box=GeoBoundingBox(north=35.62, south=35.49, east=6.25, west=6.09),
        fallback=Coordinates(latitude=35.5559, longitude=6.1743),
        fallback_accuracy_m=1000.0,
    )
