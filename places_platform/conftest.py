from datetime import datetime, timezone as dt_timezone

import pytest

from sync.grid import CellDescriptor
from sync.provider import ProviderPlace


class FakeProvider:
    """Stands in for PlaceSearchClient. `errors` are raised in order,
    one per call, before falling back to returning `places`."""

    def __init__(self, places=None, errors=None):
        self.places = list(places or [])
        self.errors = list(errors or [])
        self.calls = []

    async def nearby_search(self, lat, lng, radius_m, place_type=None, keyword=None):
        self.calls.append((lat, lng, radius_m))
        if self.errors:
            err = self.errors.pop(0)
            if err is not None:
                raise err
        return list(self.places)


def make_places(count, prefix='place'):
    return [
        ProviderPlace(
            external_id=f"{prefix}-{i}",
            name=f"Place {i}",
            lat=40.7128 + i * 0.0001,
            lng=-74.0060 - i * 0.0001,
            categories=('restaurant', 'food'),
            address=f"{i} Broadway",
            rating=4.5,
            review_count=10 + i,
        )
        for i in range(count)
    ]


def make_cell(cell_id='8a2a1072b59ffff', level=10, lat=40.7128, lng=-74.0060):
    return CellDescriptor(cell_id=cell_id, level=level, center_lat=lat,
                          center_lng=lng, query_radius_m=1000)


@pytest.fixture
def now():
    return datetime(2026, 6, 1, 12, 0, tzinfo=dt_timezone.utc)
