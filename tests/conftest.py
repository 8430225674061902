"""Shared fixtures: in-memory stores seeded with small Iowa-like parcel sets."""

import pytest
from shapely.geometry import box

from landholdings.aggregation.checkpoint import InMemoryCheckpointStore
from landholdings.aggregation.store import InMemoryAggregationStore
from landholdings.models import SQM_PER_ACRE, AggregationSettings, Parcel, TileSettings
from landholdings.owners.normalizer import normalize_owner_name

# Polk County test block (lon/lat)
POLK_LON = -93.600
POLK_LAT = 41.600
SIZE = 0.001


def square(lon, lat, size=SIZE):
    return box(lon, lat, lon + size, lat + size)


def build_parcel(pid, owner, geometry, acres=10.0, county="POLK", **kwargs):
    return Parcel(
        id=pid,
        county=county,
        owner_raw=owner,
        owner_normalized=normalize_owner_name(owner),
        area_sqm=acres * SQM_PER_ACRE,
        geometry=geometry,
        **kwargs,
    )


@pytest.fixture
def make_parcel():
    return build_parcel


@pytest.fixture
def make_square():
    return square


@pytest.fixture
def polk_parcels():
    """SMITH, JOHN owns A (10 ac) and B (15 ac) touching, C (8 ac) far away."""
    return [
        build_parcel(1, "SMITH, JOHN", square(POLK_LON, POLK_LAT), acres=10.0, parcel_number="A"),
        build_parcel(2, "SMITH, JOHN", square(POLK_LON + SIZE, POLK_LAT), acres=15.0, parcel_number="B"),
        build_parcel(3, "SMITH, JOHN", square(POLK_LON + 10 * SIZE, POLK_LAT), acres=8.0, parcel_number="C"),
    ]


@pytest.fixture
def statewide_parcels(polk_parcels):
    """Four counties; HARRISON is excluded by default settings."""
    return polk_parcels + [
        build_parcel(10, "Doe, Jane", square(-94.70, 41.00), acres=40.0, county="ADAMS"),
        build_parcel(11, "DOE, JANE", square(-94.70 + SIZE, 41.00), acres=40.0, county="ADAMS"),
        build_parcel(12, "Acme Farms LLC", square(-94.70, 41.00 + SIZE), acres=80.0, county="ADAMS"),
        build_parcel(20, "MILLER FAMILY TRUST", square(-95.80, 41.60), acres=30.0, county="HARRISON"),
        build_parcel(30, "Brown, Ann", square(-93.50, 42.00), acres=20.0, county="STORY"),
        build_parcel(31, None, square(-93.50 + SIZE, 42.00), acres=20.0, county="STORY"),
        build_parcel(32, "BROWN, ANN", None, acres=20.0, county="STORY"),
    ]


@pytest.fixture
def store(polk_parcels):
    return InMemoryAggregationStore(polk_parcels)


@pytest.fixture
def statewide_store(statewide_parcels):
    return InMemoryAggregationStore(statewide_parcels)


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointStore()


@pytest.fixture
def settings():
    return AggregationSettings(tiles=TileSettings(sweep_interval_seconds=None))
