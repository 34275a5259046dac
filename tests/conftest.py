"""Shared fixtures."""

import math

import pytest

from lumigram.core.contracts import Coordinate, PlaceOfWorship
from lumigram.core.geo import EARTH_RADIUS_M
from lumigram.core.storage import MemoryKeyValueStore
from lumigram.services.stamps import CollectedSet

LJUBLJANA = Coordinate(latitude=46.05, longitude=14.50)


def north_of(origin: Coordinate, meters: float) -> Coordinate:
    """Point `meters` due north of origin (exact on the haversine sphere)."""
    dlat = math.degrees(meters / EARTH_RADIUS_M)
    return Coordinate(latitude=origin.latitude + dlat, longitude=origin.longitude)


def place(sid: str, coord: Coordinate, name: str = "Cerkev", category: str = "church") -> PlaceOfWorship:
    return PlaceOfWorship(
        stable_id=sid,
        display_name=name,
        coordinate=coord,
        category=category,
        category_label=category.capitalize(),
    )


class FakeClock:
    def __init__(self, t: float = 100.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def origin():
    return LJUBLJANA


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def collected(store):
    return CollectedSet(store)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_place():
    return place


@pytest.fixture
def offset():
    return north_of
