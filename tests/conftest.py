"""Shared fixtures for the Station QC test-suite."""

from typing import Dict, List, Sequence

import pandas as pd
import pytest

from stnqc.models import Observation, Station
from stnqc.series_cache import SeriesCache

START = pd.Timestamp("2024-01-01 00:00:00")


def hourly(n: int, start: pd.Timestamp = START) -> pd.DatetimeIndex:
    return pd.date_range(start, periods=n, freq="h")


def make_series_cache(values: Dict[str, Sequence[float]]) -> SeriesCache:
    """Hourly series starting at START for each station."""
    return SeriesCache(
        {sid: pd.Series(list(vals), index=hourly(len(vals))) for sid, vals in values.items()}
    )


def obs_at(station_id: str, hour: int, value: float) -> Observation:
    return Observation(station_id, START + pd.Timedelta(hours=hour), value)


@pytest.fixture
def cross_stations() -> List[Station]:
    """A planar network: one centre station and four at distance 1."""
    return [
        Station("centre", lat=0.0, lon=0.0),
        Station("east", lat=0.0, lon=1.0),
        Station("north", lat=1.0, lon=0.0),
        Station("west", lat=0.0, lon=-1.0),
        Station("south", lat=-1.0, lon=0.0),
        Station("far", lat=10.0, lon=10.0),
    ]


@pytest.fixture
def line_stations() -> List[Station]:
    """Three stations along a parallel at 60N, roughly 0.56 km apart."""
    return [
        Station("s0", lat=60.0, lon=10.00),
        Station("s1", lat=60.0, lon=10.01),
        Station("s2", lat=60.0, lon=10.02),
    ]


@pytest.fixture
def row_stations() -> List[Station]:
    """Ten stations a few metres apart along 60N; s9 about 55 m from s0."""
    lons = [60.0 + i * 0.00011111 for i in range(9)] + [60.001]
    return [Station(f"s{i}", 60.0, lon, elevation=0.0) for i, lon in enumerate(lons)]
