"""
Core data records shared by the caches, QC rules and pipeline.

* :class:`Station` – a fixed location that reports observations.
* :class:`Observation` – one value reported by one station at one time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import pandas as pd


@dataclass(frozen=True)
class Station:
    """A fixed-location source of observations."""

    station_id: str
    lat: float
    lon: float
    elevation: Optional[float] = None


@dataclass(frozen=True)
class Observation:
    """
    A single measurement.

    ``time`` is normalised to a :class:`pandas.Timestamp` so observations
    built from strings, ``datetime`` objects or numpy datetimes compare and
    hash alike. A NaN ``value`` marks the measurement as missing.
    """

    station_id: str
    time: pd.Timestamp
    value: float
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "time", pd.Timestamp(self.time))
        object.__setattr__(self, "value", float(self.value))

    @property
    def is_missing(self) -> bool:
        return math.isnan(self.value)
