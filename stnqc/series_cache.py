"""
Memoizing time-window lookups for temporal QC tests.

A :class:`SeriesCache` holds every station's observation history for one QC
run as a pandas Series indexed by timestamp, and memoizes windowed slices of
those histories keyed by ``(station_id, WindowSpec)``.

Histories must already be strictly ordered by time; the cache refuses to
sort or de-duplicate them on the caller's behalf.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from stnqc.errors import InternalInconsistency, InvalidInput, UnknownStation
from stnqc.models import Observation

logger = logging.getLogger(__name__)

SeriesInput = Union[pd.Series, Iterable[Tuple[Any, float]]]


@dataclass(frozen=True)
class WindowSpec:
    """A time window ``[center - before, center + after]``; also the memo key."""

    center: pd.Timestamp
    before: pd.Timedelta
    after: pd.Timedelta

    def __post_init__(self) -> None:
        object.__setattr__(self, "center", pd.Timestamp(self.center))
        object.__setattr__(self, "before", pd.Timedelta(self.before))
        object.__setattr__(self, "after", pd.Timedelta(self.after))
        if self.before < pd.Timedelta(0) or self.after < pd.Timedelta(0):
            raise InvalidInput("Window durations must be non-negative")

    @property
    def start(self) -> pd.Timestamp:
        return self.center - self.before

    @property
    def end(self) -> pd.Timestamp:
        return self.center + self.after


@dataclass(frozen=True)
class SeriesWindow:
    """In-range observations of one station, ascending by time."""

    station_id: str
    spec: WindowSpec
    observations: Tuple[Observation, ...]

    def __len__(self) -> int:
        return len(self.observations)

    def __iter__(self) -> Iterator[Observation]:
        return iter(self.observations)

    def __getitem__(self, item: int) -> Observation:
        return self.observations[item]

    @property
    def times(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex([o.time for o in self.observations])

    @property
    def values(self) -> np.ndarray:
        return np.array([o.value for o in self.observations], dtype=float)

    def to_series(self) -> pd.Series:
        return pd.Series(self.values, index=self.times, name=self.station_id)

    def index_of(self, time: Any) -> Optional[int]:
        """Position of the observation at exactly ``time``, or ``None``."""
        ts = pd.Timestamp(time)
        pos = int(self.times.searchsorted(ts))
        if pos < len(self.observations) and self.observations[pos].time == ts:
            return pos
        return None


def _to_series(station_id: str, data: SeriesInput) -> pd.Series:
    if isinstance(data, pd.Series):
        series = data.astype(float).copy()
        series.index = pd.DatetimeIndex(pd.to_datetime(series.index))
    else:
        pairs = list(data)
        times = pd.DatetimeIndex(pd.to_datetime([t for t, _ in pairs]))
        series = pd.Series([v for _, v in pairs], index=times, dtype=float)

    if not (series.index.is_monotonic_increasing and series.index.is_unique):
        raise InvalidInput(
            f"Series for station '{station_id}' is not strictly ordered by "
            "timestamp (unsorted or duplicate timestamps)"
        )
    series.name = station_id
    return series


class SeriesCache:
    """
    Per-station observation histories plus memoized window queries.

    Parameters
    ----------
    series
        Mapping of station id to either a pandas Series indexed by timestamp
        or an iterable of ``(timestamp, value)`` pairs, strictly ascending.
    """

    def __init__(self, series: Mapping[str, SeriesInput]) -> None:
        self._series: Dict[str, pd.Series] = {
            str(station_id): _to_series(str(station_id), data)
            for station_id, data in series.items()
        }
        self._memo: Dict[Tuple[str, WindowSpec], SeriesWindow] = {}
        self._lock = threading.Lock()

        logger.debug(
            "Built series cache for %d stations (%d observations)",
            len(self._series),
            sum(len(s) for s in self._series.values()),
        )

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        station_column: str = "station_id",
        time_column: str = "time",
        value_column: str = "value",
    ) -> "SeriesCache":
        """
        Build a cache from a long-format DataFrame.

        Rows are grouped by station in their given order; each station's rows
        must already be strictly ascending in time.
        """
        for column in (station_column, time_column, value_column):
            if column not in df.columns:
                raise InvalidInput(f"Column '{column}' not found in observations")

        times = pd.to_datetime(df[time_column])
        series: Dict[str, pd.Series] = {}
        for station_id, group in df.groupby(station_column, sort=True):
            series[str(station_id)] = pd.Series(
                group[value_column].to_numpy(dtype=float),
                index=pd.DatetimeIndex(times.loc[group.index]),
            )
        return cls(series)

    @property
    def station_ids(self) -> Tuple[str, ...]:
        return tuple(self._series)

    def __contains__(self, station_id: object) -> bool:
        return station_id in self._series

    def __len__(self) -> int:
        return len(self._series)

    def _station_series(self, station_id: str) -> pd.Series:
        try:
            return self._series[station_id]
        except KeyError:
            raise UnknownStation(station_id) from None

    def observations(self, station_id: str) -> Iterator[Observation]:
        """Iterate over the full stored history of ``station_id``."""
        series = self._station_series(station_id)
        for ts, value in series.items():
            yield Observation(station_id, ts, value)

    def observation(self, station_id: str, time: Any) -> Optional[Observation]:
        """Return the stored observation at exactly ``time``, if any."""
        series = self._station_series(station_id)
        ts = pd.Timestamp(time)
        pos = int(series.index.searchsorted(ts))
        if pos < len(series) and series.index[pos] == ts:
            return Observation(station_id, ts, series.iloc[pos])
        return None

    def times(self) -> pd.DatetimeIndex:
        """Sorted union of the timestamps of every station."""
        index = pd.DatetimeIndex([])
        for series in self._series.values():
            index = index.union(series.index)
        return index.sort_values()

    def get_window(self, station_id: str, spec: WindowSpec) -> SeriesWindow:
        """
        Return the observations of ``station_id`` inside ``spec``'s window.

        The window bounds are inclusive. Gaps simply shorten the result; an
        empty window is valid.

        Raises
        ------
        UnknownStation
            If ``station_id`` has no recorded series.
        """
        key = (station_id, spec)
        cached = self._memo.get(key)
        if cached is not None:
            return cached

        window = self._slice(station_id, spec)
        self._verify(station_id, window)

        with self._lock:
            stored = self._memo.setdefault(key, window)
        return stored

    @staticmethod
    def _verify(station_id: str, window: SeriesWindow) -> None:
        """Reject a window holding foreign, out-of-range or unordered observations."""
        previous = None
        for obs in window.observations:
            if obs.station_id != station_id:
                raise InternalInconsistency(
                    f"Window for station '{station_id}' holds an observation of "
                    f"station '{obs.station_id}'"
                )
            if not window.spec.start <= obs.time <= window.spec.end:
                raise InternalInconsistency(
                    f"Observation at {obs.time} lies outside window {window.spec!r}"
                )
            if previous is not None and obs.time <= previous:
                raise InternalInconsistency(
                    f"Window for station '{station_id}' is not ascending at {obs.time}"
                )
            previous = obs.time

    def _slice(self, station_id: str, spec: WindowSpec) -> SeriesWindow:
        series = self._station_series(station_id)
        try:
            lo = int(series.index.searchsorted(spec.start, side="left"))
            hi = int(series.index.searchsorted(spec.end, side="right"))
        except TypeError as exc:
            # tz-aware vs tz-naive comparison
            raise InvalidInput(
                f"Window {spec!r} is not comparable with the timestamps of "
                f"station '{station_id}'"
            ) from exc

        chunk = series.iloc[lo:hi]
        observations = tuple(
            Observation(station_id, ts, value) for ts, value in chunk.items()
        )
        return SeriesWindow(station_id=station_id, spec=spec, observations=observations)
