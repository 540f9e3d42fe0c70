"""
Memoizing neighbour lookups for spatial QC tests.

A :class:`SpatialCache` is built once per QC run (or per observation time
slice) from the station set and the current value of every station. It owns
a private spatial index and a memo table keyed by
``(station_id, NeighborQuerySpec)``, so that several tests asking the same
neighbour question share one index traversal.

The cache is read-only from the outside. Its memo table is the only mutable
state and is populated with a compute-then-install-or-discard discipline:
concurrent first-time callers may compute the same result, but only the first
one is stored and every caller gets the stored object back.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np

from stnqc._spatial_index import SpatialIndex
from stnqc.errors import InternalInconsistency, InvalidInput, UnknownStation
from stnqc.models import Station

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NeighborQuerySpec:
    """
    Neighbour query parameters; also the memo key.

    Attributes
    ----------
    max_count
        Maximum number of neighbours to return (closest first).
    radius
        Maximum distance (km for geodesic caches, coordinate units for
        planar ones).
    exclude_self
        Leave the queried station out of its own neighbour list.
    """

    max_count: Optional[int] = None
    radius: Optional[float] = None
    exclude_self: bool = True

    def __post_init__(self) -> None:
        if self.max_count is None and self.radius is None:
            raise InvalidInput("NeighborQuerySpec needs max_count and/or radius")
        if self.max_count is not None and self.max_count <= 0:
            raise InvalidInput(f"max_count must be positive, got {self.max_count}")
        if self.radius is not None and not self.radius >= 0.0:
            raise InvalidInput(f"radius must be non-negative, got {self.radius}")


@dataclass(frozen=True)
class Neighbor:
    """One neighbour with its distance and current value (``None`` if missing)."""

    station: Station
    distance: float
    value: Optional[float]

    @property
    def station_id(self) -> str:
        return self.station.station_id


@dataclass(frozen=True)
class NeighborResult:
    """Neighbours of one station, ascending by distance then station id."""

    station_id: str
    spec: NeighborQuerySpec
    neighbors: Tuple[Neighbor, ...]

    def __len__(self) -> int:
        return len(self.neighbors)

    def __iter__(self) -> Iterator[Neighbor]:
        return iter(self.neighbors)

    def __getitem__(self, item: int) -> Neighbor:
        return self.neighbors[item]

    @property
    def station_ids(self) -> Tuple[str, ...]:
        return tuple(n.station_id for n in self.neighbors)

    @property
    def distances(self) -> np.ndarray:
        return np.array([n.distance for n in self.neighbors], dtype=float)

    @property
    def values(self) -> np.ndarray:
        """Neighbour values as floats, with missing values as NaN."""
        return np.array(
            [np.nan if n.value is None else n.value for n in self.neighbors],
            dtype=float,
        )


def _clean_value(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) else value


class SpatialCache:
    """
    Station index plus memoized neighbour resolution for one QC run.

    Parameters
    ----------
    stations
        The fixed station set of the run. Duplicate ids raise
        :class:`InvalidInput`.
    values
        Current value per station id. Stations absent from the mapping (or
        mapped to ``None``/NaN) have no current value.
    metric
        ``"geodesic"`` (default) or ``"planar"``.
    """

    def __init__(
        self,
        stations: Iterable[Station],
        values: Optional[Mapping[str, Optional[float]]] = None,
        metric: str = "geodesic",
    ) -> None:
        self._setup(SpatialIndex(stations, metric=metric), values)
        logger.debug(
            "Built spatial cache over %d stations (%s metric, %d values)",
            len(self._index),
            metric,
            len(self._values),
        )

    def _setup(
        self,
        index: SpatialIndex,
        values: Optional[Mapping[str, Optional[float]]],
    ) -> None:
        self._index = index

        current: Dict[str, Optional[float]] = {}
        for station_id, value in (values or {}).items():
            if station_id not in self._index:
                raise InvalidInput(f"Value supplied for unknown station '{station_id}'")
            current[station_id] = _clean_value(value)
        self._values = current

        self._memo: Dict[Tuple[str, NeighborQuerySpec], NeighborResult] = {}
        self._lock = threading.Lock()

    def with_values(self, values: Mapping[str, Optional[float]]) -> "SpatialCache":
        """
        Return a new cache over the same station set with other current values.

        The (immutable) index is shared; the memo table is not, so results
        from one value snapshot never leak into another.
        """
        clone = SpatialCache.__new__(SpatialCache)
        clone._setup(self._index, values)
        return clone

    @property
    def metric(self) -> str:
        return self._index.metric

    @property
    def station_ids(self) -> Tuple[str, ...]:
        return tuple(s.station_id for s in self._index.stations)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, station_id: object) -> bool:
        return station_id in self._index

    def station(self, station_id: str) -> Station:
        """Return the station record for ``station_id``."""
        return self._index.station(station_id)

    def value(self, station_id: str) -> Optional[float]:
        """Return the current value of ``station_id`` or ``None`` if missing."""
        if station_id not in self._index:
            raise UnknownStation(station_id)
        return self._values.get(station_id)

    def get_neighbors(self, station_id: str, spec: NeighborQuerySpec) -> NeighborResult:
        """
        Resolve the neighbours of ``station_id`` according to ``spec``.

        The first call for a ``(station_id, spec)`` pair queries the index and
        attaches each neighbour's current value; later calls with an equal
        key return the stored result object.

        Raises
        ------
        UnknownStation
            If ``station_id`` is not part of the station set.
        InvalidInput
            Propagated from the index for invalid query parameters.
        """
        key = (station_id, spec)
        cached = self._memo.get(key)
        if cached is not None:
            return cached

        result = self._resolve(station_id, spec)
        self._verify(result)

        with self._lock:
            stored = self._memo.setdefault(key, result)
        return stored

    def _verify(self, result: NeighborResult) -> None:
        """Reject a resolved neighbour list that contradicts the station index."""
        previous = -np.inf
        for n in result.neighbors:
            if n.station_id not in self._index or self._index.station(n.station_id) != n.station:
                raise InternalInconsistency(
                    f"Neighbour '{n.station_id}' of station '{result.station_id}' "
                    "does not match the station index"
                )
            if n.distance < previous:
                raise InternalInconsistency(
                    f"Neighbours of station '{result.station_id}' are not sorted by distance"
                )
            previous = n.distance

    def pairwise_distances(self, station_ids: Sequence[str]) -> np.ndarray:
        """
        Distances between every pair of ``station_ids``, in the cache's metric.

        Raises
        ------
        UnknownStation
            If any id is not part of the station set.
        """
        return self._index.pairwise(station_ids)

    def _resolve(self, station_id: str, spec: NeighborQuerySpec) -> NeighborResult:
        hits = self._index.query(
            station_id,
            max_count=spec.max_count,
            radius=spec.radius,
            exclude_self=spec.exclude_self,
        )
        neighbors = tuple(
            Neighbor(
                station=station,
                distance=distance,
                value=self._values.get(station.station_id),
            )
            for station, distance in hits
        )
        logger.debug(
            "Resolved %d neighbours for station %s (%r)",
            len(neighbors),
            station_id,
            spec,
        )
        return NeighborResult(station_id=station_id, spec=spec, neighbors=neighbors)
