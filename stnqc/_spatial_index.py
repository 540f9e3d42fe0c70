"""
Static spatial index over the stations of one QC run.

This module is private: the index is only reachable through
:class:`stnqc.spatial_cache.SpatialCache`, which owns exactly one index
for its whole lifetime.

Two distance metrics are supported and fixed per index instance:

* ``"geodesic"`` – stations are mapped to Earth-centred xyz coordinates
  (km) for the KD-tree; reported distances are great-circle distances in
  km. Radius queries convert the arc radius to the equivalent chord.
* ``"planar"`` – ``(lon, lat)`` are treated as plain ``(x, y)``
  coordinates and distances are Euclidean in the same units.

Results are always ordered by ascending distance with ties broken by
ascending station id, so co-located stations come back in a stable order.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from stnqc.errors import InvalidInput, UnknownStation
from stnqc.models import Station

RADIUS_EARTH_KM: float = 6371.0
METRICS: Tuple[str, ...] = ("geodesic", "planar")

# (distance, station_id, position) triples, sortable as-is.
Ranked = List[Tuple[float, str, int]]


def latlon_to_xyz(lat: np.ndarray, lon: np.ndarray) -> np.ndarray:
    """Convert latitude/longitude in degrees to Earth-centred xyz in km."""
    lat_r = np.radians(lat)
    lon_r = np.radians(lon)
    return np.column_stack(
        (
            RADIUS_EARTH_KM * np.cos(lat_r) * np.cos(lon_r),
            RADIUS_EARTH_KM * np.cos(lat_r) * np.sin(lon_r),
            RADIUS_EARTH_KM * np.sin(lat_r),
        )
    )


def great_circle_km(
    lat1: float, lon1: float, lat2: np.ndarray, lon2: np.ndarray
) -> np.ndarray:
    """Haversine distance in km from one point to an array of points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = np.radians(lat2), np.radians(lon2)
    a = (
        np.sin((lat2_r - lat1_r) / 2.0) ** 2
        + math.cos(lat1_r) * np.cos(lat2_r) * np.sin((lon2_r - lon1_r) / 2.0) ** 2
    )
    return 2.0 * RADIUS_EARTH_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def chord_for_arc_km(radius_km: float) -> float:
    """Straight-line chord length matching an arc of ``radius_km`` on Earth."""
    half_angle = min(radius_km / (2.0 * RADIUS_EARTH_KM), math.pi / 2.0)
    return 2.0 * RADIUS_EARTH_KM * math.sin(half_angle)


class SpatialIndex:
    """KD-tree backed nearest-neighbour and radius queries over stations."""

    def __init__(self, stations: Iterable[Station], metric: str = "geodesic") -> None:
        if metric not in METRICS:
            raise InvalidInput(
                f"Unknown distance metric '{metric}', expected one of {METRICS}"
            )

        self._stations: List[Station] = list(stations)
        self._metric = metric
        self._positions: Dict[str, int] = {}
        for pos, station in enumerate(self._stations):
            if station.station_id in self._positions:
                raise InvalidInput(f"Duplicate station id '{station.station_id}'")
            self._positions[station.station_id] = pos

        self._lats = np.array([s.lat for s in self._stations], dtype=float)
        self._lons = np.array([s.lon for s in self._stations], dtype=float)
        self._validate_coordinates()

        if metric == "geodesic":
            points = latlon_to_xyz(self._lats, self._lons)
        else:
            points = np.column_stack((self._lons, self._lats))

        self._tree: Optional[cKDTree] = cKDTree(points) if len(self._stations) else None
        self._points = points

    def _validate_coordinates(self) -> None:
        if not (np.all(np.isfinite(self._lats)) and np.all(np.isfinite(self._lons))):
            raise InvalidInput("Station coordinates must be finite numbers")
        if self._metric == "geodesic":
            # Longitudes are accepted in both -180..180 and 0..360 conventions.
            if np.any(np.abs(self._lats) > 90.0) or np.any(np.abs(self._lons) > 360.0):
                raise InvalidInput("Station latitude/longitude outside valid range")

    @property
    def metric(self) -> str:
        return self._metric

    def __len__(self) -> int:
        return len(self._stations)

    def __contains__(self, station_id: object) -> bool:
        return station_id in self._positions

    def station(self, station_id: str) -> Station:
        return self._stations[self._position(station_id)]

    @property
    def stations(self) -> Sequence[Station]:
        return tuple(self._stations)

    def _position(self, station_id: str) -> int:
        try:
            return self._positions[station_id]
        except KeyError:
            raise UnknownStation(station_id) from None

    def _distances_from(self, pos: int, targets: np.ndarray) -> np.ndarray:
        if self._metric == "geodesic":
            return great_circle_km(
                float(self._lats[pos]),
                float(self._lons[pos]),
                self._lats[targets],
                self._lons[targets],
            )
        delta = self._points[targets] - self._points[pos]
        return np.sqrt(np.sum(delta * delta, axis=1))

    def pairwise(self, station_ids: Sequence[str]) -> np.ndarray:
        """Square matrix of distances between the given stations."""
        idx = np.array([self._position(sid) for sid in station_ids], dtype=int)
        matrix = np.zeros((idx.size, idx.size))
        for row, pos in enumerate(idx):
            matrix[row] = self._distances_from(int(pos), idx)
        return matrix

    def _rank(self, pos: int, candidates: Iterable[int], exclude_self: bool) -> Ranked:
        idx = np.array(sorted(set(int(c) for c in candidates)), dtype=int)
        if exclude_self:
            idx = idx[idx != pos]
        if idx.size == 0:
            return []
        dists = self._distances_from(pos, idx)
        ranked = [
            (float(d), self._stations[j].station_id, int(j))
            for d, j in zip(dists, idx)
        ]
        ranked.sort()
        return ranked

    def _ball(self, pos: int, radius: float) -> List[int]:
        assert self._tree is not None
        if self._metric == "geodesic":
            reach = chord_for_arc_km(radius)
        else:
            reach = radius
        # Widen slightly so float noise between tree and reported distances
        # never drops a boundary point; the exact filter happens afterwards.
        reach += 1e-9 * max(1.0, reach)
        return list(self._tree.query_ball_point(self._points[pos], r=reach))

    def _nearest_ranked(self, pos: int, k: int, exclude_self: bool) -> Ranked:
        assert self._tree is not None
        n = len(self._stations)
        kq = min(k + 1, n)
        tree_dists, _ = self._tree.query(self._points[pos], k=kq)
        cutoff = float(np.max(np.atleast_1d(tree_dists)))
        if kq == n:
            candidates: Iterable[int] = range(n)
        else:
            # Pull in every station tied with the k-th nearest so the id
            # tie-break decides which of them survive the cut.
            cutoff += 1e-9 * max(1.0, cutoff)
            candidates = self._tree.query_ball_point(self._points[pos], r=cutoff)
        return self._rank(pos, candidates, exclude_self)[:k]

    def _radius_ranked(self, pos: int, radius: float, exclude_self: bool) -> Ranked:
        ranked = self._rank(pos, self._ball(pos, radius), exclude_self)
        return [entry for entry in ranked if entry[0] <= radius]

    def nearest_k(self, station_id: str, k: int) -> List[Tuple[Station, float]]:
        """
        Return up to ``k`` other stations ordered by ascending distance.

        Raises
        ------
        UnknownStation
            If ``station_id`` is not indexed.
        InvalidInput
            If ``k`` is not positive.
        """
        pos = self._position(station_id)
        if k <= 0:
            raise InvalidInput(f"k must be positive, got {k}")
        ranked = self._nearest_ranked(pos, k, exclude_self=True)
        return [(self._stations[j], d) for d, _, j in ranked]

    def within_radius(self, station_id: str, radius: float) -> List[Tuple[Station, float]]:
        """
        Return all other stations no further than ``radius`` away.

        Raises
        ------
        UnknownStation
            If ``station_id`` is not indexed.
        InvalidInput
            If ``radius`` is negative or not a number.
        """
        pos = self._position(station_id)
        if not radius >= 0.0:
            raise InvalidInput(f"radius must be non-negative, got {radius}")
        ranked = self._radius_ranked(pos, radius, exclude_self=True)
        return [(self._stations[j], d) for d, _, j in ranked]

    def query(
        self,
        station_id: str,
        max_count: Optional[int] = None,
        radius: Optional[float] = None,
        exclude_self: bool = True,
    ) -> List[Tuple[Station, float]]:
        """
        Combined count/radius query.

        With a radius, stations within it are returned (closest first) and
        then truncated to ``max_count`` if that is also given. With only
        ``max_count`` this behaves like :meth:`nearest_k`.
        """
        pos = self._position(station_id)
        if max_count is None and radius is None:
            raise InvalidInput("A neighbour query needs max_count and/or radius")
        if max_count is not None and max_count <= 0:
            raise InvalidInput(f"max_count must be positive, got {max_count}")
        if radius is not None and not radius >= 0.0:
            raise InvalidInput(f"radius must be non-negative, got {radius}")

        if radius is not None:
            ranked = self._radius_ranked(pos, radius, exclude_self)
            if max_count is not None:
                ranked = ranked[:max_count]
        else:
            assert max_count is not None
            ranked = self._nearest_ranked(pos, max_count, exclude_self)
        return [(self._stations[j], d) for d, _, j in ranked]
