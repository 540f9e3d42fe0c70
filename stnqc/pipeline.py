"""
Batch QC runner.

:func:`run_qc` wires the caches and rules together for one run:

* One :class:`~stnqc.series_cache.SeriesCache` over every station's history.
* One :class:`~stnqc.spatial_cache.SpatialCache` per observation time, all
  sharing the run's station index, holding the values reported at that
  time.
* Every enabled single-observation and time-series rule evaluated for every
  observation, and every enabled spatial rule evaluated once per time
  slice, serially or on a thread pool, followed by per-observation flag
  combination.

Structural errors raised while evaluating one rule are recorded and logged
against the affected observations, which are then at least
``INCONCLUSIVE``, and the run carries on with the rest.
:class:`~stnqc.errors.InternalInconsistency` aborts the run.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from stnqc import rules
from stnqc.config import RulesConfig
from stnqc.errors import InternalInconsistency, StationQCError, UnknownStation
from stnqc.flags import Flag, TestResult, combine_flags
from stnqc.models import Observation, Station
from stnqc.series_cache import SeriesCache
from stnqc.spatial_cache import SpatialCache

logger = logging.getLogger(__name__)

# How a rule is called: per observation with no cache or with the series
# cache, or once per time slice with that slice's spatial cache and all of
# its observations.
SINGLE = "single"
SERIES = "series"
SLICE = "slice"

RULES: Tuple[Tuple[str, str, Callable[..., Any]], ...] = (
    (rules.RANGE_CHECK, SINGLE, rules.range_check),
    (rules.SPECIAL_VALUES, SINGLE, rules.special_values_check),
    (rules.DIP_CHECK, SERIES, rules.dip_check),
    (rules.STEP_CHECK, SERIES, rules.step_check),
    (rules.SPIKE_CHECK, SERIES, rules.spike_check),
    (rules.SPIKE_MAD, SERIES, rules.spike_mad_check),
    (rules.FLATLINE_CHECK, SERIES, rules.flatline_check),
    (rules.BUDDY_CHECK, SLICE, rules.buddy_check_slice),
    (rules.SCT, SLICE, rules.sct_check),
)

ActiveRule = Tuple[str, str, Callable[..., Any], Any]
Outcome = Tuple[List[TestResult], List["EvaluationError"]]


@dataclass(frozen=True)
class EvaluationError:
    """A structural error raised by one rule for one observation."""

    station_id: str
    time: pd.Timestamp
    test: str
    message: str


@dataclass
class QCRunResult:
    """
    Outcome of a QC run.

    ``frame`` has one row per observation with ``station_id``, ``time`` and
    ``value``, one integer flag column and one ``<test>_score`` column per
    active rule, and the combined ``qc_flag``.
    """

    frame: pd.DataFrame
    tests: List[str]
    errors: List[EvaluationError] = field(default_factory=list)


def active_rules(rules_cfg: RulesConfig) -> List[ActiveRule]:
    """Return ``(name, kind, function, config)`` for every enabled rule."""
    active: List[ActiveRule] = []
    for name, kind, func in RULES:
        cfg = getattr(rules_cfg, name)
        if cfg is not None and cfg.enabled:
            active.append((name, kind, func, cfg))
    return active


def build_spatial_slices(
    stations: Sequence[Station],
    observations: pd.DataFrame,
    metric: str = "geodesic",
) -> Dict[pd.Timestamp, SpatialCache]:
    """
    Build one spatial cache per observation time.

    Values of stations missing from ``stations`` are left out of the slice;
    spatial rules report those stations as unknown.
    """
    base = SpatialCache(stations, metric=metric)
    slices: Dict[pd.Timestamp, SpatialCache] = {}
    for time, group in observations.groupby("time", sort=True):
        values = {
            str(sid): value
            for sid, value in zip(group["station_id"], group["value"])
            if str(sid) in base
        }
        slices[pd.Timestamp(time)] = base.with_values(values)
    return slices


class _Evaluator:
    """Applies the per-observation rules to single observations."""

    def __init__(self, active: List[ActiveRule], series: SeriesCache) -> None:
        self._active = [rule for rule in active if rule[1] != SLICE]
        self._series = series

    def __call__(self, obs: Observation) -> Outcome:
        results: List[TestResult] = []
        errors: List[EvaluationError] = []
        for name, kind, func, cfg in self._active:
            try:
                if kind == SINGLE:
                    result = func(obs, cfg)
                else:
                    result = func(self._series, obs, cfg)
            except InternalInconsistency:
                raise
            except StationQCError as exc:
                errors.append(EvaluationError(obs.station_id, obs.time, name, str(exc)))
                continue
            results.append(result)
        return results, errors


class _SliceEvaluator:
    """Applies the spatial rules to all observations of one time slice."""

    def __init__(
        self,
        active: List[ActiveRule],
        spatial: Dict[pd.Timestamp, SpatialCache],
        observations: List[Observation],
    ) -> None:
        self._active = [rule for rule in active if rule[1] == SLICE]
        self._spatial = spatial
        self._observations = observations

    def __call__(self, time_rows: Tuple[pd.Timestamp, List[int]]) -> Dict[int, Outcome]:
        time, rows = time_rows
        spatial = self._spatial[time]
        outcomes: Dict[int, Outcome] = {row: ([], []) for row in rows}

        known = [row for row in rows if self._observations[row].station_id in spatial]
        unknown = [row for row in rows if self._observations[row].station_id not in spatial]
        row_of = {self._observations[row].station_id: row for row in known}
        batch = [self._observations[row] for row in known]

        for name, _, func, cfg in self._active:
            for row in unknown:
                obs = self._observations[row]
                outcomes[row][1].append(
                    EvaluationError(obs.station_id, time, name, str(UnknownStation(obs.station_id)))
                )
            try:
                results = func(spatial, batch, cfg)
            except InternalInconsistency:
                raise
            except StationQCError as exc:
                for obs in batch:
                    outcomes[row_of[obs.station_id]][1].append(
                        EvaluationError(obs.station_id, time, name, str(exc))
                    )
                continue
            for result in results:
                outcomes[row_of[result.station_id]][0].append(result)
        return outcomes


def _map(
    func: Callable[[Any], Any],
    items: List[Any],
    workers: int,
    progress: bool,
    desc: str,
    unit: str,
) -> List[Any]:
    bar_kwargs = dict(total=len(items), desc=desc, unit=unit, disable=not progress)
    if workers <= 1:
        return [func(item) for item in tqdm(items, **bar_kwargs)]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(tqdm(pool.map(func, items), **bar_kwargs))


def run_qc(
    stations: Sequence[Station],
    observations: pd.DataFrame,
    rules_cfg: RulesConfig,
    metric: str = "geodesic",
    workers: int = 1,
    progress: bool = False,
) -> QCRunResult:
    """
    Run every enabled QC rule on every observation.

    Parameters
    ----------
    stations
        Station metadata for the run.
    observations
        Long-format observations with ``station_id``, ``time`` and ``value``
        columns; each station's rows strictly ascending in time.
    rules_cfg
        Rule configuration; disabled or unset rules are skipped.
    metric
        Distance metric for the spatial index.
    workers
        Number of threads evaluating observations (or time slices)
        concurrently.
    progress
        Show tqdm progress bars.

    Returns
    -------
    QCRunResult
        Per-observation flags, scores and any recorded evaluation errors.

    Raises
    ------
    InvalidInput
        If the station set or the observation series are malformed.
    InternalInconsistency
        If a cache returns data that contradicts its query.
    """
    observations = observations.reset_index(drop=True)
    observations = observations.assign(station_id=observations["station_id"].astype(str))
    series = SeriesCache.from_frame(observations)
    active = active_rules(rules_cfg)
    tests = [name for name, _, _, _ in active]

    obs_list = [
        Observation(str(sid), pd.Timestamp(time), value)
        for sid, time, value in zip(
            observations["station_id"], observations["time"], observations["value"]
        )
    ]
    logger.info(
        "Running %d QC rules on %d observations from %d stations",
        len(tests),
        len(obs_list),
        len(series),
    )

    outcomes = _map(
        _Evaluator(active, series), obs_list, workers, progress, "QC observations", "obs"
    )

    if any(kind == SLICE for _, kind, _, _ in active):
        spatial = build_spatial_slices(stations, observations, metric=metric)
        time_rows = [
            (pd.Timestamp(time), list(rows))
            for time, rows in observations.groupby("time", sort=True).groups.items()
        ]
        evaluate_slice = _SliceEvaluator(active, spatial, obs_list)
        for slice_outcomes in _map(
            evaluate_slice, time_rows, workers, progress, "QC time slices", "slice"
        ):
            for row, (results, row_errors) in slice_outcomes.items():
                outcomes[row][0].extend(results)
                outcomes[row][1].extend(row_errors)

    frame, errors = _collect(observations, tests, outcomes)

    for err in errors:
        logger.warning(
            "%s failed for station %s at %s: %s", err.test, err.station_id, err.time, err.message
        )
    return QCRunResult(frame=frame, tests=tests, errors=errors)


def _collect(
    observations: pd.DataFrame,
    tests: List[str],
    outcomes: Iterable[Outcome],
) -> Tuple[pd.DataFrame, List[EvaluationError]]:
    n = len(observations)
    flags: Dict[str, List[Optional[int]]] = {t: [None] * n for t in tests}
    scores: Dict[str, np.ndarray] = {t: np.full(n, np.nan) for t in tests}
    errored = np.zeros(n, dtype=bool)
    errors: List[EvaluationError] = []

    for row, (results, row_errors) in enumerate(outcomes):
        errors.extend(row_errors)
        errored[row] = bool(row_errors)
        for result in results:
            flags[result.test][row] = int(result.flag)
            if result.score is not None:
                scores[result.test][row] = result.score

    frame = observations[["station_id", "time", "value"]].copy()
    for test in tests:
        frame[test] = pd.array(flags[test], dtype="Int64")
        frame[f"{test}_score"] = scores[test]

    if tests:
        combined = combine_flags(*(frame[t] for t in tests))
        # A rule that could not run leaves the observation unverified.
        combined.loc[errored] = combined.loc[errored].clip(lower=int(Flag.INCONCLUSIVE))
        frame["qc_flag"] = combined
    else:
        frame["qc_flag"] = int(Flag.PASS)
    return frame, errors
