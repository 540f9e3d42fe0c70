"""
Quality-control rules for the Station QC toolkit.

Each rule evaluates exactly one observation and returns a
:class:`stnqc.flags.TestResult`. Rules only read from the caches they are
given (triggering the caches' memoization at most) and never raise for
sparse data: a window or neighbourhood too thin to compute the statistic
yields ``Flag.INCONCLUSIVE``, as does an observation whose own value is
missing.

* Range check: value outside a hard (fail) or soft (warn) plausible range.
* Special values: value equal to a known sentinel code.
* Dip check: deviation from the mean of the immediate time-neighbours.
* Step check: change from the immediately preceding value.
* Spike check: symmetric jump away from and back towards the neighbours.
* Spike MAD: distance from the window median in units of the local MAD.
* Flatline: how many consecutive values repeat the observed value.
* Buddy check: residual against a distance-weighted neighbour estimate.
* SCT: spatial consistency test, leave-one-out optimal interpolation
  residuals against a vertical background profile.

The buddy check and the SCT also come in slice form
(:func:`buddy_check_slice`, :func:`sct_check`): they take every observation
of one time step at once and iteratively drop failed stations from the
neighbourhoods of the others.

Two-threshold rules go through :func:`stnqc.flags.flag_from_thresholds`,
which tests the ``fail`` threshold before the ``warn`` one.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from stnqc.config import (
    BuddyConfig,
    DipConfig,
    FlatlineConfig,
    RangeConfig,
    SctConfig,
    SpecialValuesConfig,
    SpikeConfig,
    SpikeMadConfig,
    StepConfig,
)
from stnqc.flags import Flag, TestResult, flag_from_thresholds
from stnqc.models import Observation
from stnqc.series_cache import SeriesCache, SeriesWindow, WindowSpec
from stnqc.spatial_cache import NeighborQuerySpec, SpatialCache

logger = logging.getLogger(__name__)

RANGE_CHECK = "range_check"
SPECIAL_VALUES = "special_values"
DIP_CHECK = "dip_check"
STEP_CHECK = "step_check"
SPIKE_CHECK = "spike_check"
SPIKE_MAD = "spike_mad"
FLATLINE_CHECK = "flatline_check"
BUDDY_CHECK = "buddy_check"
SCT = "sct"

# A spike must be roughly symmetric: the up and down legs may differ by at
# most this fraction of their sum.
SPIKE_SYMMETRY = 0.35

# Background lapse rate (value units per metre) for flat or sparse boxes.
STANDARD_LAPSE_RATE = -0.0065


def _result(
    obs: Observation, test: str, flag: Flag, score: Optional[float] = None
) -> TestResult:
    return TestResult(
        station_id=obs.station_id,
        time=obs.time,
        test=test,
        flag=flag,
        score=score,
    )


def _split(window: SeriesWindow, obs: Observation) -> Tuple[np.ndarray, np.ndarray]:
    """Split a window into values strictly before and strictly after ``obs``."""
    times = window.times
    values = window.values
    lo = int(times.searchsorted(obs.time, side="left"))
    hi = int(times.searchsorted(obs.time, side="right"))
    return values[:lo], values[hi:]


def _last(values: np.ndarray) -> Optional[float]:
    if values.size == 0 or math.isnan(values[-1]):
        return None
    return float(values[-1])


def _first(values: np.ndarray) -> Optional[float]:
    if values.size == 0 or math.isnan(values[0]):
        return None
    return float(values[0])


def range_check(obs: Observation, cfg: RangeConfig) -> TestResult:
    """
    Compare the observed value against hard and soft plausible ranges.

    Outside ``[min, max]`` fails, outside ``[soft_min, soft_max]`` warns.
    Bounds are inclusive. The score is how far the value lies outside the
    soft range (0 inside it).
    """
    if obs.is_missing:
        return _result(obs, RANGE_CHECK, Flag.INCONCLUSIVE)

    value = obs.value
    soft_min = cfg.soft_min if cfg.soft_min is not None else cfg.min
    soft_max = cfg.soft_max if cfg.soft_max is not None else cfg.max
    excess = max(soft_min - value, value - soft_max, 0.0)

    if value < cfg.min or value > cfg.max:
        flag = Flag.FAIL
    elif value < soft_min or value > soft_max:
        flag = Flag.WARN
    else:
        flag = Flag.PASS
    return _result(obs, RANGE_CHECK, flag, excess)


def special_values_check(obs: Observation, cfg: SpecialValuesConfig) -> TestResult:
    """Fail observations whose value is one of the configured sentinel codes."""
    if obs.is_missing:
        return _result(obs, SPECIAL_VALUES, Flag.INCONCLUSIVE)
    flag = Flag.FAIL if obs.value in cfg.values else Flag.PASS
    return _result(obs, SPECIAL_VALUES, flag)


def dip_check(series: SeriesCache, obs: Observation, cfg: DipConfig) -> TestResult:
    """
    Flag a value that deviates from the mean of its immediate time-neighbours.

    The previous and next observations are taken from the window
    ``[time - before, time + after]``. With either neighbour missing the
    result is inconclusive. The score is the signed deviation
    ``value - (previous + next) / 2``; its magnitude is compared against
    ``warn`` and ``fail``.

    Parameters
    ----------
    series
        Series cache of the run.
    obs
        Observation to check.
    cfg
        Dip thresholds and window bounds.

    Returns
    -------
    TestResult
        ``FAIL`` if ``|deviation| >= fail``, ``WARN`` if ``>= warn``, else
        ``PASS``.
    """
    if obs.is_missing:
        return _result(obs, DIP_CHECK, Flag.INCONCLUSIVE)

    window = series.get_window(obs.station_id, WindowSpec(obs.time, cfg.before, cfg.after))
    before, after = _split(window, obs)
    prev, nxt = _last(before), _first(after)
    if prev is None or nxt is None:
        return _result(obs, DIP_CHECK, Flag.INCONCLUSIVE)

    deviation = obs.value - (prev + nxt) / 2.0
    return _result(
        obs,
        DIP_CHECK,
        flag_from_thresholds(abs(deviation), cfg.warn, cfg.fail),
        deviation,
    )


def step_check(series: SeriesCache, obs: Observation, cfg: StepConfig) -> TestResult:
    """Compare the change from the preceding value against the thresholds."""
    if obs.is_missing:
        return _result(obs, STEP_CHECK, Flag.INCONCLUSIVE)

    window = series.get_window(
        obs.station_id, WindowSpec(obs.time, cfg.before, "0s")
    )
    before, _ = _split(window, obs)
    prev = _last(before)
    if prev is None:
        return _result(obs, STEP_CHECK, Flag.INCONCLUSIVE)

    step = obs.value - prev
    return _result(obs, STEP_CHECK, flag_from_thresholds(abs(step), cfg.warn, cfg.fail), step)


def spike_check(series: SeriesCache, obs: Observation, cfg: SpikeConfig) -> TestResult:
    """
    Flag a local extremum that jumps away and comes straight back.

    For predecessor ``a``, value ``b`` and successor ``c`` the statistic is
    ``|c - b| + |b - a|`` when ``b`` is a strict local extremum and the two
    legs are nearly symmetric (their difference is below
    ``SPIKE_SYMMETRY`` of their sum); otherwise it is 0.
    """
    if obs.is_missing:
        return _result(obs, SPIKE_CHECK, Flag.INCONCLUSIVE)

    window = series.get_window(obs.station_id, WindowSpec(obs.time, cfg.before, cfg.after))
    before, after = _split(window, obs)
    a, c = _last(before), _first(after)
    if a is None or c is None:
        return _result(obs, SPIKE_CHECK, Flag.INCONCLUSIVE)

    b = obs.value
    statistic = 0.0
    if (a < b and c < b) or (a > b and c > b):
        diffsum = abs(c - b) + abs(b - a)
        diffdiff = abs(abs(c - b) - abs(b - a))
        if diffdiff < diffsum * SPIKE_SYMMETRY:
            statistic = diffsum

    return _result(
        obs, SPIKE_CHECK, flag_from_thresholds(statistic, cfg.warn, cfg.fail), statistic
    )


def _mad(x: np.ndarray) -> Tuple[float, float]:
    median = float(np.median(x))
    return median, float(np.median(np.abs(x - median)))


def spike_mad_check(series: SeriesCache, obs: Observation, cfg: SpikeMadConfig) -> TestResult:
    """
    Flag spikes based on a local Median Absolute Deviation (MAD) score.

    ``|x - median(window)| / MAD(window)`` is compared against ``warn`` and
    ``fail``. Missing values in the window are ignored; fewer than
    ``min_points`` usable values is inconclusive. A window with MAD equal
    to zero is treated as non-diagnostic and passes.
    """
    if obs.is_missing:
        return _result(obs, SPIKE_MAD, Flag.INCONCLUSIVE)

    window = series.get_window(obs.station_id, WindowSpec(obs.time, cfg.before, cfg.after))
    before, after = _split(window, obs)
    values = np.concatenate((before, [obs.value], after))
    values = values[~np.isnan(values)]
    if values.size < cfg.min_points:
        return _result(obs, SPIKE_MAD, Flag.INCONCLUSIVE)

    median, mad = _mad(values)
    if mad == 0.0:
        return _result(obs, SPIKE_MAD, Flag.PASS)

    score = abs(obs.value - median) / mad
    return _result(obs, SPIKE_MAD, flag_from_thresholds(score, cfg.warn, cfg.fail), score)


def flatline_check(series: SeriesCache, obs: Observation, cfg: FlatlineConfig) -> TestResult:
    """
    Count how many consecutive values, ending with this one, are the same.

    Values within ``tolerance`` of the observed value count as repeats; a
    missing value breaks the run. The run length (including the observation
    itself) is the score, compared against the ``warn``/``fail`` counts.
    """
    if obs.is_missing:
        return _result(obs, FLATLINE_CHECK, Flag.INCONCLUSIVE)

    window = series.get_window(
        obs.station_id, WindowSpec(obs.time, cfg.before, "0s")
    )
    before, _ = _split(window, obs)
    if int(np.count_nonzero(~np.isnan(before))) + 1 < cfg.min_points:
        return _result(obs, FLATLINE_CHECK, Flag.INCONCLUSIVE)

    run = 1
    for value in before[::-1]:
        if math.isnan(value) or abs(value - obs.value) > cfg.tolerance:
            break
        run += 1

    return _result(
        obs, FLATLINE_CHECK, flag_from_thresholds(run, cfg.warn, cfg.fail), float(run)
    )


def buddy_query(cfg: BuddyConfig) -> NeighborQuerySpec:
    """Neighbour query used by :func:`buddy_check` for ``cfg``."""
    return NeighborQuerySpec(max_count=cfg.max_count, radius=cfg.radius, exclude_self=True)


def buddy_check(spatial: SpatialCache, obs: Observation, cfg: BuddyConfig) -> TestResult:
    """
    Compare an observation against a value interpolated from its neighbours.

    Neighbours come from ``spatial.get_neighbors`` with the configured
    count/radius; those without a current value are ignored. With fewer
    than ``min_neighbors`` usable neighbours the result is inconclusive.

    The expected value is an inverse-distance weighted mean
    (``1 / d**power``); for ``power > 0`` neighbours at distance zero, if
    any, are averaged on their own. With ``weighting="elevation_adjusted"`` each neighbour
    value is first moved to the target elevation using ``elev_gradient``,
    and neighbours without an elevation (or beyond ``max_elev_diff``) are
    skipped.

    The score is ``|value - expected| / spread`` where ``spread`` is the
    standard deviation of the neighbour values, floored at ``min_std``.
    """
    if obs.is_missing:
        return _result(obs, BUDDY_CHECK, Flag.INCONCLUSIVE)

    neighbours = spatial.get_neighbors(obs.station_id, buddy_query(cfg))

    values: List[float] = []
    distances: List[float] = []
    if cfg.weighting == "elevation_adjusted":
        target_elev = spatial.station(obs.station_id).elevation
        for n in neighbours:
            elev = n.station.elevation
            if n.value is None or elev is None or target_elev is None:
                continue
            elev_diff = target_elev - elev
            if cfg.max_elev_diff > 0 and abs(elev_diff) > cfg.max_elev_diff:
                continue
            values.append(n.value + elev_diff * cfg.elev_gradient)
            distances.append(n.distance)
    else:
        for n in neighbours:
            if n.value is None:
                continue
            values.append(n.value)
            distances.append(n.distance)

    if len(values) < cfg.min_neighbors:
        return _result(obs, BUDDY_CHECK, Flag.INCONCLUSIVE)

    vals = np.asarray(values, dtype=float)
    dists = np.asarray(distances, dtype=float)
    colocated = dists == 0.0
    if cfg.power > 0 and colocated.any():
        expected = float(np.mean(vals[colocated]))
    else:
        weights = 1.0 / dists**cfg.power
        expected = float(np.sum(weights * vals) / np.sum(weights))

    spread = max(float(np.std(vals)), cfg.min_std)
    score = abs(obs.value - expected) / spread
    return _result(obs, BUDDY_CHECK, flag_from_thresholds(score, cfg.warn, cfg.fail), score)


def _to_check(observations: Sequence[Observation], stations: Optional[List[str]]) -> List[int]:
    if stations is None:
        return list(range(len(observations)))
    wanted = set(stations)
    return [i for i, obs in enumerate(observations) if obs.station_id in wanted]


def buddy_check_slice(
    spatial: SpatialCache, observations: Sequence[Observation], cfg: BuddyConfig
) -> List[TestResult]:
    """
    Run :func:`buddy_check` over every observation of one time step.

    ``spatial`` must hold the values of this time step. After each pass the
    stations that failed are dropped from the value snapshot, so they no
    longer act as buddies, and the remaining observations are checked
    again. This repeats until a pass fails nothing new or
    ``cfg.num_iterations`` passes have run. A failed observation keeps the
    result of the pass that failed it.

    Observations whose station is not listed in ``cfg.check_stations`` (when
    given) get no result but still serve as buddies for the others.
    """
    indices = _to_check(observations, cfg.check_stations)
    results: Dict[int, TestResult] = {}
    failed: Set[str] = set()
    current = spatial

    for iteration in range(1, cfg.num_iterations + 1):
        newly_failed: Set[str] = set()
        for i in indices:
            obs = observations[i]
            if obs.station_id in failed:
                continue
            result = buddy_check(current, obs, cfg)
            results[i] = result
            if result.flag == Flag.FAIL:
                newly_failed.add(obs.station_id)

        if not newly_failed:
            break
        logger.debug(
            "Buddy check pass %d failed %d stations", iteration, len(newly_failed)
        )
        failed |= newly_failed
        current = spatial.with_values(
            {sid: spatial.value(sid) for sid in spatial.station_ids if sid not in failed}
        )

    return [results[i] for i in indices]


def vertical_profile(
    elevs: np.ndarray, values: np.ndarray, num_min_prof: int, min_elev_diff: float
) -> np.ndarray:
    """
    Background value at each elevation from a Theil-Sen fit of value on elevation.

    When fewer than ``num_min_prof`` points are given, or the 5-95 %
    elevation spread is below ``min_elev_diff``, the slope is fixed at
    :data:`STANDARD_LAPSE_RATE`. Pairs closer than 1 m in elevation count
    as slope 0. All points at one elevation give the plain mean.
    """
    n = values.size
    if elevs.min() == elevs.max():
        return np.full(n, float(np.mean(values)))

    z05, z95 = np.quantile(elevs, [0.05, 0.95])
    if n < num_min_prof or z95 - z05 < min_elev_diff:
        slope = STANDARD_LAPSE_RATE
    else:
        i, j = np.triu_indices(n, k=1)
        de = elevs[i] - elevs[j]
        flat = np.abs(de) < 1.0
        slopes = np.zeros(de.size)
        slopes[~flat] = (values[i] - values[j])[~flat] / de[~flat]
        slope = float(np.median(slopes))

    intercept = float(np.median(values - slope * elevs))
    return intercept + slope * elevs


def _sct_box(
    spatial: SpatialCache,
    station_ids: List[str],
    elevs: np.ndarray,
    values: np.ndarray,
    cfg: SctConfig,
) -> Tuple[np.ndarray, np.ndarray]:
    """Probability of gross error and cross-validation residual for one box."""
    n = len(station_ids)
    disth = spatial.pairwise_distances(station_ids)
    distz = np.abs(elevs[:, None] - elevs[None, :])

    others = ~np.eye(n, dtype=bool)
    dh = np.array([np.quantile(disth[k][others[k]], 0.10) for k in range(n)])
    dh_mean = max(cfg.min_horizontal_scale, float(np.mean(dh)))

    s = np.exp(-0.5 * (disth / dh_mean) ** 2 - 0.5 * (distz / cfg.vertical_scale) ** 2)
    # eps2 > 0 keeps the weighted matrix positive definite
    s_inv = np.linalg.inv(s + cfg.eps2 * np.eye(n))

    d = values - vertical_profile(elevs, values, cfg.num_min_prof, cfg.min_elev_diff)
    s_inv_d = s_inv @ d
    ares = s @ s_inv_d - d
    cvres = -s_inv_d / np.diag(s_inv)
    sig2o = max(0.01, float(np.mean(-d * ares)))
    return cvres * ares / sig2o, cvres


def sct_check(
    spatial: SpatialCache, observations: Sequence[Observation], cfg: SctConfig
) -> List[TestResult]:
    """
    Spatial consistency test over every observation of one time step.

    For each station not yet scored a box is formed from the stations within
    ``outer_radius`` (itself included, nearest ``num_max`` kept) that
    still have a value, an elevation and no failure. The box values are
    compared with a vertical background profile and each member's
    leave-one-out residual is estimated by optimal interpolation. Members
    within ``inner_radius`` of the box centre are scored with their
    probability of gross error (``pog``) and fail when it exceeds ``pos``
    (value above expectation) or ``neg`` (below). Scored members are not
    used as box centres again in the same pass.

    Passes repeat, without the failed stations, until nothing new fails or
    ``cfg.num_iterations`` passes have run. The score is the largest
    ``pog`` seen for the observation.

    Missing values, stations without elevation and stations with fewer
    than ``num_min`` box members are inconclusive. ``cfg.check_stations``
    limits which observations are reported, as in :func:`buddy_check_slice`.
    """
    indices = _to_check(observations, cfg.check_stations)
    checkable: Set[str] = set()
    inconclusive: Set[str] = set()
    for i in indices:
        obs = observations[i]
        if obs.is_missing or spatial.station(obs.station_id).elevation is None:
            inconclusive.add(obs.station_id)
        else:
            checkable.add(obs.station_id)

    query = NeighborQuerySpec(radius=cfg.outer_radius, exclude_self=False)
    failed: Set[str] = set()
    scores: Dict[str, float] = {}

    for iteration in range(1, cfg.num_iterations + 1):
        thrown_out = 0
        scored: Set[str] = set()
        for i in indices:
            sid = observations[i].station_id
            if sid not in checkable or sid in failed or sid in scored:
                continue

            box = [
                n
                for n in spatial.get_neighbors(sid, query)
                if n.value is not None
                and n.station.elevation is not None
                and n.station_id not in failed
                and n.station_id not in inconclusive
            ][: cfg.num_max]
            if len(box) < cfg.num_min:
                checkable.discard(sid)
                inconclusive.add(sid)
                continue

            pog, cvres = _sct_box(
                spatial,
                [n.station_id for n in box],
                np.array([n.station.elevation for n in box], dtype=float),
                np.array([n.value for n in box], dtype=float),
                cfg,
            )
            for n, p, c in zip(box, pog, cvres):
                member = n.station_id
                if member not in checkable or n.distance > cfg.inner_radius:
                    continue
                scores[member] = max(scores.get(member, 0.0), float(p))
                if (c < 0 and p > cfg.pos) or (c >= 0 and p > cfg.neg):
                    failed.add(member)
                    checkable.discard(member)
                    thrown_out += 1
                scored.add(member)

        logger.debug("SCT pass %d threw out %d stations", iteration, thrown_out)
        if thrown_out == 0:
            break

    results = []
    for i in indices:
        obs = observations[i]
        sid = obs.station_id
        if sid in failed:
            results.append(_result(obs, SCT, Flag.FAIL, scores.get(sid)))
        elif sid in inconclusive:
            results.append(_result(obs, SCT, Flag.INCONCLUSIVE))
        else:
            results.append(_result(obs, SCT, Flag.PASS, scores.get(sid)))
    return results
