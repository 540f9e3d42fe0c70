"""
Configuration models and loader for the Station QC toolkit.

This module defines small dataclasses that capture:

* Input data configuration (station and observation CSVs, column names).
* QC rule configuration (range, dip, step, spike, spike MAD, flatline,
  special values, buddy check, spatial consistency test).
* Run configuration (distance metric, worker threads).
* Output configuration (paths for flags CSV, chart directory, summary).

Every rule config validates its thresholds on construction and raises
:class:`stnqc.errors.InvalidInput` for impossible combinations, so a bad
configuration fails before any observation is evaluated.

It also provides a `load_config` helper that reads a YAML file and
returns a fully-populated `QCConfig` instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

import pandas as pd
import yaml

from stnqc._spatial_index import METRICS
from stnqc.errors import InvalidInput

WEIGHTINGS = ("inverse_distance", "elevation_adjusted")


def _check_thresholds(name: str, warn: float, fail: float) -> None:
    if not warn < fail:
        raise InvalidInput(f"{name}: warn threshold ({warn}) must be below fail ({fail})")
    if warn < 0:
        raise InvalidInput(f"{name}: thresholds must be non-negative")


def _duration(name: str, value: Any) -> pd.Timedelta:
    try:
        delta = pd.Timedelta(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"{name}: cannot parse duration {value!r}") from exc
    if pd.isna(delta) or delta < pd.Timedelta(0):
        raise InvalidInput(f"{name}: duration must be non-negative, got {value!r}")
    return delta


@dataclass(slots=True)
class RangeConfig:
    """Configuration for the range/climatology check."""

    min: float
    max: float
    soft_min: Optional[float] = None
    soft_max: Optional[float] = None
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.soft_min is None:
            self.soft_min = self.min
        if self.soft_max is None:
            self.soft_max = self.max
        if not self.min <= self.soft_min <= self.soft_max <= self.max:
            raise InvalidInput(
                "range_check: expected min <= soft_min <= soft_max <= max, got "
                f"{self.min}, {self.soft_min}, {self.soft_max}, {self.max}"
            )


@dataclass(slots=True)
class DipConfig:
    """Configuration for the dip check (deviation from time-neighbour mean)."""

    warn: float
    fail: float
    before: pd.Timedelta
    after: pd.Timedelta
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_thresholds("dip_check", self.warn, self.fail)
        self.before = _duration("dip_check.before", self.before)
        self.after = _duration("dip_check.after", self.after)


@dataclass(slots=True)
class StepConfig:
    """Configuration for the step check (change from the previous value)."""

    warn: float
    fail: float
    before: pd.Timedelta
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_thresholds("step_check", self.warn, self.fail)
        self.before = _duration("step_check.before", self.before)


@dataclass(slots=True)
class SpikeConfig:
    """Configuration for the symmetric spike check."""

    warn: float
    fail: float
    before: pd.Timedelta
    after: pd.Timedelta
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_thresholds("spike_check", self.warn, self.fail)
        self.before = _duration("spike_check.before", self.before)
        self.after = _duration("spike_check.after", self.after)


@dataclass(slots=True)
class SpikeMadConfig:
    """Configuration for the spike detection (MAD-based) QC rule."""

    warn: float
    fail: float
    before: pd.Timedelta
    after: pd.Timedelta
    min_points: int = 3
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_thresholds("spike_mad", self.warn, self.fail)
        self.before = _duration("spike_mad.before", self.before)
        self.after = _duration("spike_mad.after", self.after)
        if self.min_points < 3:
            raise InvalidInput("spike_mad: min_points must be at least 3")


@dataclass(slots=True)
class FlatlineConfig:
    """Configuration for the flatline (stuck sensor) QC rule."""

    warn: int
    fail: int
    before: pd.Timedelta
    tolerance: float = 0.0
    min_points: int = 2
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_thresholds("flatline_check", self.warn, self.fail)
        self.before = _duration("flatline_check.before", self.before)
        if self.tolerance < 0:
            raise InvalidInput("flatline_check: tolerance must be non-negative")
        if self.min_points < 2:
            raise InvalidInput("flatline_check: min_points must be at least 2")


@dataclass(slots=True)
class SpecialValuesConfig:
    """Configuration for the special (sentinel) values QC rule."""

    values: List[float] = field(default_factory=list)
    enabled: bool = True


@dataclass(slots=True)
class BuddyConfig:
    """
    Configuration for the spatial consistency (buddy) check.

    ``weighting`` selects how the expected value is interpolated from the
    neighbours:

    * ``"inverse_distance"`` (default) – weights ``1 / distance**power``.
    * ``"elevation_adjusted"`` – the same weights, applied to neighbour
      values first shifted to the target elevation with ``elev_gradient``
      (value units per metre); neighbours more than ``max_elev_diff``
      metres away vertically are ignored when ``max_elev_diff > 0``.

    ``power = 0`` gives every neighbour the same weight (a plain mean).

    The check sweeps each time slice up to ``num_iterations`` times;
    stations failed in one sweep no longer serve as buddies in the next.
    ``check_stations`` restricts which stations are flagged; every station
    with a value is still used as a buddy.
    """

    warn: float
    fail: float
    min_neighbors: int
    radius: Optional[float] = None
    max_count: Optional[int] = None
    min_std: float = 1.0
    weighting: str = "inverse_distance"
    power: float = 2.0
    elev_gradient: float = -0.0065
    max_elev_diff: float = 0.0
    num_iterations: int = 1
    check_stations: Optional[List[str]] = None
    enabled: bool = True

    def __post_init__(self) -> None:
        _check_thresholds("buddy_check", self.warn, self.fail)
        if self.radius is None and self.max_count is None:
            raise InvalidInput("buddy_check: set radius and/or max_count")
        if self.min_neighbors < 1:
            raise InvalidInput("buddy_check: min_neighbors must be at least 1")
        if not self.min_std > 0:
            raise InvalidInput("buddy_check: min_std must be positive")
        if self.weighting not in WEIGHTINGS:
            raise InvalidInput(
                f"buddy_check: unknown weighting '{self.weighting}', "
                f"expected one of {WEIGHTINGS}"
            )
        if not self.power >= 0:
            raise InvalidInput("buddy_check: power must be non-negative")
        if self.num_iterations < 1:
            raise InvalidInput("buddy_check: num_iterations must be at least 1")


@dataclass(slots=True)
class SctConfig:
    """
    Configuration for the spatial consistency test (optimal interpolation).

    Distances (``inner_radius``, ``outer_radius``,
    ``min_horizontal_scale``) are in km for geodesic runs and coordinate
    units for planar ones; ``vertical_scale`` and ``min_elev_diff`` are
    metres of elevation. ``pos``/``neg`` bound the probability of gross
    error for observations above/below their expected value, and ``eps2``
    is the ratio of observation to background error variance.
    """

    num_min: int
    num_max: int
    inner_radius: float
    outer_radius: float
    pos: float
    neg: float
    num_iterations: int = 1
    num_min_prof: int = 20
    min_elev_diff: float = 200.0
    min_horizontal_scale: float = 10.0
    vertical_scale: float = 200.0
    eps2: float = 0.5
    check_stations: Optional[List[str]] = None
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.num_min < 2:
            raise InvalidInput("sct: num_min must be at least 2")
        if self.num_max < self.num_min:
            raise InvalidInput("sct: num_max must not be below num_min")
        if self.num_iterations < 1:
            raise InvalidInput("sct: num_iterations must be at least 1")
        if self.num_min_prof < 0:
            raise InvalidInput("sct: num_min_prof must be non-negative")
        if not self.inner_radius >= 0:
            raise InvalidInput("sct: inner_radius must be non-negative")
        if not self.outer_radius >= self.inner_radius:
            raise InvalidInput("sct: outer_radius must not be below inner_radius")
        for name in ("min_elev_diff", "min_horizontal_scale", "vertical_scale", "eps2"):
            if not getattr(self, name) > 0:
                raise InvalidInput(f"sct: {name} must be positive")
        if self.pos < 0 or self.neg < 0:
            raise InvalidInput("sct: pos and neg must be non-negative")


@dataclass(slots=True)
class DataConfig:
    """Configuration for input data and column names."""

    stations_csv: str
    observations_csv: str
    station_column: str = "station_id"
    time_column: str = "time"
    value_column: str = "value"
    lat_column: str = "lat"
    lon_column: str = "lon"
    elevation_column: Optional[str] = None
    datetime_format: Optional[str] = None


@dataclass(slots=True)
class RunConfig:
    """Configuration for how a QC run is executed."""

    metric: str = "geodesic"
    workers: int = 1

    def __post_init__(self) -> None:
        if self.metric not in METRICS:
            raise InvalidInput(f"run.metric must be one of {METRICS}, got {self.metric!r}")
        if self.workers < 1:
            raise InvalidInput("run.workers must be at least 1")


@dataclass(slots=True)
class OutputConfig:
    """Configuration for QC outputs (files and labels)."""

    flags_csv: str
    charts_dir: str
    report_path: str
    network_name: str
    chart_station: Optional[str] = None


@dataclass(slots=True)
class RulesConfig:
    """Per-rule configuration; a rule left as ``None`` is not run."""

    range_check: Optional[RangeConfig] = None
    dip_check: Optional[DipConfig] = None
    step_check: Optional[StepConfig] = None
    spike_check: Optional[SpikeConfig] = None
    spike_mad: Optional[SpikeMadConfig] = None
    flatline_check: Optional[FlatlineConfig] = None
    special_values: Optional[SpecialValuesConfig] = None
    buddy_check: Optional[BuddyConfig] = None
    sct: Optional[SctConfig] = None


@dataclass(slots=True)
class QCConfig:
    """Top-level QC configuration, as loaded from YAML."""

    data: DataConfig
    qc: RulesConfig
    run: RunConfig
    output: OutputConfig


def _require_section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Return a mapping for a required top-level section or raise a KeyError."""
    try:
        section = raw[key]
    except KeyError as exc:
        raise KeyError(f"Missing required top-level section '{key}' in config") from exc

    if not isinstance(section, Mapping):
        raise TypeError(f"Config section '{key}' must be a mapping/dict")

    return section # pyright: ignore[reportUnknownVariableType]


def _optional_section(raw: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    if key not in raw or raw[key] is None:
        return None
    return _require_section(raw, key)


def _opt_float(section: Mapping[str, Any], key: str) -> Optional[float]:
    value = section.get(key)
    return None if value is None else float(value)


def _opt_ids(section: Mapping[str, Any], key: str) -> Optional[List[str]]:
    value = section.get(key)
    return None if value is None else [str(v) for v in value]


def _parse_rules(qc_section: Mapping[str, Any]) -> RulesConfig:
    rules_cfg = RulesConfig()

    section = _optional_section(qc_section, "range_check")
    if section is not None:
        rules_cfg.range_check = RangeConfig(
            min=float(section["min"]),
            max=float(section["max"]),
            soft_min=_opt_float(section, "soft_min"),
            soft_max=_opt_float(section, "soft_max"),
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "dip_check")
    if section is not None:
        rules_cfg.dip_check = DipConfig(
            warn=float(section["warn"]),
            fail=float(section["fail"]),
            before=section["before"],
            after=section["after"],
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "step_check")
    if section is not None:
        rules_cfg.step_check = StepConfig(
            warn=float(section["warn"]),
            fail=float(section["fail"]),
            before=section["before"],
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "spike_check")
    if section is not None:
        rules_cfg.spike_check = SpikeConfig(
            warn=float(section["warn"]),
            fail=float(section["fail"]),
            before=section["before"],
            after=section["after"],
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "spike_mad")
    if section is not None:
        rules_cfg.spike_mad = SpikeMadConfig(
            warn=float(section["warn"]),
            fail=float(section["fail"]),
            before=section["before"],
            after=section["after"],
            min_points=int(section.get("min_points", 3)),
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "flatline_check")
    if section is not None:
        rules_cfg.flatline_check = FlatlineConfig(
            warn=int(section["warn"]),
            fail=int(section["fail"]),
            before=section["before"],
            tolerance=float(section.get("tolerance", 0.0)),
            min_points=int(section.get("min_points", 2)),
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "special_values")
    if section is not None:
        rules_cfg.special_values = SpecialValuesConfig(
            values=[float(v) for v in section.get("values", [])],
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "buddy_check")
    if section is not None:
        max_count = section.get("max_count")
        rules_cfg.buddy_check = BuddyConfig(
            warn=float(section["warn"]),
            fail=float(section["fail"]),
            min_neighbors=int(section["min_neighbors"]),
            radius=_opt_float(section, "radius"),
            max_count=None if max_count is None else int(max_count),
            min_std=float(section.get("min_std", 1.0)),
            weighting=str(section.get("weighting", "inverse_distance")),
            power=float(section.get("power", 2.0)),
            elev_gradient=float(section.get("elev_gradient", -0.0065)),
            max_elev_diff=float(section.get("max_elev_diff", 0.0)),
            num_iterations=int(section.get("num_iterations", 1)),
            check_stations=_opt_ids(section, "check_stations"),
            enabled=bool(section.get("enabled", True)),
        )

    section = _optional_section(qc_section, "sct")
    if section is not None:
        rules_cfg.sct = SctConfig(
            num_min=int(section["num_min"]),
            num_max=int(section["num_max"]),
            inner_radius=float(section["inner_radius"]),
            outer_radius=float(section["outer_radius"]),
            pos=float(section["pos"]),
            neg=float(section["neg"]),
            num_iterations=int(section.get("num_iterations", 1)),
            num_min_prof=int(section.get("num_min_prof", 20)),
            min_elev_diff=float(section.get("min_elev_diff", 200.0)),
            min_horizontal_scale=float(section.get("min_horizontal_scale", 10.0)),
            vertical_scale=float(section.get("vertical_scale", 200.0)),
            eps2=float(section.get("eps2", 0.5)),
            check_stations=_opt_ids(section, "check_stations"),
            enabled=bool(section.get("enabled", True)),
        )

    return rules_cfg


def load_config(path: str) -> QCConfig:
    """
    Load QC configuration from a YAML file.

    The YAML file is expected to contain these top-level mappings:

    * ``data``   – parsed into :class:`DataConfig`
    * ``qc``     – parsed into the various rule configs (each optional)
    * ``run``    – optional, parsed into :class:`RunConfig`
    * ``output`` – parsed into :class:`OutputConfig`

    Parameters
    ----------
    path
        Filesystem path to the YAML configuration file.

    Returns
    -------
    QCConfig
        Parsed configuration object suitable for passing into the QC
        pipeline.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    KeyError
        If required sections or keys are missing in the YAML.
    TypeError
        If sections are not mappings/dicts as expected.
    InvalidInput
        If rule thresholds or run options are inconsistent.
    yaml.YAMLError
        If the YAML file cannot be parsed.
    """
    with open(path, "r", encoding="utf-8") as file:
        raw: Any = yaml.safe_load(file)

    if not isinstance(raw, Mapping):
        raise TypeError("Top-level config must be a mapping/dict")

    data_section = _require_section(raw, "data") # pyright: ignore[reportUnknownArgumentType]
    qc_section = _require_section(raw, "qc") # pyright: ignore[reportUnknownArgumentType]
    out_section = _require_section(raw, "output") # pyright: ignore[reportUnknownArgumentType]
    run_section = _optional_section(raw, "run") or {} # pyright: ignore[reportUnknownArgumentType]

    data_cfg = DataConfig(
        stations_csv=str(data_section["stations_csv"]),
        observations_csv=str(data_section["observations_csv"]),
        station_column=str(data_section.get("station_column", "station_id")),
        time_column=str(data_section.get("time_column", "time")),
        value_column=str(data_section.get("value_column", "value")),
        lat_column=str(data_section.get("lat_column", "lat")),
        lon_column=str(data_section.get("lon_column", "lon")),
        elevation_column=data_section.get("elevation_column"),
        datetime_format=data_section.get("datetime_format"),
    )

    run_cfg = RunConfig(
        metric=str(run_section.get("metric", "geodesic")),
        workers=int(run_section.get("workers", 1)),
    )

    output_cfg = OutputConfig(
        flags_csv=str(out_section["flags_csv"]),
        charts_dir=str(out_section["charts_dir"]),
        report_path=str(out_section["report_path"]),
        network_name=str(out_section["network_name"]),
        chart_station=out_section.get("chart_station"),
    )

    return QCConfig(
        data=data_cfg,
        qc=_parse_rules(qc_section),
        run=run_cfg,
        output=output_cfg,
    )
