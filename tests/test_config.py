"""Tests for the YAML configuration loader and rule config validation."""

from pathlib import Path

import pandas as pd
import pytest
import yaml

from stnqc.config import (
    BuddyConfig,
    DipConfig,
    FlatlineConfig,
    RangeConfig,
    RunConfig,
    SctConfig,
    SpikeMadConfig,
    load_config,
)
from stnqc.errors import InvalidInput

BASE = {
    "data": {
        "stations_csv": "stations.csv",
        "observations_csv": "obs.csv",
        "value_column": "air_temperature",
    },
    "qc": {
        "dip_check": {"before": "1h", "after": "2h", "warn": 3, "fail": 5},
        "buddy_check": {
            "radius": 25,
            "min_neighbors": 2,
            "warn": 2,
            "fail": 3,
            "weighting": "elevation_adjusted",
        },
        "flatline_check": {"before": "6h", "warn": 3, "fail": 5, "enabled": False},
    },
    "output": {
        "flags_csv": "out/flags.csv",
        "charts_dir": "out/charts",
        "report_path": "out/summary.md",
        "network_name": "Test Net",
    },
}


def write_config(tmp_path: Path, raw) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return str(path)


class TestLoadConfig:
    """Tests for load_config()."""

    def test_parses_sections(self, tmp_path):
        cfg = load_config(write_config(tmp_path, BASE))

        assert cfg.data.value_column == "air_temperature"
        assert cfg.data.time_column == "time"
        assert cfg.qc.dip_check.after == pd.Timedelta(hours=2)
        assert cfg.qc.buddy_check.weighting == "elevation_adjusted"
        assert cfg.qc.buddy_check.max_count is None
        assert cfg.qc.flatline_check.enabled is False
        assert cfg.qc.range_check is None
        assert cfg.output.chart_station is None

    def test_spatial_rule_sections(self, tmp_path):
        raw = dict(BASE, qc=dict(BASE["qc"]))
        raw["qc"]["buddy_check"] = dict(
            BASE["qc"]["buddy_check"], num_iterations=3, check_stations=[7, "b"]
        )
        raw["qc"]["sct"] = {
            "num_min": 5,
            "num_max": 40,
            "inner_radius": 20,
            "outer_radius": 60,
            "pos": 4,
            "neg": 8,
        }
        cfg = load_config(write_config(tmp_path, raw))

        assert cfg.qc.buddy_check.num_iterations == 3
        assert cfg.qc.buddy_check.check_stations == ["7", "b"]
        assert cfg.qc.sct.outer_radius == 60.0
        assert cfg.qc.sct.eps2 == 0.5
        assert cfg.qc.sct.check_stations is None

    def test_run_defaults(self, tmp_path):
        cfg = load_config(write_config(tmp_path, BASE))
        assert cfg.run.metric == "geodesic"
        assert cfg.run.workers == 1

    def test_run_section(self, tmp_path):
        raw = dict(BASE, run={"metric": "planar", "workers": 3})
        cfg = load_config(write_config(tmp_path, raw))
        assert cfg.run.metric == "planar"
        assert cfg.run.workers == 3

    def test_missing_section(self, tmp_path):
        raw = {k: v for k, v in BASE.items() if k != "output"}
        with pytest.raises(KeyError):
            load_config(write_config(tmp_path, raw))

    def test_section_must_be_mapping(self, tmp_path):
        raw = dict(BASE, data=["stations.csv"])
        with pytest.raises(TypeError):
            load_config(write_config(tmp_path, raw))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(TypeError):
            load_config(write_config(tmp_path, ["not", "a", "mapping"]))

    def test_invalid_thresholds(self, tmp_path):
        qc = dict(BASE["qc"], dip_check={"before": "1h", "after": "1h", "warn": 5, "fail": 3})
        with pytest.raises(InvalidInput):
            load_config(write_config(tmp_path, dict(BASE, qc=qc)))

    def test_unknown_metric(self, tmp_path):
        raw = dict(BASE, run={"metric": "euclid"})
        with pytest.raises(InvalidInput):
            load_config(write_config(tmp_path, raw))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))


class TestRuleConfigs:
    """Rule configs reject impossible parameter combinations on construction."""

    def test_fail_must_exceed_warn(self):
        with pytest.raises(InvalidInput):
            DipConfig(warn=5.0, fail=5.0, before="1h", after="1h")

    def test_negative_window(self):
        with pytest.raises(InvalidInput):
            DipConfig(warn=1.0, fail=2.0, before="-1h", after="1h")

    def test_unparseable_window(self):
        with pytest.raises(InvalidInput):
            DipConfig(warn=1.0, fail=2.0, before="soon", after="1h")

    def test_soft_range_inside_hard_range(self):
        with pytest.raises(InvalidInput):
            RangeConfig(min=0.0, max=10.0, soft_min=-1.0)

    def test_soft_range_defaults_to_hard(self):
        cfg = RangeConfig(min=0.0, max=10.0)
        assert (cfg.soft_min, cfg.soft_max) == (0.0, 10.0)

    def test_mad_needs_points(self):
        with pytest.raises(InvalidInput):
            SpikeMadConfig(warn=1.0, fail=2.0, before="1h", after="1h", min_points=2)

    def test_flatline_tolerance(self):
        with pytest.raises(InvalidInput):
            FlatlineConfig(warn=2, fail=3, before="1h", tolerance=-0.1)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {},
            {"radius": 10.0, "min_neighbors": 0},
            {"radius": 10.0, "min_std": 0.0},
            {"radius": 10.0, "weighting": "kriging"},
            {"radius": 10.0, "power": -1.0},
            {"radius": 10.0, "num_iterations": 0},
        ],
    )
    def test_buddy_validation(self, kwargs):
        params = dict(warn=2.0, fail=3.0, min_neighbors=2)
        params.update(kwargs)
        with pytest.raises(InvalidInput):
            BuddyConfig(**params)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"num_min": 1},
            {"num_max": 2},
            {"num_iterations": 0},
            {"outer_radius": 5.0},
            {"eps2": 0.0},
            {"vertical_scale": -1.0},
            {"neg": -0.5},
        ],
    )
    def test_sct_validation(self, kwargs):
        params = dict(num_min=3, num_max=10, inner_radius=10.0, outer_radius=20.0, pos=2.0, neg=2.0)
        params.update(kwargs)
        with pytest.raises(InvalidInput):
            SctConfig(**params)

    def test_workers(self):
        with pytest.raises(InvalidInput):
            RunConfig(workers=0)
