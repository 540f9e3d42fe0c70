"""End-to-end tests for IO, the batch runner, the report and the CLI."""

import sys
from pathlib import Path

import pandas as pd
import pytest
import yaml

from conftest import hourly
from stnqc import cli
from stnqc.config import (
    BuddyConfig,
    DataConfig,
    DipConfig,
    OutputConfig,
    RangeConfig,
    RulesConfig,
    SctConfig,
    SpikeConfig,
)
from stnqc.errors import InternalInconsistency, InvalidInput
from stnqc.flags import Flag
from stnqc.models import Station
from stnqc.series_cache import SeriesCache, SeriesWindow
from stnqc.io import read_observations, read_stations
from stnqc.pipeline import active_rules, run_qc
from stnqc.report import generate_summary


def long_frame(values):
    """Long-format observations from ``{station_id: [hourly values]}``."""
    frames = [
        pd.DataFrame({"station_id": sid, "time": hourly(len(vals)), "value": vals})
        for sid, vals in values.items()
    ]
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def network_values():
    return {
        "centre": [10.0, 10.0, 3.0, 10.0, 10.0],
        "east": [10.0, 10.5, 10.0, 10.5, 10.0],
        "north": [10.0, 9.5, 10.0, 9.5, 10.0],
        "west": [10.0, 10.0, 10.0, 10.0, 10.0],
        "south": [10.0, 10.0, 10.5, 10.0, 10.0],
    }


@pytest.fixture
def rules_cfg():
    return RulesConfig(
        range_check=RangeConfig(min=-40.0, max=40.0),
        dip_check=DipConfig(warn=3.0, fail=5.0, before="1h", after="1h"),
        spike_check=SpikeConfig(warn=6.0, fail=10.0, before="1h", after="1h", enabled=False),
        buddy_check=BuddyConfig(warn=2.0, fail=3.0, min_neighbors=3, radius=1.5),
    )


class TestIO:
    """Tests for the CSV readers."""

    def test_read_stations(self, tmp_path):
        path = tmp_path / "stations.csv"
        path.write_text("id,lat,lon,elev\n007,60.0,10.0,120\n008,60.1,10.1,\n")
        cfg = DataConfig(
            stations_csv=str(path),
            observations_csv="unused.csv",
            station_column="id",
            elevation_column="elev",
        )
        stations = read_stations(cfg)
        assert [s.station_id for s in stations] == ["007", "008"]
        assert stations[0].elevation == 120.0
        assert stations[1].elevation is None

    def test_read_observations(self, tmp_path):
        path = tmp_path / "obs.csv"
        path.write_text(
            "stn,when,t2m\n"
            "b,2024-01-01 01:00,2.0\n"
            "a,2024-01-01 01:00,x\n"
            "a,2024-01-01 00:00,1.0\n"
        )
        cfg = DataConfig(
            stations_csv="unused.csv",
            observations_csv=str(path),
            station_column="stn",
            time_column="when",
            value_column="t2m",
        )
        df = read_observations(cfg)
        assert list(df.columns) == ["station_id", "time", "value"]
        assert df["station_id"].tolist() == ["a", "a", "b"]
        assert df["time"].tolist() == [
            pd.Timestamp("2024-01-01 00:00"),
            pd.Timestamp("2024-01-01 01:00"),
            pd.Timestamp("2024-01-01 01:00"),
        ]
        assert pd.isna(df.loc[1, "value"])

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "stations.csv"
        path.write_text("station_id,lat\nx,1.0\n")
        cfg = DataConfig(stations_csv=str(path), observations_csv="unused.csv")
        with pytest.raises(InvalidInput):
            read_stations(cfg)


class TestRunQC:
    """Tests for run_qc()."""

    def test_flags_and_combination(self, cross_stations, network_values, rules_cfg):
        observations = long_frame(network_values)
        result = run_qc(cross_stations, observations, rules_cfg, metric="planar")
        df = result.frame

        assert result.tests == ["range_check", "dip_check", "buddy_check"]
        assert len(df) == len(observations)
        assert result.errors == []

        row = df[(df["station_id"] == "centre") & (df["time"] == hourly(5)[2])].iloc[0]
        assert row["dip_check"] == int(Flag.FAIL)
        assert row["dip_check_score"] == pytest.approx(-7.0)
        assert row["buddy_check"] == int(Flag.FAIL)
        assert row["qc_flag"] == int(Flag.FAIL)

        # The first and last hour of every station has no dip neighbours.
        edges = df[df["time"].isin([hourly(5)[0], hourly(5)[4]])]
        assert (edges["dip_check"] == int(Flag.INCONCLUSIVE)).all()

    def test_qc_flag_is_row_maximum(self, cross_stations, network_values, rules_cfg):
        df = run_qc(cross_stations, long_frame(network_values), rules_cfg, metric="planar").frame
        expected = df[["range_check", "dip_check", "buddy_check"]].fillna(0).max(axis=1)
        assert df["qc_flag"].tolist() == expected.astype(int).tolist()

    def test_disabled_rules_are_skipped(self, rules_cfg):
        assert "spike_check" not in [name for name, _, _, _ in active_rules(rules_cfg)]

    def test_unknown_station_is_recorded(self, cross_stations, network_values, rules_cfg):
        values = dict(network_values, ghost=[1.0, 2.0, 3.0, 4.0, 5.0])
        result = run_qc(cross_stations, long_frame(values), rules_cfg, metric="planar")

        assert len(result.errors) == 5
        assert {e.test for e in result.errors} == {"buddy_check"}
        assert {e.station_id for e in result.errors} == {"ghost"}

        ghost = result.frame[result.frame["station_id"] == "ghost"]
        assert ghost["buddy_check"].isna().all()
        assert (ghost["range_check"] == int(Flag.PASS)).all()
        assert (ghost["qc_flag"] == int(Flag.INCONCLUSIVE)).all()

    def test_rule_errors_leave_row_inconclusive(self, cross_stations, network_values):
        values = dict(network_values, ghost=[1.0, 2.0, 3.0, 4.0, 5.0])
        rules_cfg = RulesConfig(
            buddy_check=BuddyConfig(warn=2.0, fail=3.0, min_neighbors=3, radius=1.5)
        )
        df = run_qc(cross_stations, long_frame(values), rules_cfg, metric="planar").frame

        ghost = df[df["station_id"] == "ghost"]
        assert ghost["buddy_check"].isna().all()
        assert (ghost["qc_flag"] == int(Flag.INCONCLUSIVE)).all()
        known = df[df["station_id"] != "ghost"]
        assert known["buddy_check"].notna().all()

    def test_buddy_iterations_per_time_slice(self, row_stations):
        values = {f"s{i}": [0.0, 0.0] for i in range(10)}
        values["s8"] = [0.1, 0.0]
        values["s9"] = [1.0, 0.0]
        common = dict(warn=0.5, fail=1.0, min_neighbors=1, radius=10.0, min_std=0.01, power=0.0)
        observations = long_frame(values)

        single = run_qc(
            row_stations, observations, RulesConfig(buddy_check=BuddyConfig(**common))
        ).frame
        repeated = run_qc(
            row_stations,
            observations,
            RulesConfig(buddy_check=BuddyConfig(num_iterations=2, **common)),
        ).frame

        first_hour = hourly(2)[0]
        failed_once = single[
            (single["time"] == first_hour) & (single["qc_flag"] == int(Flag.FAIL))
        ]
        failed_twice = repeated[
            (repeated["time"] == first_hour) & (repeated["qc_flag"] == int(Flag.FAIL))
        ]
        assert failed_once["station_id"].tolist() == ["s9"]
        assert sorted(failed_twice["station_id"]) == ["s8", "s9"]
        assert (repeated[repeated["time"] == hourly(2)[1]]["qc_flag"] == int(Flag.PASS)).all()

    def test_sct_column(self, line_stations):
        stations = [Station(s.station_id, s.lat, s.lon, elevation=0.0) for s in line_stations]
        values = {"s0": [0.0, 5.0], "s1": [1.0, 5.05], "s2": [100.0, 5.1]}
        sct = SctConfig(
            num_min=3,
            num_max=10,
            inner_radius=10.0,
            outer_radius=10.0,
            pos=2.0,
            neg=2.0,
            num_min_prof=0,
            min_elev_diff=100.0,
        )
        result = run_qc(stations, long_frame(values), RulesConfig(sct=sct), workers=2)
        df = result.frame.set_index(["station_id", "time"])

        assert result.tests == ["sct"]
        assert df.loc[("s2", hourly(2)[0]), "sct"] == int(Flag.FAIL)
        assert df.loc[("s2", hourly(2)[0]), "sct_score"] > 2.0
        others = df.drop(index=("s2", hourly(2)[0]))
        assert (others["sct"] == int(Flag.PASS)).all()

    def test_corrupt_window_aborts_run(
        self, monkeypatch, cross_stations, network_values, rules_cfg
    ):
        real = SeriesCache._slice

        def reversed_slice(self, station_id, spec):
            window = real(self, station_id, spec)
            return SeriesWindow(station_id, spec, tuple(reversed(window.observations)))

        monkeypatch.setattr(SeriesCache, "_slice", reversed_slice)
        with pytest.raises(InternalInconsistency):
            run_qc(cross_stations, long_frame(network_values), rules_cfg, metric="planar")

    def test_worker_count_does_not_change_results(
        self, cross_stations, network_values, rules_cfg
    ):
        observations = long_frame(network_values)
        serial = run_qc(cross_stations, observations, rules_cfg, metric="planar", workers=1)
        threaded = run_qc(cross_stations, observations, rules_cfg, metric="planar", workers=4)
        pd.testing.assert_frame_equal(serial.frame, threaded.frame)

    def test_no_rules(self, cross_stations, network_values):
        result = run_qc(cross_stations, long_frame(network_values), RulesConfig(), metric="planar")
        assert result.tests == []
        assert (result.frame["qc_flag"] == int(Flag.PASS)).all()

    def test_duplicate_timestamps_rejected(self, cross_stations):
        observations = pd.DataFrame(
            {
                "station_id": ["centre", "centre"],
                "time": [hourly(1)[0], hourly(1)[0]],
                "value": [1.0, 2.0],
            }
        )
        with pytest.raises(InvalidInput):
            run_qc(cross_stations, observations, RulesConfig(), metric="planar")


class TestReport:
    def test_summary(self, tmp_path, cross_stations, network_values, rules_cfg):
        values = dict(network_values, ghost=[1.0, 2.0, 3.0, 4.0, 5.0])
        result = run_qc(cross_stations, long_frame(values), rules_cfg, metric="planar")
        out_cfg = OutputConfig(
            flags_csv=str(tmp_path / "flags.csv"),
            charts_dir=str(tmp_path / "charts"),
            report_path=str(tmp_path / "summary.md"),
            network_name="Test Net",
        )
        generate_summary(result, out_cfg, chart_path="charts/centre_qc.png")

        text = Path(out_cfg.report_path).read_text(encoding="utf-8")
        assert "Test Net" in text
        assert "| dip_check |" in text
        assert "- centre:" in text
        assert "## Evaluation errors" in text
        assert "![QC chart](charts/centre_qc.png)" in text


class TestCLI:
    """Smoke tests for the station-qc entry point."""

    @pytest.fixture
    def config_path(self, tmp_path, cross_stations, network_values):
        pd.DataFrame(
            [{"station_id": s.station_id, "lat": s.lat, "lon": s.lon} for s in cross_stations]
        ).to_csv(tmp_path / "stations.csv", index=False)
        long_frame(network_values).to_csv(tmp_path / "obs.csv", index=False)

        raw = {
            "data": {
                "stations_csv": str(tmp_path / "stations.csv"),
                "observations_csv": str(tmp_path / "obs.csv"),
            },
            "qc": {
                "dip_check": {"before": "1h", "after": "1h", "warn": 3, "fail": 5},
                "buddy_check": {"radius": 1.5, "min_neighbors": 3, "warn": 2, "fail": 3},
            },
            "run": {"metric": "planar", "workers": 2},
            "output": {
                "flags_csv": str(tmp_path / "out" / "flags.csv"),
                "charts_dir": str(tmp_path / "out" / "charts"),
                "report_path": str(tmp_path / "out" / "summary.md"),
                "network_name": "CLI Net",
            },
        }
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(raw), encoding="utf-8")
        return path

    def test_main_writes_outputs(self, monkeypatch, tmp_path, config_path):
        monkeypatch.setattr(
            sys,
            "argv",
            ["station-qc", "-c", str(config_path), "--no-progress", "--no-chart-preview"],
        )
        cli.main()

        flags = pd.read_csv(tmp_path / "out" / "flags.csv")
        assert "qc_flag" in flags.columns
        assert flags["qc_flag"].max() == int(Flag.FAIL)
        assert (tmp_path / "out" / "summary.md").exists()
        assert (tmp_path / "out" / "charts" / "centre_qc.png").exists()

    def test_invalid_config_exits(self, monkeypatch, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"data": {}}), encoding="utf-8")
        monkeypatch.setattr(sys, "argv", ["station-qc", "-c", str(path)])
        with pytest.raises(SystemExit) as excinfo:
            cli.main()
        assert excinfo.value.code == 1
