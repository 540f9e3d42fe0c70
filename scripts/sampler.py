#!/usr/bin/env python
"""Initialise example data and config for the Station QC toolkit.

This script creates:

- examples/stations.csv      Synthetic station network (id, lat, lon, elevation).
- examples/observations.csv  Synthetic hourly temperature observations.
- examples/config.yaml       YAML configuration file pointing to the sample data.

It is intended as a convenience for quickly bootstrapping a new checkout of the
repository with realistic-looking example inputs.
"""

from __future__ import annotations

import argparse
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


DEFAULT_CONFIG: dict[str, Any] = {
    "data": {
        "stations_csv": "examples/stations.csv",
        "observations_csv": "examples/observations.csv",
        "station_column": "station_id",
        "time_column": "time",
        "value_column": "air_temperature",
        "lat_column": "lat",
        "lon_column": "lon",
        "elevation_column": "elevation",
        "datetime_format": "%Y-%m-%d %H:%M:%S",
    },
    "qc": {
        "range_check": {
            "enabled": True,
            "min": -50.0,
            "max": 50.0,
            "soft_min": -35.0,
            "soft_max": 38.0,
        },
        "special_values": {
            "enabled": True,
            "values": [-999.0, 9999.0],
        },
        "dip_check": {
            "enabled": True,
            "before": "1h",
            "after": "1h",
            "warn": 3.0,
            "fail": 5.0,
        },
        "step_check": {
            "enabled": True,
            "before": "1h",
            "warn": 4.0,
            "fail": 8.0,
        },
        "spike_check": {
            "enabled": True,
            "before": "1h",
            "after": "1h",
            "warn": 6.0,
            "fail": 10.0,
        },
        "spike_mad": {
            "enabled": True,
            "before": "4h",
            "after": "4h",
            "warn": 6.0,
            "fail": 10.0,
            "min_points": 5,
        },
        "flatline_check": {
            "enabled": True,
            "before": "12h",
            "tolerance": 0.0,
            "warn": 4,
            "fail": 6,
            "min_points": 3,
        },
        "buddy_check": {
            "enabled": True,
            "radius": 50.0,
            "max_count": 10,
            "min_neighbors": 3,
            "warn": 2.0,
            "fail": 3.0,
            "min_std": 1.0,
            "weighting": "inverse_distance",
            "power": 2.0,
            "elev_gradient": -0.0065,
            "max_elev_diff": 0.0,
            "num_iterations": 2,
        },
        "sct": {
            "enabled": True,
            "num_min": 5,
            "num_max": 50,
            "inner_radius": 30.0,
            "outer_radius": 80.0,
            "num_iterations": 2,
            "num_min_prof": 20,
            "min_elev_diff": 200.0,
            "min_horizontal_scale": 10.0,
            "vertical_scale": 200.0,
            "pos": 4.0,
            "neg": 8.0,
            "eps2": 0.5,
        },
    },
    "run": {
        "metric": "geodesic",
        "workers": 4,
    },
    "output": {
        "flags_csv": "out/flags.csv",
        "charts_dir": "out/charts",
        "report_path": "out/summary.md",
        "network_name": "Example Mesonet",
    },
}


def generate_stations(
    path: Path,
    n_stations: int = 25,
    seed: int | None = None,
) -> pd.DataFrame:
    """Generate a synthetic network of stations on a jittered grid.

    Parameters
    ----------
    path:
        File path where the CSV will be written.
    n_stations:
        Number of stations to generate.
    seed:
        Optional random seed for reproducible data.

    Returns
    -------
    pandas.DataFrame
        The generated station table.
    """
    rng = np.random.default_rng(seed)
    side = int(np.ceil(np.sqrt(n_stations)))

    rows = []
    for i in range(n_stations):
        row, col = divmod(i, side)
        rows.append(
            {
                "station_id": f"ST{i + 1:03d}",
                "lat": 59.5 + 0.15 * row + rng.normal(0.0, 0.02),
                "lon": 10.0 + 0.25 * col + rng.normal(0.0, 0.03),
                "elevation": float(max(0.0, rng.normal(150.0, 80.0))),
            }
        )
    df = pd.DataFrame(rows)

    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return df


def generate_observations(
    path: Path,
    stations: pd.DataFrame,
    n_hours: int = 48,
    start_time: datetime | None = None,
    seed: int | None = None,
) -> None:
    """Generate hourly temperature observations for every station.

    The generated data follows a shared diurnal cycle with a lapse-rate
    correction per station and small noise, plus a few injected faults so
    that the QC rules have something to find:

    - a single-hour dip at the first station,
    - a spike at the second station,
    - a frozen sensor at the third station,
    - a sentinel ``-999`` value and a warm-biased station.

    Parameters
    ----------
    path:
        File path where the CSV will be written.
    stations:
        Station table produced by :func:`generate_stations`.
    n_hours:
        Number of hourly samples per station.
    start_time:
        Optional starting datetime. If omitted, midnight of the current day is
        used.
    seed:
        Optional random seed for reproducible data.
    """
    rng = np.random.default_rng(seed)

    if start_time is None:
        today = datetime.now().date()
        start_time = datetime(today.year, today.month, today.day)

    timestamps = [start_time + timedelta(hours=h) for h in range(n_hours)]
    hours = np.arange(n_hours)
    diurnal = 8.0 + 5.0 * np.sin(2 * np.pi * (hours - 9) / 24.0)

    frames = []
    for idx, station in enumerate(stations.itertuples(index=False)):
        values = (
            diurnal
            - 0.0065 * station.elevation
            + rng.normal(0.0, 0.3, size=n_hours)
        )
        if idx == 0 and n_hours > 10:
            values[10] -= 7.0
        if idx == 1 and n_hours > 20:
            values[20] += 12.0
        if idx == 2 and n_hours > 30:
            values[24:30] = values[24]
        if idx == 3 and n_hours > 5:
            values[5] = -999.0
        if idx == 4:
            values = values + 6.0

        frames.append(
            pd.DataFrame(
                {
                    "station_id": station.station_id,
                    "time": timestamps,
                    "air_temperature": np.round(values, 2),
                }
            )
        )

    df = pd.concat(frames, ignore_index=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False, date_format="%Y-%m-%d %H:%M:%S")

    table = Table(title="Sample data written")
    table.add_column("Column")
    table.add_column("Example values", overflow="fold")

    for col in df.columns:
        sample_vals = df[col].head(5).to_list()
        table.add_row(col, str(sample_vals))

    console.print(table)


def write_config(path: Path, config: dict[str, Any]) -> None:
    """Write a YAML configuration file.

    Parameters
    ----------
    path:
        File path where the YAML configuration will be written.
    config:
        Configuration dictionary to serialise to YAML.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as file:
        yaml.safe_dump(config, file, sort_keys=False)

    console.print(
        Panel.fit(
            f"Config written to [bold]{path}[/bold]",
            title="Config",
        )
    )


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments.

    Returns
    -------
    argparse.Namespace
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description=(
            "Initialise example data and config for the Station QC toolkit.\n\n"
            "Creates:\n"
            "  - examples/stations.csv      (synthetic station network)\n"
            "  - examples/observations.csv  (synthetic hourly temperatures)\n"
            "  - examples/config.yaml       (QC configuration template)\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )

    parser.add_argument(
        "--examples-dir",
        type=str,
        default="examples",
        help="Directory to write examples into (default: examples).",
    )
    parser.add_argument(
        "--stations",
        type=int,
        default=25,
        help="Number of stations to generate (default: 25).",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=48,
        help="Number of hourly samples per station (default: 48).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for reproducible sample data (default: 42).",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing example files if they exist.",
    )

    return parser.parse_args()


def main() -> None:
    """Entry point for the example initialisation script.

    This function orchestrates argument parsing, data generation, and writing of
    the configuration file. It also prints a summary of next steps for running
    the QC CLI.
    """
    args = parse_args()

    examples_dir = Path(args.examples_dir)
    stations_path = examples_dir / "stations.csv"
    observations_path = examples_dir / "observations.csv"
    config_path = examples_dir / "config.yaml"

    console.print(
        Panel.fit(
            f"Initialising examples in [bold]{examples_dir}[/bold]",
            title="Station QC examples",
        )
    )

    if not args.overwrite:
        for candidate in (stations_path, observations_path, config_path):
            if candidate.exists():
                console.print(
                    f"[red]Error:[/red] {candidate} already exists. "
                    "Use --overwrite to replace it."
                )
                return

    console.print(
        f"Generating sample network: [bold]{stations_path}[/bold]\n"
        f"  stations={args.stations}, hours={args.hours}, seed={args.seed}"
    )
    stations = generate_stations(stations_path, n_stations=args.stations, seed=args.seed)
    generate_observations(
        path=observations_path,
        stations=stations,
        n_hours=args.hours,
        seed=args.seed,
    )

    console.print(f"\nWriting config: [bold]{config_path}[/bold]")

    config = dict(DEFAULT_CONFIG)
    data_cfg = dict(config["data"])
    data_cfg["stations_csv"] = str(stations_path)
    data_cfg["observations_csv"] = str(observations_path)
    config["data"] = data_cfg

    write_config(config_path, config)

    next_steps = (
        "\nYou can now run your QC tool with, for example:\n\n"
        f"  station-qc -c {config_path}\n\n"
        "or:\n\n"
        f"  python -m stnqc.cli -c {config_path}\n"
    )

    console.print(
        Panel.fit(
            next_steps,
            title="Next steps",
        )
    )


if __name__ == "__main__":
    main()
