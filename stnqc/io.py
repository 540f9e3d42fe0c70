"""
Input/output helpers for the Station QC toolkit.

This module provides small utility functions for:

* Reading station metadata from CSV into :class:`stnqc.models.Station`
  records.
* Reading long-format observations (station, time, value) from CSV into a
  pandas DataFrame.
* Ensuring that directories for output paths exist on disk.
"""

from __future__ import annotations

import os
from typing import List

import pandas as pd

from stnqc.config import DataConfig
from stnqc.errors import InvalidInput
from stnqc.models import Station


def _require_columns(df: pd.DataFrame, columns: List[str], source: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise InvalidInput(f"Columns {missing} not found in {source}")


def read_stations(cfg: DataConfig) -> List[Station]:
    """
    Read station metadata from the stations CSV.

    Parameters
    ----------
    cfg
        Configuration containing the stations CSV path and column names.

    Returns
    -------
    list of Station
        One record per CSV row, in file order.
    """
    df = pd.read_csv(cfg.stations_csv, dtype={cfg.station_column: str})  # type: ignore[reportGeneralTypeIssues]

    columns = [cfg.station_column, cfg.lat_column, cfg.lon_column]
    if cfg.elevation_column:
        columns.append(cfg.elevation_column)
    _require_columns(df, columns, cfg.stations_csv)

    stations: List[Station] = []
    for record in df.to_dict(orient="records"):
        elevation = None
        if cfg.elevation_column and pd.notna(record[cfg.elevation_column]):
            elevation = float(record[cfg.elevation_column])
        stations.append(
            Station(
                station_id=str(record[cfg.station_column]),
                lat=float(record[cfg.lat_column]),
                lon=float(record[cfg.lon_column]),
                elevation=elevation,
            )
        )
    return stations


def read_observations(cfg: DataConfig) -> pd.DataFrame:
    """
    Read a long-format observations CSV into a pandas DataFrame.

    The time column is parsed to datetimes and the frame is sorted by
    station and time, so each station's rows form an ascending series.
    Duplicate timestamps are kept and rejected later by the series cache.

    Parameters
    ----------
    cfg
        Configuration containing paths and column names for the input CSV.

    Returns
    -------
    pandas.DataFrame
        Columns ``station_id``, ``time`` and ``value`` (renamed from the
        configured column names).
    """
    df = pd.read_csv(cfg.observations_csv, dtype={cfg.station_column: str})  # type: ignore[reportGeneralTypeIssues]
    _require_columns(
        df,
        [cfg.station_column, cfg.time_column, cfg.value_column],
        cfg.observations_csv,
    )

    if cfg.datetime_format:
        df[cfg.time_column] = pd.to_datetime(
            df[cfg.time_column],
            format=cfg.datetime_format,
        )
    else:
        df[cfg.time_column] = pd.to_datetime(df[cfg.time_column])

    df = df.rename(
        columns={
            cfg.station_column: "station_id",
            cfg.time_column: "time",
            cfg.value_column: "value",
        }
    )[["station_id", "time", "value"]]
    df["value"] = pd.to_numeric(df["value"], errors="coerce")

    return df.sort_values(["station_id", "time"], kind="mergesort").reset_index(drop=True)


def ensure_dir(path: str) -> None:
    """
    Ensure that the directory for a given file path exists.

    This function creates the parent directory (and any missing
    intermediate directories) for the provided path, if it does not
    already exist. If the path has no directory component, the
    current working directory is left unchanged.

    Parameters
    ----------
    path
        File path whose parent directory should be ensured.
    """
    dir_name = os.path.dirname(path)
    if not dir_name:
        # Just a filename or current directory; nothing to create.
        return

    os.makedirs(dir_name, exist_ok=True)
