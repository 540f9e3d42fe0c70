"""
Plotting helpers for the Station QC toolkit.

This module provides functions for generating quick-look charts of one
station's time series with QC flags overlaid, and saving them to disk.
"""

from __future__ import annotations

import os

import matplotlib.pyplot as plt
from matplotlib.axes import Axes
from matplotlib.figure import Figure
from pandas import DataFrame

from stnqc.flags import FLAG_LABELS, Flag
from stnqc.io import ensure_dir

FLAG_MARKERS = {
    Flag.INCONCLUSIVE: ("o", "tab:gray"),
    Flag.WARN: ("^", "tab:orange"),
    Flag.FAIL: ("x", "tab:red"),
}


def plot_station_with_flags(
    df: DataFrame,
    station_id: str,
    out_dir: str,
    network_name: str,
    flag_column: str = "qc_flag",
) -> str:
    """
    Plot one station's series with QC flags overlaid and save it as a PNG file.

    The function plots the ``value`` column of the rows belonging to
    ``station_id`` over time, marks every non-passing flag with its own
    marker, and writes a PNG file into the given output directory. The path
    to the saved chart is returned.

    Parameters
    ----------
    df
        Long-format QC result frame with ``station_id``, ``time``, ``value``
        and the flag column.
    station_id
        Station whose series is drawn.
    out_dir
        Directory in which the chart PNG file should be written.
    network_name
        Human-readable name of the station network used in the chart title.
    flag_column
        Name of the column containing flag codes.

    Returns
    -------
    str
        The filesystem path of the saved PNG chart.
    """
    # Ensure the output directory exists.
    ensure_dir(os.path.join(out_dir, "dummy.txt"))

    station_df = df[df["station_id"] == station_id].set_index("time").sort_index()

    fig: Figure
    ax: Axes
    fig, ax = plt.subplots(figsize=(10, 4)) # pyright: ignore[reportUnknownMemberType]

    station_df["value"].plot(ax=ax, label=station_id)  # type: ignore[reportUnknownMemberType]

    for flag, (marker, colour) in FLAG_MARKERS.items():
        flagged = station_df[station_df[flag_column] == int(flag)]
        if flagged.empty:
            continue
        ax.scatter(  # type: ignore[reportUnknownMemberType]
            flagged.index,
            flagged["value"],
            marker=marker,
            color=colour,
            label=FLAG_LABELS[flag],
        )

    ax.set_title(  # type: ignore[reportUnknownMemberType]
        f"{network_name} - station {station_id} with QC flags"
    )
    ax.set_xlabel("Time")  # type: ignore[reportUnknownMemberType]
    ax.set_ylabel("value")  # type: ignore[reportUnknownMemberType]
    ax.legend()  # type: ignore[reportUnknownMemberType]
    fig.tight_layout()  # type: ignore[reportUnknownMemberType]

    out_path = os.path.join(out_dir, f"{station_id}_qc.png")
    fig.savefig(out_path, dpi=150)  # type: ignore[reportUnknownMemberType]
    plt.close(fig)

    return out_path
