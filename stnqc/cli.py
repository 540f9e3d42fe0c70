"""
Command-line interface for the Station QC toolkit.

This module provides a Rich-enhanced, argparse-based CLI for running
spatial and temporal quality control over a network of stations. It:

* Loads configuration from a YAML file.
* Reads station metadata and long-format observations using pandas.
* Runs the configured QC rules (range, dip, step, spike, spike MAD,
  flatline, special values, buddy check, SCT) over every observation.
* Writes a flags CSV, a chart image for one station, and a summary report.
* Optionally renders a terminal plot using plotille.

The main entry point is :func:`main`, which is wired to the console
script ``station-qc`` in pyproject.toml.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
from typing import Dict, List, Optional, cast

import pandas as pd
import plotille
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.theme import Theme
from rich_argparse import RichHelpFormatter

from stnqc.config import QCConfig, load_config
from stnqc.errors import StationQCError
from stnqc.flags import FLAG_LABELS, Flag
from stnqc.io import ensure_dir, read_observations, read_stations
from stnqc.models import Station
from stnqc.pipeline import QCRunResult, active_rules, run_qc
from stnqc.plotting import plot_station_with_flags
from stnqc.report import generate_summary

# Console with a simple theme for status messages.
custom_theme = Theme(
    {
        "info": "cyan",
        "success": "green",
        "warning": "yellow",
        "error": "bold red",
        "step": "magenta",
    }
)
console: Console = Console(theme=custom_theme)


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the argument parser for the Station QC CLI.

    Returns
    -------
    argparse.ArgumentParser
        The configured argument parser instance.
    """
    parser = argparse.ArgumentParser(
        prog="station-qc",
        description="Station QC Toolkit – spatial and temporal QC for station networks.",
        formatter_class=RichHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (overrides run.workers in the config).",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bars (for very quiet or non-TTY runs).",
    )
    parser.add_argument(
        "--no-chart-preview",
        action="store_true",
        help="Disable inline terminal chart preview.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug logging from the caches and QC runner.",
    )
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _print_header(config_path: str) -> None:
    """
    Print a Rich panel header with basic run information.

    Parameters
    ----------
    config_path
        The path to the YAML configuration file being used.
    """
    console.print(
        Panel.fit(
            f"Station QC Toolkit\n\nUsing config: [bold]{config_path}[/bold]",
            title="Station QC",
            border_style="step",
        )
    )


def _print_dataset_summary(stations: List[Station], df: pd.DataFrame) -> None:
    """
    Print a short summary of the input network and observations.

    Parameters
    ----------
    stations
        Station metadata records.
    df
        Long-format observations frame.
    """
    table = Table(title="Input dataset", show_lines=True)
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    table.add_row("Stations (metadata)", str(len(stations)))
    table.add_row("Stations (observed)", str(df["station_id"].nunique()))
    table.add_row("Observations", str(len(df)))
    table.add_row("Missing values", str(int(df["value"].isna().sum())))
    if not df.empty:
        table.add_row("Start", str(df["time"].min()))
        table.add_row("End", str(df["time"].max()))

    console.print(table)


def _print_rule_config(cfg: QCConfig) -> None:
    """
    Print which QC rules are enabled and their key parameters.

    Parameters
    ----------
    cfg
        Parsed QC configuration dataclass instance.
    """
    table = Table(title="QC rules", show_lines=True)
    table.add_column("Rule", style="cyan", no_wrap=True)
    table.add_column("Enabled", style="white", no_wrap=True)
    table.add_column("Parameters", style="white")

    rules_cfg = cfg.qc
    rows = [
        ("Range check", rules_cfg.range_check,
         lambda c: f"min={c.min}, max={c.max}, soft=[{c.soft_min}, {c.soft_max}]"),
        ("Special values", rules_cfg.special_values,
         lambda c: f"values={c.values}"),
        ("Dip check", rules_cfg.dip_check,
         lambda c: f"warn={c.warn}, fail={c.fail}, window=-{c.before}/+{c.after}"),
        ("Step check", rules_cfg.step_check,
         lambda c: f"warn={c.warn}, fail={c.fail}, before={c.before}"),
        ("Spike check", rules_cfg.spike_check,
         lambda c: f"warn={c.warn}, fail={c.fail}, window=-{c.before}/+{c.after}"),
        ("Spike MAD", rules_cfg.spike_mad,
         lambda c: f"warn={c.warn}, fail={c.fail}, min_points={c.min_points}"),
        ("Flatline", rules_cfg.flatline_check,
         lambda c: f"warn={c.warn}, fail={c.fail}, tolerance={c.tolerance}"),
        ("Buddy check", rules_cfg.buddy_check,
         lambda c: f"radius={c.radius}, max_count={c.max_count}, "
                   f"min_neighbors={c.min_neighbors}, warn={c.warn}, fail={c.fail}, "
                   f"weighting={c.weighting}, iterations={c.num_iterations}"),
        ("SCT", rules_cfg.sct,
         lambda c: f"radius={c.inner_radius}/{c.outer_radius}, boxes={c.num_min}..{c.num_max}, "
                   f"pos={c.pos}, neg={c.neg}, iterations={c.num_iterations}"),
    ]
    for label, rule_cfg, describe in rows:
        if rule_cfg is None:
            table.add_row(label, "no", "-")
        else:
            table.add_row(label, "yes" if rule_cfg.enabled else "no", describe(rule_cfg))

    console.print(table)


def _preview_chart_terminal(df: pd.DataFrame, station_id: str) -> None:
    """
    Render a coloured line plot of one station's series in the terminal.

    The preview uses plotille to draw a simple ASCII chart with a coloured line
    and applies Rich styling so that axis numbers are bold white.

    Parameters
    ----------
    df
        QC result frame.
    station_id
        Station whose values are previewed.
    """
    view = df[df["station_id"] == station_id].dropna(subset=["value"])
    if view.empty:
        console.print("[warning]No data available for terminal plot.[/warning]")
        return

    max_points: int = 200
    truncated = len(view) > max_points
    if truncated:
        view = view.iloc[:max_points]

    y_vals = view["value"].astype(float).to_list()
    x_vals = list(range(len(y_vals)))

    fig: plotille.Figure = plotille.Figure()
    fig.width = 80
    fig.height = 20
    fig.x_label = "Sample index"
    fig.y_label = station_id
    fig.color_mode = "byte"  # enable 256-color output

    # plotille is untyped, so we ignore the "partially unknown" warning here.
    fig.set_x_limits(  # type: ignore[reportUnknownMemberType]
        min_=0,
        max_=max(len(x_vals) - 1, 1),
    )
    fig.plot(  # type: ignore[reportUnknownMemberType]
        x_vals,
        y_vals,
        label=station_id,
        lc=63,  # bright-ish colour in 256-color space
    )

    plot_str: str = cast(str, fig.show(legend=True))

    console.print(
        Panel.fit(
            "Inline terminal preview (plotille, coloured).\n"
            "For higher quality, open the PNG chart written to disk.",
            title="Chart preview",
            border_style="step",
        )
    )

    text: Text = Text.from_ansi(plot_str)
    plain: str = text.plain

    # Style numeric tokens (axis numbers, tick labels) as bold white.
    for match in re.finditer(r"-?\d+(?:\.\d+)?", plain):
        match_span: re.Match[str] = match
        start, end = match_span.span()
        text.stylize("bold white", start, end)

    console.print(text)

    if truncated:
        console.print(
            "[warning]Preview truncated to first "
            f"{max_points} samples for readability.[/warning]"
        )


def _print_flag_summary(result: QCRunResult) -> None:
    """
    Print a table summarising how many observations received each QC flag.

    Parameters
    ----------
    result
        Result of the QC run.
    """
    df = result.frame
    if df.empty:
        console.print("[warning]No observations to summarise.[/warning]")
        return

    total: int = int(len(df))

    counts: Dict[int, int] = {}
    for key, count_val in df["qc_flag"].value_counts().items():
        counts[cast(int, key)] = int(count_val)

    table = Table(title="QC flag summary", show_lines=True)
    table.add_column("Code", style="cyan", no_wrap=True)
    table.add_column("Label", style="white", no_wrap=True)
    table.add_column("Count", style="white", no_wrap=True)
    table.add_column("Percent", style="white", no_wrap=True)

    for flag in Flag:
        count: int = counts.get(int(flag), 0)
        pct: float = 100.0 * count / total if total else 0.0
        table.add_row(str(int(flag)), FLAG_LABELS[flag], str(count), f"{pct:5.1f}%")

    console.print(table)

    if result.errors:
        console.print(
            f"[warning]{len(result.errors)} rule evaluations raised errors "
            "(see log and summary report).[/warning]"
        )

    flagged: int = counts.get(int(Flag.WARN), 0) + counts.get(int(Flag.FAIL), 0)
    if flagged == 0:
        console.print(
            "[success]No observation was flagged Warn or Fail by the configured "
            "rules.[/success]"
        )
    else:
        console.print(
            f"[warning]{flagged} of {total} observations are flagged Warn or Fail. "
            "Review before using in downstream analysis.[/warning]"
        )


def _chart_station(cfg: QCConfig, df: pd.DataFrame) -> Optional[str]:
    if cfg.output.chart_station:
        return cfg.output.chart_station
    if df.empty:
        return None
    # Default to the station with the most non-passing observations.
    bad = df[df["qc_flag"] >= int(Flag.WARN)]
    source = bad if not bad.empty else df
    return str(source["station_id"].value_counts().index[0])


def main() -> None:
    """
    Run the Station QC command-line interface.

    This function orchestrates:

    * Argument parsing.
    * Configuration loading.
    * Station and observation reading.
    * QC rule evaluation.
    * Flag summarisation.
    * Writing of outputs and optional terminal chart preview.

    It is intended to be used as the entry point for the ``station-qc``
    console script.
    """
    parser = build_parser()
    args = parser.parse_args()
    _configure_logging(args.verbose)

    _print_header(args.config)

    console.print("[info]Loading configuration...[/info]")
    try:
        cfg: QCConfig = load_config(args.config)
    except (KeyError, TypeError, StationQCError) as exc:
        console.print(f"[error]Invalid configuration: {exc}[/error]")
        raise SystemExit(1) from exc

    console.print(
        f"[info]Reading stations from [bold]{cfg.data.stations_csv}[/bold] and "
        f"observations from [bold]{cfg.data.observations_csv}[/bold]...[/info]"
    )
    try:
        stations = read_stations(cfg.data)
        df = read_observations(cfg.data)
    except StationQCError as exc:
        console.print(f"[error]{exc}[/error]")
        raise SystemExit(1) from exc

    _print_dataset_summary(stations, df)
    _print_rule_config(cfg)

    if not active_rules(cfg.qc):
        console.print(
            "[warning]No QC rules are enabled in the config; "
            "all data will be flagged as Pass.[/warning]"
        )

    workers = args.workers if args.workers is not None else cfg.run.workers

    console.print("\n[step]Applying QC rules...[/step]")
    try:
        result = run_qc(
            stations,
            df,
            cfg.qc,
            metric=cfg.run.metric,
            workers=workers,
            progress=not args.no_progress,
        )
    except StationQCError as exc:
        console.print(f"[error]QC run aborted: {exc}[/error]")
        raise SystemExit(1) from exc

    console.print("\n[step]Summarising QC flags...[/step]")
    _print_flag_summary(result)

    console.print("\n[step]Writing outputs to disk...[/step]")
    ensure_dir(cfg.output.flags_csv)
    ensure_dir(os.path.join(cfg.output.charts_dir, "dummy.txt"))
    ensure_dir(cfg.output.report_path)

    result.frame.to_csv(cfg.output.flags_csv, index=False)

    station_id = _chart_station(cfg, result.frame)
    chart_path: Optional[str] = None
    if station_id is not None:
        chart_path = plot_station_with_flags(
            df=result.frame,
            station_id=station_id,
            out_dir=cfg.output.charts_dir,
            network_name=cfg.output.network_name,
        )

    generate_summary(
        result=result,
        out_cfg=cfg.output,
        chart_path=(
            os.path.relpath(chart_path, os.path.dirname(cfg.output.report_path) or ".")
            if chart_path
            else None
        ),
    )

    out_table = Table(title="Outputs", show_lines=True)
    out_table.add_column("Artifact", style="cyan", no_wrap=True)
    out_table.add_column("Path", style="white")

    out_table.add_row("Flags CSV", cfg.output.flags_csv)
    out_table.add_row("Chart (PNG)", chart_path or "-")
    out_table.add_row("Summary report", cfg.output.report_path)

    console.print(out_table)

    if not args.no_chart_preview and station_id is not None:
        _preview_chart_terminal(result.frame, station_id)

    console.print(
        Panel.fit(
            "[success]QC complete.[/success]\n"
            "Use the flag summary and chart to decide whether to clean, "
            "gap-fill, or discard suspect observations before further analysis.",
            title="Done",
            border_style="success",
        )
    )


if __name__ == "__main__":
    main()
