"""
Public interface for the Station QC toolkit package.

This package provides utilities for running quality control on
observations from networks of fixed stations, checking every
observation against its own recent history and against its
geographic neighbours, including:

* Memoizing caches for neighbour lookups (``SpatialCache``) and
  time windows (``SeriesCache``) shared by all QC rules of a run.
* Implementations of QC rules (range, dip, step, spike, spike MAD,
  flatline, special values, iterative buddy check, spatial consistency
  test).
* The ordered ``Flag`` model and its combination rule.
* Dataclasses for configuration and a batch runner used by the CLI.

Most users will interact with the command-line entry point
``station-qc``. The symbols re-exported here are intended for
programmatic use in tests, notebooks, or downstream tooling.
"""

from __future__ import annotations

from importlib import metadata
from typing import List

from stnqc.config import QCConfig, RulesConfig, load_config
from stnqc.errors import (
    InternalInconsistency,
    InvalidInput,
    StationQCError,
    UnknownStation,
)
from stnqc.flags import Flag, TestResult, combine
from stnqc.models import Observation, Station
from stnqc.pipeline import QCRunResult, run_qc
from stnqc.series_cache import SeriesCache, SeriesWindow, WindowSpec
from stnqc.spatial_cache import (
    Neighbor,
    NeighborQuerySpec,
    NeighborResult,
    SpatialCache,
)
from stnqc import rules

# Try to obtain the installed package version, falling back for dev checkouts.
try:
    __version__: str = metadata.version("station-qc-toolkit")
except metadata.PackageNotFoundError:  # pragma: no cover - dev fallback
    __version__ = "0.0.0+dev"

__all__: List[str] = [
    "__version__",
    # Data model
    "Station",
    "Observation",
    # Flags
    "Flag",
    "TestResult",
    "combine",
    # Caches
    "SpatialCache",
    "NeighborQuerySpec",
    "Neighbor",
    "NeighborResult",
    "SeriesCache",
    "WindowSpec",
    "SeriesWindow",
    # Errors
    "StationQCError",
    "InvalidInput",
    "UnknownStation",
    "InternalInconsistency",
    # Config and runner
    "QCConfig",
    "RulesConfig",
    "load_config",
    "QCRunResult",
    "run_qc",
    # QC rules module
    "rules",
]
