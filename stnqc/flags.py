"""
Flag model for the Station QC toolkit.

Every QC test reports one :class:`Flag` per observation. Flags are
totally ordered by severity::

    PASS < INCONCLUSIVE < WARN < FAIL

and several flags for the same observation are merged by taking the most
severe one (:func:`combine`). Because ``max`` is associative and
commutative, the order in which tests run never changes the final flag.

:func:`combine_flags` applies the same rule element-wise to pandas
objects holding integer flag codes.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import pandas as pd
from pandas import Series


class Flag(enum.IntEnum):
    """Severity of a QC outcome; larger values are more severe."""

    PASS = 0
    INCONCLUSIVE = 1
    WARN = 2
    FAIL = 3

    @property
    def label(self) -> str:
        return FLAG_LABELS[self]


FLAG_LABELS: Dict[Flag, str] = {
    Flag.PASS: "Pass",
    Flag.INCONCLUSIVE: "Inconclusive",
    Flag.WARN: "Warn",
    Flag.FAIL: "Fail",
}


@dataclass(frozen=True)
class TestResult:
    """Outcome of one QC test applied to one observation."""

    __test__ = False  # not a pytest test class

    station_id: str
    time: pd.Timestamp
    test: str
    flag: Flag
    score: Optional[float] = None


def combine(flags: Iterable[Flag]) -> Flag:
    """
    Return the most severe flag in ``flags``.

    ``PASS`` is the identity element, so combining an empty collection
    yields ``PASS``.
    """
    return max(flags, default=Flag.PASS)


def flag_from_thresholds(statistic: float, warn: float, fail: float) -> Flag:
    """
    Map a non-negative statistic onto a flag using two ascending thresholds.

    The ``fail`` threshold is tested first so that it stays reachable;
    both comparisons are inclusive.
    """
    if statistic >= fail:
        return Flag.FAIL
    if statistic >= warn:
        return Flag.WARN
    return Flag.PASS


def combine_flags(*flag_series: Series) -> Series:
    """
    Combine multiple flag series by taking the maximum flag per sample.

    All input Series are expected to have the same index; if a mismatch
    is detected, a ``ValueError`` is raised.

    Parameters
    ----------
    *flag_series
        One or more integer flag Series to combine.

    Returns
    -------
    pandas.Series
        Integer Series of combined flags aligned to the common index.

    Raises
    ------
    ValueError
        If no flag Series are provided, or if indices do not match.
    """
    if not flag_series:
        raise ValueError("No flag series provided")

    reference_index = flag_series[0].index
    for idx, fs in enumerate(flag_series[1:], start=1):
        if not fs.index.equals(reference_index): # pyright: ignore[reportUnknownMemberType]
            raise ValueError(
                f"Flag series at position {idx} has a different index "
                "and cannot be safely combined."
            )

    frame = pd.concat(flag_series, axis=1)
    # Missing per-test flags (NaN) must not mask the flags that are present.
    combined = frame.max(axis=1, skipna=True).fillna(int(Flag.PASS)).astype("int64")
    combined.name = "qc_flag"

    return combined
