"""Tests for the flag ordering and combination rules."""

import itertools

import pandas as pd
import pytest

from stnqc.flags import Flag, combine, combine_flags, flag_from_thresholds


class TestFlagOrdering:
    """Severity order is fixed: Pass < Inconclusive < Warn < Fail."""

    def test_total_order(self):
        assert Flag.PASS < Flag.INCONCLUSIVE < Flag.WARN < Flag.FAIL
        assert sorted([Flag.FAIL, Flag.PASS, Flag.WARN, Flag.INCONCLUSIVE]) == [
            Flag.PASS,
            Flag.INCONCLUSIVE,
            Flag.WARN,
            Flag.FAIL,
        ]

    def test_labels(self):
        assert Flag.INCONCLUSIVE.label == "Inconclusive"


class TestCombine:
    """Tests for combine()."""

    def test_most_severe_wins(self):
        assert combine([Flag.PASS, Flag.WARN, Flag.INCONCLUSIVE]) == Flag.WARN

    def test_empty_is_pass(self):
        assert combine([]) == Flag.PASS

    def test_order_does_not_matter(self):
        flags = [Flag.INCONCLUSIVE, Flag.FAIL, Flag.PASS, Flag.WARN]
        results = {combine(p) for p in itertools.permutations(flags)}
        assert results == {Flag.FAIL}

    def test_associative(self):
        a, b, c = Flag.WARN, Flag.INCONCLUSIVE, Flag.PASS
        assert combine([combine([a, b]), c]) == combine([a, combine([b, c])])


class TestFlagFromThresholds:
    """The fail threshold must be reachable and both bounds are inclusive."""

    @pytest.mark.parametrize(
        "statistic, expected",
        [
            (0.0, Flag.PASS),
            (2.99, Flag.PASS),
            (3.0, Flag.WARN),
            (4.99, Flag.WARN),
            (5.0, Flag.FAIL),
            (7.0, Flag.FAIL),
        ],
    )
    def test_boundaries(self, statistic, expected):
        assert flag_from_thresholds(statistic, warn=3.0, fail=5.0) == expected


class TestCombineFlags:
    """Tests for element-wise combination of flag columns."""

    def test_row_wise_max(self):
        a = pd.Series([0, 2, 1], dtype="int64")
        b = pd.Series([1, 0, 3], dtype="int64")
        combined = combine_flags(a, b)
        assert combined.tolist() == [1, 2, 3]
        assert combined.name == "qc_flag"

    def test_missing_entries_are_ignored(self):
        a = pd.Series(pd.array([None, 2, None], dtype="Int64"))
        b = pd.Series(pd.array([1, None, None], dtype="Int64"))
        assert combine_flags(a, b).tolist() == [1, 2, 0]

    def test_index_mismatch(self):
        a = pd.Series([0, 1], index=[0, 1])
        b = pd.Series([0, 1], index=[1, 2])
        with pytest.raises(ValueError):
            combine_flags(a, b)

    def test_no_series(self):
        with pytest.raises(ValueError):
            combine_flags()
