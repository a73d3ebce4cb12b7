"""Tests for densiflux.analysis.discretizer."""

import numpy as np
import pytest

from densiflux.analysis.discretizer import DegenerateFeatureError, discretize
from densiflux.analysis.results_schema import COL_COUNT, COL_EXPOSURE, COL_GROUP, COL_MIDPOINT


class TestGrid:
    @pytest.mark.parametrize("n_bins", [1, 7, 40])
    def test_edge_and_midpoint_counts(self, same_distribution, groups_50x2, n_bins):
        grid = discretize(same_distribution, groups_50x2, n_bins)

        assert len(grid.edges) == n_bins + 1
        assert len(grid.edges) == len(grid.midpoints) + 1
        assert np.all(np.diff(grid.edges) > 0)

    def test_edges_span_min_max(self, shifted, groups_50x2):
        grid = discretize(shifted, groups_50x2, 40)

        assert grid.edges[0] == shifted.min()
        assert grid.edges[-1] == shifted.max()
        assert grid.width == pytest.approx((shifted.max() - shifted.min()) / 40)
        np.testing.assert_allclose(grid.midpoints, grid.edges[:-1] + grid.width / 2)

    def test_counts_do_not_exceed_group_sizes(self, shifted, groups_50x2):
        grid = discretize(shifted, groups_50x2, 40)

        assert grid.levels == ("A", "B")
        assert np.all(grid.totals <= grid.group_sizes)
        np.testing.assert_array_equal(grid.group_sizes, [50, 50])


class TestBoundaryPolicy:
    def test_values_on_edges_are_dropped(self):
        values = np.arange(11.0)
        grid = discretize(values, ["A"] * 11, 10)

        assert grid.counts.sum() == 0

    def test_interior_values_are_counted(self):
        values = np.array([0.0, 0.5, 1.5, 10.0])
        grid = discretize(values, ["A", "A", "B", "B"], 10)

        np.testing.assert_array_equal(grid.counts[0], [1] + [0] * 9)
        np.testing.assert_array_equal(grid.counts[1], [0, 1] + [0] * 8)
        # global min and max sit on the outer edges
        np.testing.assert_array_equal(grid.totals, [1, 1])


class TestDegenerate:
    def test_single_distinct_value_fails(self):
        with pytest.raises(DegenerateFeatureError):
            discretize(np.full(20, 3.0), ["A"] * 10 + ["B"] * 10, 40)

    def test_all_missing_fails(self):
        with pytest.raises(DegenerateFeatureError):
            discretize(np.full(4, np.nan), ["A", "A", "B", "B"], 5)

    def test_non_positive_bins_fail(self):
        with pytest.raises(DegenerateFeatureError):
            discretize([1.0, 2.0], ["A", "B"], 0)

    def test_missing_values_are_ignored(self):
        values = np.array([1.0, np.nan, 1.2, 1.8, 2.0, np.nan])
        grid = discretize(values, ["A", "A", "A", "B", "B", "B"], 4)

        np.testing.assert_array_equal(grid.group_sizes, [2, 2])
        assert grid.edges[0] == 1.0 and grid.edges[-1] == 2.0


class TestLongTable:
    def test_uniform_exposure(self, shifted, groups_50x2):
        grid = discretize(shifted, groups_50x2, 40)
        table = grid.to_long()

        assert list(table.columns) == [COL_GROUP, COL_MIDPOINT, COL_COUNT, COL_EXPOSURE]
        assert len(table) == 80
        for g, level in enumerate(grid.levels):
            sub = table[table[COL_GROUP] == level]
            assert sub[COL_COUNT].sum() == grid.totals[g]
            np.testing.assert_allclose(sub[COL_EXPOSURE], grid.totals[g] * grid.width)

    def test_empty_group_is_left_out(self):
        # group B only has the global max, which sits on the last edge
        values = np.array([0.0, 0.3, 0.6, 1.0])
        grid = discretize(values, ["A", "A", "A", "B"], 5)
        table = grid.to_long()

        assert set(table[COL_GROUP]) == {"A"}

    def test_unknown_carrier(self, shifted, groups_50x2):
        grid = discretize(shifted, groups_50x2, 10)
        with pytest.raises(ValueError):
            grid.to_long(carrier="empirical")
