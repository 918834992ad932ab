"""Tests for nearest-QC lookup."""

import numpy as np
import pytest

from driftqc.core.exceptions import InsufficientQCError
from driftqc.services.quality.neighbor_index import (
    NeighborIndex,
    nearest_qc,
    nearest_qc_run_orders,
)


class TestNearestQC:
    """Ranking by run-order distance with tie-breaking."""

    def test_single_nearest(self):
        assert nearest_qc_run_orders([1, 5, 9], 6, 1).tolist() == [5]

    def test_ties_prefer_smaller_run_order(self):
        # 2 and 6 are both 2 away from 4
        assert nearest_qc_run_orders([2, 6, 10], 4, 1).tolist() == [2]
        assert nearest_qc_run_orders([6, 2, 10], 4, 2).tolist() == [2, 6]

    def test_returns_positions_into_input(self):
        positions = nearest_qc([10, 2, 6], 5, 2)
        assert positions.tolist() == [2, 1]

    def test_target_outside_range(self):
        assert nearest_qc_run_orders([3, 7, 11, 15], 40, 2).tolist() == [15, 11]
        assert nearest_qc_run_orders([3, 7, 11, 15], 0, 3).tolist() == [3, 7, 11]

    def test_all_neighbours(self):
        result = nearest_qc_run_orders([1, 4, 7], 5, 3)
        assert sorted(result.tolist()) == [1, 4, 7]

    def test_too_many_requested_raises(self):
        with pytest.raises(InsufficientQCError) as excinfo:
            nearest_qc([1, 4, 7], 5, 4, batch="B1")
        assert excinfo.value.batch == "B1"
        assert excinfo.value.required == 4
        assert excinfo.value.available == 3


class TestSelfInclusion:
    """A QC target may count itself as a neighbour unless disabled."""

    def test_qc_includes_itself_by_default(self):
        result = nearest_qc_run_orders([2, 6, 10], 6, 2, target_is_qc=True)
        assert result.tolist() == [6, 2]

    def test_qc_excludes_itself_when_disabled(self):
        result = nearest_qc_run_orders(
            [2, 6, 10], 6, 2, include_self=False, target_is_qc=True
        )
        assert result.tolist() == [2, 10]

    def test_exclusion_only_applies_to_qc_targets(self):
        result = nearest_qc_run_orders(
            [2, 6, 10], 6, 1, include_self=False, target_is_qc=False
        )
        assert result.tolist() == [6]

    def test_exclusion_reduces_available_neighbours(self):
        index = NeighborIndex([2, 6, 10], batch="B2", include_self=False)
        with pytest.raises(InsufficientQCError, match="excluding the QC sample itself"):
            index.query(6, 3, target_is_qc=True)

    def test_index_reusable_across_queries(self):
        index = NeighborIndex(np.array([1, 4, 7, 10]), batch="B1")
        assert index.n_qc == 4
        first = index.query(2, 2)
        second = index.query(9, 2)
        assert first.tolist() == [0, 1]
        assert second.tolist() == [3, 2]
