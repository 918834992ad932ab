"""
Tests for PrecisionMetricsService.

Hand-computed metric values on a small study table, plus invariance and
undefined-value handling.
"""

import numpy as np
import pandas as pd
import pytest

from driftqc.core.analysis_ir import AnalysisStep
from driftqc.core.exceptions import InsufficientDataError
from driftqc.core.study_matrix import build_study_matrix
from driftqc.services.quality.precision_metrics_service import (
    PrecisionMetricsError,
    PrecisionMetricsService,
)


@pytest.fixture
def service():
    return PrecisionMetricsService()


@pytest.fixture
def small_matrix():
    """3 QC + 3 Sample rows; f1 well behaved, f2 zero QC mean, f3 constant."""
    table = pd.DataFrame(
        {
            "id": ["Q1", "S1", "Q2", "S2", "Q3", "S3"],
            "class": ["QC", "Sample", "QC", "Sample", "QC", "Sample"],
            "batch": ["B1"] * 6,
            "run_order": [1, 2, 3, 4, 5, 6],
            "f1": [9.0, 20.0, 10.0, 40.0, 11.0, 60.0],
            "f2": [-1.0, 5.0, 0.0, 5.0, 1.0, 5.0],
            "f3": [7.0] * 6,
        }
    )
    return build_study_matrix(table)


class TestComputeMetrics:
    def test_returns_3_tuple(self, service, small_matrix):
        metrics, stats, ir = service.compute_metrics(small_matrix)
        assert isinstance(metrics, pd.DataFrame)
        assert isinstance(stats, dict)
        assert isinstance(ir, AnalysisStep)
        assert ir.operation == "driftqc.quality.compute_metrics"
        assert list(metrics.columns) == [
            "Mean", "StdDev", "BiologicalCV", "TechnicalCV", "ICC"
        ]
        assert list(metrics.index) == ["f1", "f2", "f3"]
        assert metrics.index.name == "feature"

    def test_hand_computed_values(self, service, small_matrix):
        metrics, _, _ = service.compute_metrics(small_matrix)
        f1 = metrics.loc["f1"]
        values = np.array([9.0, 20.0, 10.0, 40.0, 11.0, 60.0])
        assert f1["Mean"] == pytest.approx(25.0)
        assert f1["StdDev"] == pytest.approx(np.std(values, ddof=1))
        assert f1["TechnicalCV"] == pytest.approx(10.0)
        assert f1["BiologicalCV"] == pytest.approx(50.0)
        assert f1["ICC"] == pytest.approx(400.0 / 401.0)

    def test_zero_qc_mean_gives_undefined_technical_cv(self, service, small_matrix):
        metrics, stats, _ = service.compute_metrics(small_matrix)
        assert np.isnan(metrics.loc["f2", "TechnicalCV"])
        assert metrics.loc["f2", "BiologicalCV"] == pytest.approx(0.0)
        assert metrics.loc["f2", "ICC"] == pytest.approx(0.0)
        assert stats["n_undefined_technical_cv"] == 1

    def test_zero_total_variance_gives_undefined_icc(self, service, small_matrix):
        metrics, stats, _ = service.compute_metrics(small_matrix)
        assert np.isnan(metrics.loc["f3", "ICC"])
        assert metrics.loc["f3", "TechnicalCV"] == pytest.approx(0.0)
        assert stats["n_undefined_icc"] == 1

    def test_icc_in_unit_interval(self, service, study_matrix):
        metrics, _, _ = service.compute_metrics(study_matrix)
        icc = metrics["ICC"].dropna()
        assert ((icc >= 0) & (icc <= 1)).all()

    def test_row_order_invariance(self, service, study_matrix):
        shuffled = study_matrix[np.random.default_rng(3).permutation(study_matrix.n_obs)]
        a, _, _ = service.compute_metrics(study_matrix)
        b, _, _ = service.compute_metrics(shuffled.copy())
        pd.testing.assert_frame_equal(a, b, check_exact=False, rtol=1e-12)

    def test_missing_values_ignored(self, service, small_matrix):
        adata = small_matrix.copy()
        adata.X[0, 0] = np.nan  # Q1, f1
        metrics, _, _ = service.compute_metrics(adata)
        assert metrics.loc["f1", "TechnicalCV"] == pytest.approx(
            np.std([10.0, 11.0], ddof=1) / 10.5 * 100
        )

    def test_stats(self, service, small_matrix):
        _, stats, _ = service.compute_metrics(small_matrix)
        assert stats["n_features"] == 3
        assert stats["n_sample_rows"] == 3
        assert stats["n_qc_rows"] == 3
        assert stats["analysis_type"] == "feature_precision_metrics"

    def test_no_sample_rows(self, service, small_matrix):
        qc_only = small_matrix[small_matrix.obs["class"] == "QC"].copy()
        with pytest.raises(InsufficientDataError, match="Sample"):
            service.compute_metrics(qc_only)

    def test_no_qc_rows(self, service, small_matrix):
        samples_only = small_matrix[small_matrix.obs["class"] == "Sample"].copy()
        with pytest.raises(InsufficientDataError, match="QC"):
            service.compute_metrics(samples_only)

    def test_unexpected_failure_wrapped(self, service, small_matrix, mocker):
        mocker.patch(
            "driftqc.services.quality.precision_metrics_service.coefficient_of_variation",
            side_effect=RuntimeError("boom"),
        )
        with pytest.raises(PrecisionMetricsError, match="boom"):
            service.compute_metrics(small_matrix)
