"""Tests for study matrix construction and validation."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from driftqc.core.exceptions import InsufficientQCError, StudyMatrixError
from driftqc.core.study_matrix import (
    batch_partitions,
    build_study_matrix,
    from_anndata,
    qc_mask,
    require_min_qc,
    sample_mask,
    validate_study_matrix,
)


@pytest.fixture
def raw_table():
    return pd.DataFrame(
        {
            "SampleID": ["q1", "s1", "q2", "s2"],
            "Class": ["qc", " Sample", "QC", "sample"],
            "Batch": [1, 1, 2, 2],
            "Order": [1.0, 2.0, 1.0, 2.0],
            "m/z 101.1": [1.0, "n/a", 3.0, 4.0],
            "m/z 202.2": [5.0, 6.0, 7.0, 8.0],
        }
    )


class TestBuildStudyMatrix:
    def test_columns_read_by_position(self, raw_table):
        adata = build_study_matrix(raw_table)
        assert adata.shape == (4, 2)
        assert list(adata.obs_names) == ["q1", "s1", "q2", "s2"]
        assert list(adata.var_names) == ["m/z 101.1", "m/z 202.2"]
        assert list(adata.obs.columns[:3]) == ["class", "batch", "run_order"]

    def test_metadata_normalized(self, raw_table):
        adata = build_study_matrix(raw_table)
        assert adata.obs["class"].tolist() == ["QC", "Sample", "QC", "Sample"]
        assert adata.obs["batch"].tolist() == ["1", "1", "2", "2"]
        assert adata.obs["run_order"].dtype == np.int64

    def test_non_numeric_values_become_nan(self, raw_table):
        adata = build_study_matrix(raw_table)
        assert np.isnan(adata.X[1, 0])
        assert adata.X.dtype == np.float64

    def test_no_feature_columns(self, raw_table):
        with pytest.raises(StudyMatrixError, match="metadata columns"):
            build_study_matrix(raw_table.iloc[:, :4])

    def test_unknown_class(self, raw_table):
        raw_table.loc[1, "Class"] = "Blank"
        with pytest.raises(StudyMatrixError, match="Blank"):
            build_study_matrix(raw_table)

    def test_fractional_run_order(self, raw_table):
        raw_table.loc[0, "Order"] = 1.5
        with pytest.raises(StudyMatrixError, match="integers"):
            build_study_matrix(raw_table)

    def test_missing_run_order(self, raw_table):
        raw_table["Order"] = raw_table["Order"].astype(object)
        raw_table.loc[2, "Order"] = "late"
        with pytest.raises(StudyMatrixError, match="q2"):
            build_study_matrix(raw_table)

    def test_duplicate_sample_id(self, raw_table):
        raw_table.loc[3, "SampleID"] = "q1"
        with pytest.raises(StudyMatrixError, match="Duplicate sample"):
            build_study_matrix(raw_table)

    def test_repeated_run_order_within_batch(self, raw_table):
        raw_table.loc[1, "Order"] = 1.0
        with pytest.raises(StudyMatrixError, match="repeated within batch '1'"):
            build_study_matrix(raw_table)

    def test_same_run_order_in_different_batches_allowed(self, raw_table):
        adata = build_study_matrix(raw_table)
        validate_study_matrix(adata)


class TestFromAnnData:
    def test_custom_obs_keys(self):
        adata = ad.AnnData(
            X=np.ones((2, 3)),
            obs=pd.DataFrame(
                {"kind": ["QC", "Sample"], "plate": ["P1", "P1"], "inj": [1, 2]},
                index=["a", "b"],
            ),
        )
        study = from_anndata(adata, class_key="kind", batch_key="plate", run_order_key="inj")
        assert study.obs["class"].tolist() == ["QC", "Sample"]
        assert study.obs["batch"].tolist() == ["P1", "P1"]
        assert "class" not in adata.obs.columns

    def test_missing_key(self):
        adata = ad.AnnData(X=np.ones((1, 1)), obs=pd.DataFrame({"kind": ["QC"]}, index=["a"]))
        with pytest.raises(StudyMatrixError, match="not found"):
            from_anndata(adata, class_key="kind")


class TestHelpers:
    def test_masks(self, study_matrix):
        is_qc = qc_mask(study_matrix)
        is_sample = sample_mask(study_matrix)
        assert is_qc.sum() == 12
        assert is_sample.sum() == 20
        assert not np.any(is_qc & is_sample)

    def test_batch_partitions_in_order_of_appearance(self, raw_table):
        raw_table = raw_table.iloc[[2, 0, 3, 1]].reset_index(drop=True)
        adata = build_study_matrix(raw_table)
        partitions = batch_partitions(adata)
        assert [batch for batch, _ in partitions] == ["2", "1"]
        assert partitions[0][1].tolist() == [0, 2]
        assert partitions[1][1].tolist() == [1, 3]

    def test_require_min_qc(self, study_matrix):
        require_min_qc(study_matrix, 6)
        with pytest.raises(InsufficientQCError) as excinfo:
            require_min_qc(study_matrix, 7, detail="test")
        assert excinfo.value.batch == "B1"
        assert "at least 7 required (test)" in str(excinfo.value)
