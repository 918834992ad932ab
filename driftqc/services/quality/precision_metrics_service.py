"""
Precision metrics for metabolomics features.

Computes, per feature, the technical CV (QC injections), the biological CV
(study samples) and the intraclass correlation (share of variance that is
biological). Works on raw or corrected study matrices alike; nothing is cached
between calls.
"""

import warnings
from typing import Any, Dict, Tuple

import anndata
import numpy as np
import pandas as pd

from driftqc.config.constants import METRIC_COLUMNS
from driftqc.core.analysis_ir import AnalysisStep
from driftqc.core.exceptions import (
    DriftQCError,
    InsufficientDataError,
    StudyMatrixError,
)
from driftqc.core.study_matrix import (
    get_dense_matrix,
    qc_mask,
    sample_mask,
    validate_study_matrix,
)
from driftqc.utils.logger import get_logger
from driftqc.utils.statistics import coefficient_of_variation, variance_ratio

logger = get_logger(__name__)


class PrecisionMetricsError(DriftQCError):
    """Unexpected failure while computing precision metrics."""

    pass


class PrecisionMetricsService:
    """
    Stateless calculator of per-feature precision metrics.

    The metric table has one row per feature and the columns Mean, StdDev,
    BiologicalCV, TechnicalCV and ICC. Undefined values (zero means, zero
    total variance, too few observations) are NaN.
    """

    def __init__(self):
        """Initialize the precision metrics service (stateless)."""
        logger.debug("Initializing stateless PrecisionMetricsService")

    def _create_ir_compute_metrics(self) -> AnalysisStep:
        """Create IR for metric computation."""
        return AnalysisStep(
            operation="driftqc.quality.compute_metrics",
            tool_name="compute_metrics",
            description="Compute technical CV, biological CV and ICC per feature",
            library="numpy",
            code_template="""# Feature precision metrics
from driftqc.services.quality.precision_metrics_service import PrecisionMetricsService

service = PrecisionMetricsService()
metrics, stats, _ = service.compute_metrics(adata)
print(f"Median technical CV: {stats['median_technical_cv']:.1f}%")""",
            imports=[
                "from driftqc.services.quality.precision_metrics_service import PrecisionMetricsService"
            ],
            parameters={},
            parameter_schema={},
            input_entities=["adata"],
            output_entities=["metrics"],
        )

    def compute_metrics(
        self, adata: anndata.AnnData
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Compute precision metrics for every feature.

        Args:
            adata: Study matrix, raw or corrected

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
                metric table indexed by feature, summary stats, and IR

        Raises:
            InsufficientDataError: If the matrix has no Sample or no QC rows
            PrecisionMetricsError: On any unexpected failure
        """
        try:
            logger.info("Computing feature precision metrics")
            validate_study_matrix(adata)

            X = get_dense_matrix(adata)
            is_qc = qc_mask(adata)
            is_sample = sample_mask(adata)

            if not is_sample.any():
                raise InsufficientDataError(
                    "Precision metrics need at least one Sample row; none found"
                )
            if not is_qc.any():
                raise InsufficientDataError(
                    "Precision metrics need at least one QC row; none found"
                )

            X_sample = X[is_sample]
            X_qc = X[is_qc]

            with warnings.catch_warnings():
                warnings.simplefilter("ignore", category=RuntimeWarning)
                mean_all = np.nanmean(X, axis=0)
                std_all = np.nanstd(X, axis=0, ddof=1)
                var_sample = np.nanvar(X_sample, axis=0, ddof=1)
                var_qc = np.nanvar(X_qc, axis=0, ddof=1)

            metrics = pd.DataFrame(
                {
                    "Mean": mean_all,
                    "StdDev": std_all,
                    "BiologicalCV": coefficient_of_variation(X_sample),
                    "TechnicalCV": coefficient_of_variation(X_qc),
                    "ICC": variance_ratio(var_sample, var_qc),
                },
                index=pd.Index(adata.var_names, name="feature"),
            )[METRIC_COLUMNS]

            tech_cv = metrics["TechnicalCV"].to_numpy()
            valid_cv = tech_cv[~np.isnan(tech_cv)]
            icc = metrics["ICC"].to_numpy()
            valid_icc = icc[~np.isnan(icc)]

            stats: Dict[str, Any] = {
                "n_features": int(adata.n_vars),
                "n_sample_rows": int(is_sample.sum()),
                "n_qc_rows": int(is_qc.sum()),
                "median_technical_cv": (
                    float(np.median(valid_cv)) if len(valid_cv) > 0 else float("nan")
                ),
                "median_biological_cv": float(metrics["BiologicalCV"].median()),
                "median_icc": (
                    float(np.median(valid_icc)) if len(valid_icc) > 0 else float("nan")
                ),
                "n_undefined_technical_cv": int(np.isnan(tech_cv).sum()),
                "n_undefined_icc": int(np.isnan(icc).sum()),
                "analysis_type": "feature_precision_metrics",
            }

            if stats["n_undefined_technical_cv"] or stats["n_undefined_icc"]:
                logger.warning(
                    f"Undefined metrics: {stats['n_undefined_technical_cv']} technical CV, "
                    f"{stats['n_undefined_icc']} ICC value(s)"
                )
            logger.info(
                f"Precision metrics complete: {stats['n_features']} features, "
                f"median technical CV={stats['median_technical_cv']:.1f}%"
            )

            return metrics, stats, self._create_ir_compute_metrics()

        except (InsufficientDataError, StudyMatrixError):
            raise
        except Exception as e:
            logger.exception(f"Error computing precision metrics: {e}")
            raise PrecisionMetricsError(f"Precision metrics failed: {str(e)}") from e
