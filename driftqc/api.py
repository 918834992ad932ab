"""
Engine facade: correct, compute_metrics, filter and apply_filter.

Thin functional wrappers over the quality services for callers that want plain
results rather than (result, stats, IR) tuples. Every function is a pure
function of its explicit arguments.

Example:
    >>> from driftqc import api
    >>> result = api.correct(table, "QC-RSC", {"smoothing_parameter": 0})
    >>> metrics = api.compute_metrics(result.matrix)
    >>> decision = api.filter(metrics, technical_cv_max=20.0, icc_min=0.5)
    >>> export = api.apply_filter(result.matrix, decision.removal_set)
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

import anndata
import pandas as pd
from pydantic import BaseModel

from driftqc.config.constants import QC_RSC
from driftqc.config.settings import FilterThresholds
from driftqc.core.study_matrix import build_study_matrix, validate_study_matrix
from driftqc.services.quality.batch_correction_service import (
    BatchCorrectionService,
    CorrectionResult,
)
from driftqc.services.quality.feature_filter_service import (
    FeatureFilterService,
    FilterDecision,
)
from driftqc.services.quality.precision_metrics_service import PrecisionMetricsService

__all__ = [
    "as_study_matrix",
    "correct",
    "compute_metrics",
    "filter_features",
    "filter",
    "apply_filter",
    "correct_and_filter",
    "PipelineResult",
]

MatrixLike = Union[anndata.AnnData, pd.DataFrame]
ParamsLike = Union[None, Dict[str, Any], BaseModel]


def as_study_matrix(matrix: MatrixLike) -> anndata.AnnData:
    """Accept a parsed study table or a study-matrix AnnData."""
    if isinstance(matrix, pd.DataFrame):
        return build_study_matrix(matrix)
    validate_study_matrix(matrix)
    return matrix


def correct(
    matrix: MatrixLike, algorithm: str = QC_RSC, params: ParamsLike = None
) -> CorrectionResult:
    """Correct drift with QC-MN or QC-RSC; the input is never modified."""
    return BatchCorrectionService().correct(as_study_matrix(matrix), algorithm, params)


def compute_metrics(matrix: MatrixLike) -> pd.DataFrame:
    """Metric table (Mean, StdDev, BiologicalCV, TechnicalCV, ICC) per feature."""
    metrics, _, _ = PrecisionMetricsService().compute_metrics(as_study_matrix(matrix))
    return metrics


def filter_features(
    metric_table: pd.DataFrame,
    technical_cv_max: Optional[float] = None,
    icc_min: Optional[float] = None,
    thresholds: Optional[FilterThresholds] = None,
) -> FilterDecision:
    """Features failing the technical CV or ICC threshold."""
    decision, _, _ = FeatureFilterService().filter_features(
        metric_table, technical_cv_max, icc_min, thresholds
    )
    return decision


# Public name of the filter operation; shadows the builtin only inside this module
filter = filter_features


def apply_filter(matrix: MatrixLike, removal_set: Iterable[str]) -> anndata.AnnData:
    """Drop the removed features, keeping every row."""
    filtered, _, _ = FeatureFilterService().apply_filter(
        as_study_matrix(matrix), removal_set
    )
    return filtered


@dataclass
class PipelineResult:
    """All intermediate results of correct -> metrics -> filter -> apply."""

    correction: CorrectionResult
    raw_metrics: pd.DataFrame
    metrics: pd.DataFrame
    decision: FilterDecision
    filtered: anndata.AnnData


def correct_and_filter(
    matrix: MatrixLike,
    algorithm: str = QC_RSC,
    params: ParamsLike = None,
    thresholds: Optional[FilterThresholds] = None,
) -> PipelineResult:
    """
    Run the whole chain on one matrix.

    Metrics of the uncorrected matrix are returned alongside the corrected
    ones so the effect of correction can be compared.
    """
    study = as_study_matrix(matrix)
    correction = correct(study, algorithm, params)
    raw_metrics = compute_metrics(study)
    metrics = compute_metrics(correction.matrix)
    decision = filter_features(metrics, thresholds=thresholds)
    filtered = apply_filter(correction.matrix, decision.removal_set)
    return PipelineResult(
        correction=correction,
        raw_metrics=raw_metrics,
        metrics=metrics,
        decision=decision,
        filtered=filtered,
    )
