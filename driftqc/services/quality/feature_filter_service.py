"""
Precision-based feature filtering.

Features are removed when their technical CV exceeds a maximum or their ICC
falls below a minimum. Values exactly at a threshold are kept. Features whose
metrics are undefined (NaN) are kept and reported separately so a caller can
flag them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
from pydantic import ValidationError

from driftqc.config.settings import FilterThresholds
from driftqc.core.analysis_ir import AnalysisStep, ParameterSpec
from driftqc.core.exceptions import DriftQCError, InvalidParameterError
from driftqc.utils.logger import get_logger

logger = get_logger(__name__)


class FeatureFilterError(DriftQCError):
    """Unexpected failure while filtering features."""

    pass


@dataclass
class FilterDecision:
    """Features flagged for removal, by reason."""

    removed_by_cv: FrozenSet[str] = field(default_factory=frozenset)
    removed_by_icc: FrozenSet[str] = field(default_factory=frozenset)
    undefined: FrozenSet[str] = field(default_factory=frozenset)
    kept: List[str] = field(default_factory=list)
    thresholds: Optional[FilterThresholds] = None

    @property
    def removal_set(self) -> FrozenSet[str]:
        return self.removed_by_cv | self.removed_by_icc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "removed_by_cv": sorted(self.removed_by_cv),
            "removed_by_icc": sorted(self.removed_by_icc),
            "removal_set": sorted(self.removal_set),
            "undefined": sorted(self.undefined),
            "kept": list(self.kept),
        }


def resolve_thresholds(
    technical_cv_max: Optional[float] = None,
    icc_min: Optional[float] = None,
    thresholds: Optional[FilterThresholds] = None,
) -> FilterThresholds:
    """Merge explicit threshold values over a ``FilterThresholds`` model."""
    base = thresholds.model_dump() if thresholds is not None else {}
    if technical_cv_max is not None:
        base["technical_cv_max"] = technical_cv_max
    if icc_min is not None:
        base["icc_min"] = icc_min
    try:
        return FilterThresholds(**base)
    except ValidationError as e:
        raise InvalidParameterError(f"Invalid filter thresholds: {e}") from e


class FeatureFilterService:
    """
    Stateless feature filter driven by a metric table.

    ``filter_features`` decides, ``apply_filter`` drops the decided columns
    from a study matrix while keeping every row.
    """

    def __init__(self):
        """Initialize the feature filter service (stateless)."""
        logger.debug("Initializing stateless FeatureFilterService")

    def _create_ir_filter_features(self, thresholds: FilterThresholds) -> AnalysisStep:
        """Create IR for the threshold decision."""
        return AnalysisStep(
            operation="driftqc.quality.filter_features",
            tool_name="filter_features",
            description="Flag features by technical CV and ICC thresholds",
            library="numpy/pandas",
            code_template="""# Precision-based feature filter
from driftqc.services.quality.feature_filter_service import FeatureFilterService

service = FeatureFilterService()
decision, stats, _ = service.filter_features(
    metrics,
    technical_cv_max={{ technical_cv_max }},
    icc_min={{ icc_min }},
)
print(f"Removing {stats['n_removed']} of {stats['n_features']} features")""",
            imports=[
                "from driftqc.services.quality.feature_filter_service import FeatureFilterService"
            ],
            parameters={
                "technical_cv_max": thresholds.technical_cv_max,
                "icc_min": thresholds.icc_min,
            },
            parameter_schema={
                "technical_cv_max": ParameterSpec(
                    param_type="float", papermill_injectable=True, default_value=30.0,
                    required=False, validation_rule="technical_cv_max >= 0",
                    description="Maximum technical CV (%) to keep a feature",
                ),
                "icc_min": ParameterSpec(
                    param_type="float", papermill_injectable=True, default_value=0.4,
                    required=False, validation_rule="0 <= icc_min <= 1",
                    description="Minimum ICC to keep a feature",
                ),
            },
            input_entities=["metrics"],
            output_entities=["decision"],
        )

    def _create_ir_apply_filter(self, removal_set: List[str]) -> AnalysisStep:
        """Create IR for dropping filtered features."""
        return AnalysisStep(
            operation="driftqc.quality.apply_filter",
            tool_name="apply_filter",
            description="Drop filtered features from the study matrix",
            library="anndata",
            code_template="""# Drop filtered features
from driftqc.services.quality.feature_filter_service import FeatureFilterService

service = FeatureFilterService()
adata_filtered, stats, _ = service.apply_filter(adata, {{ removal_set | tojson }})
print(f"Features: {stats['n_before']} -> {stats['n_after']}")""",
            imports=[
                "from driftqc.services.quality.feature_filter_service import FeatureFilterService"
            ],
            parameters={"removal_set": removal_set},
            parameter_schema={
                "removal_set": ParameterSpec(
                    param_type="List[str]", papermill_injectable=False,
                    default_value=[], required=True,
                    description="Feature names to drop",
                ),
            },
            input_entities=["adata"],
            output_entities=["adata_filtered"],
        )

    def filter_features(
        self,
        metrics: pd.DataFrame,
        technical_cv_max: Optional[float] = None,
        icc_min: Optional[float] = None,
        thresholds: Optional[FilterThresholds] = None,
    ) -> Tuple[FilterDecision, Dict[str, Any], AnalysisStep]:
        """
        Decide which features fail the precision thresholds.

        A feature is removed if TechnicalCV > technical_cv_max or
        ICC < icc_min. Threshold values themselves are kept.

        Args:
            metrics: Metric table indexed by feature (TechnicalCV, ICC columns)
            technical_cv_max: Maximum technical CV (%); overrides ``thresholds``
            icc_min: Minimum ICC in [0, 1]; overrides ``thresholds``
            thresholds: Threshold model; defaults apply for unset values

        Returns:
            Tuple[FilterDecision, Dict[str, Any], AnalysisStep]

        Raises:
            InvalidParameterError: If thresholds are out of range or the
                metric table lacks TechnicalCV / ICC
        """
        resolved = resolve_thresholds(technical_cv_max, icc_min, thresholds)

        missing = [c for c in ("TechnicalCV", "ICC") if c not in metrics.columns]
        if missing:
            raise InvalidParameterError(f"Metric table is missing column(s): {missing}")

        try:
            logger.info(
                f"Filtering features: technical CV > {resolved.technical_cv_max} "
                f"or ICC < {resolved.icc_min}"
            )
            names = np.asarray([str(n) for n in metrics.index])
            tech_cv = metrics["TechnicalCV"].to_numpy(dtype=np.float64)
            icc = metrics["ICC"].to_numpy(dtype=np.float64)

            # NaN compares False, so undefined metrics never remove a feature
            cv_fail = tech_cv > resolved.technical_cv_max
            icc_fail = icc < resolved.icc_min
            undefined = np.isnan(tech_cv) | np.isnan(icc)
            remove = cv_fail | icc_fail

            decision = FilterDecision(
                removed_by_cv=frozenset(names[cv_fail].tolist()),
                removed_by_icc=frozenset(names[icc_fail].tolist()),
                undefined=frozenset(names[undefined].tolist()),
                kept=names[~remove].tolist(),
                thresholds=resolved,
            )

            stats: Dict[str, Any] = {
                "n_features": int(names.size),
                "n_removed": len(decision.removal_set),
                "n_removed_by_cv": len(decision.removed_by_cv),
                "n_removed_by_icc": len(decision.removed_by_icc),
                "n_removed_by_both": len(decision.removed_by_cv & decision.removed_by_icc),
                "n_undefined": len(decision.undefined),
                "technical_cv_max": resolved.technical_cv_max,
                "icc_min": resolved.icc_min,
                "analysis_type": "feature_precision_filter",
            }

            if decision.undefined:
                logger.warning(
                    f"{len(decision.undefined)} feature(s) have undefined metrics "
                    f"and were kept"
                )
            logger.info(
                f"Feature filter: {stats['n_removed']} of {stats['n_features']} removed"
            )

            return decision, stats, self._create_ir_filter_features(resolved)

        except Exception as e:
            logger.exception(f"Error in feature filtering: {e}")
            raise FeatureFilterError(f"Feature filtering failed: {str(e)}") from e

    def apply_filter(
        self, adata: anndata.AnnData, removal_set: Iterable[str]
    ) -> Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]:
        """
        Drop the given features from a study matrix, keeping all rows.

        Args:
            adata: Study matrix (raw or corrected)
            removal_set: Feature names to drop; unknown names are ignored

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any], AnalysisStep]
        """
        try:
            to_remove = sorted({str(name) for name in removal_set})
            var_names = pd.Index([str(v) for v in adata.var_names])
            unknown = [name for name in to_remove if name not in var_names]
            if unknown:
                logger.warning(
                    f"Ignoring {len(unknown)} unknown feature(s) in removal set: "
                    f"{unknown[:5]}"
                )

            keep_mask = ~var_names.isin(to_remove)
            adata_filtered = adata[:, keep_mask].copy()

            stats = {
                "n_before": int(adata.n_vars),
                "n_after": int(adata_filtered.n_vars),
                "n_removed": int((~keep_mask).sum()),
                "unknown_features": unknown,
                "analysis_type": "feature_precision_filter_apply",
            }
            logger.info(f"Applied filter: {stats['n_before']} -> {stats['n_after']} features")

            return adata_filtered, stats, self._create_ir_apply_filter(to_remove)

        except Exception as e:
            logger.exception(f"Error applying feature filter: {e}")
            raise FeatureFilterError(f"Applying feature filter failed: {str(e)}") from e
