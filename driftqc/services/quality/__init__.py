"""Quality services: drift correction, precision metrics and feature filtering."""

from driftqc.services.quality.batch_correction_service import (
    BatchCorrectionError,
    BatchCorrectionService,
    ColumnFit,
    CorrectionResult,
)
from driftqc.services.quality.feature_filter_service import (
    FeatureFilterError,
    FeatureFilterService,
    FilterDecision,
)
from driftqc.services.quality.neighbor_index import NeighborIndex, nearest_qc
from driftqc.services.quality.precision_metrics_service import (
    PrecisionMetricsError,
    PrecisionMetricsService,
)

__all__ = [
    "BatchCorrectionError",
    "BatchCorrectionService",
    "ColumnFit",
    "CorrectionResult",
    "FeatureFilterError",
    "FeatureFilterService",
    "FilterDecision",
    "NeighborIndex",
    "nearest_qc",
    "PrecisionMetricsError",
    "PrecisionMetricsService",
]
