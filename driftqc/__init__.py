"""
driftqc: QC-based drift correction and precision filtering for metabolomics.

Corrects instrument drift across analytical batches using interspersed QC
injections (QC-MN or QC-RSC), computes per-feature precision metrics and
filters features by technical CV and ICC.
"""

from driftqc.api import (
    apply_filter,
    compute_metrics,
    correct,
    correct_and_filter,
    filter_features,
)
from driftqc.core.exceptions import (
    DriftQCError,
    FitConvergenceError,
    InsufficientDataError,
    InsufficientQCError,
    InvalidParameterError,
    StudyMatrixError,
)

__version__ = "0.1.0"

__all__ = [
    "apply_filter",
    "compute_metrics",
    "correct",
    "correct_and_filter",
    "filter_features",
    "DriftQCError",
    "FitConvergenceError",
    "InsufficientDataError",
    "InsufficientQCError",
    "InvalidParameterError",
    "StudyMatrixError",
]
