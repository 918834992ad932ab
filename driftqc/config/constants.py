"""
Shared constants for QC-based drift correction.

This module is the single source of truth for sample class labels, obs column
names, algorithm names and numeric bounds. Other modules import from here
rather than defining their own copies.
"""

from typing import Final, List, Tuple

# Sample classes
QC_CLASS: Final[str] = "QC"
SAMPLE_CLASS: Final[str] = "Sample"
VALID_CLASSES: Final[List[str]] = [SAMPLE_CLASS, QC_CLASS]

# obs columns of a study matrix (sample id lives in obs_names)
CLASS_KEY: Final[str] = "class"
BATCH_KEY: Final[str] = "batch"
RUN_ORDER_KEY: Final[str] = "run_order"

# Number of leading metadata columns in a parsed study table
N_METADATA_COLUMNS: Final[int] = 4

# Correction algorithms
QC_MN: Final[str] = "QC-MN"
QC_RSC: Final[str] = "QC-RSC"
VALID_ALGORITHMS: Final[List[str]] = [QC_MN, QC_RSC]

# Accepted spellings for algorithm names (normalized -> canonical)
ALGORITHM_ALIASES: Final[dict] = {
    "qc-mn": QC_MN,
    "qc_mn": QC_MN,
    "qcmn": QC_MN,
    "qc-rsc": QC_RSC,
    "qc_rsc": QC_RSC,
    "qcrsc": QC_RSC,
}

# QC-MN neighbour count bounds (inclusive)
N_QC_BOUNDS: Final[Tuple[int, int]] = (2, 10)
DEFAULT_N_QC: Final[int] = 5

# QC-RSC
MIN_QC: Final[int] = 4
AUTO_SMOOTHING: Final[float] = 0.0
DEFAULT_ROBUST_ITERATIONS: Final[int] = 3
# Candidate smoothing parameters searched by leave-one-out CV, smoothest first
DEFAULT_SMOOTHING_GRID: Final[List[float]] = [
    0.001,
    0.01,
    0.05,
    0.1,
    0.25,
    0.5,
    0.75,
    0.9,
    0.99,
]

# Feature filter defaults
DEFAULT_TECHNICAL_CV_MAX: Final[float] = 30.0
DEFAULT_ICC_MIN: Final[float] = 0.4

# Metric table columns
METRIC_COLUMNS: Final[List[str]] = [
    "Mean",
    "StdDev",
    "BiologicalCV",
    "TechnicalCV",
    "ICC",
]
