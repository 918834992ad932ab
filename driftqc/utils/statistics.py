"""
Shared statistical helpers for precision metrics.

Both helpers work column-wise, ignore NaN observations and return NaN where
the statistic is undefined rather than raising.
"""

import warnings

import numpy as np


def coefficient_of_variation(X: np.ndarray, ddof: int = 1) -> np.ndarray:
    """
    Column-wise coefficient of variation in percent.

    CV = std / mean * 100, with the sample standard deviation (``ddof=1``).
    A zero or undefined mean gives NaN.

    Args:
        X: 2-D array (observations x features)
        ddof: Delta degrees of freedom for the standard deviation

    Returns:
        1-D array of CVs, one per column

    Example:
        >>> coefficient_of_variation(np.array([[9.0], [10.0], [11.0]]))
        array([10.])
    """
    X = np.asarray(X, dtype=np.float64)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        means = np.nanmean(X, axis=0)
        stds = np.nanstd(X, axis=0, ddof=ddof)
    with np.errstate(divide="ignore", invalid="ignore"):
        cv = stds / means * 100
    return np.where((means != 0) & np.isfinite(means), cv, np.nan)


def variance_ratio(numerator_var: np.ndarray, other_var: np.ndarray) -> np.ndarray:
    """
    Share of total variance: a / (a + b), NaN where a + b is zero or undefined.

    Used for the intraclass correlation, with biological variance as ``a``
    and technical (QC) variance as ``b``.
    """
    a = np.asarray(numerator_var, dtype=np.float64)
    b = np.asarray(other_var, dtype=np.float64)
    total = a + b
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = a / total
    return np.where((total != 0) & np.isfinite(total), ratio, np.nan)
