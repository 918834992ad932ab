"""
Robust cubic smoothing spline for QC drift curves.

The fit minimizes

    p * sum(w_i * (y_i - f(x_i))^2) + (1 - p) * integral(f''(x)^2 dx)

over natural cubic splines with knots at the data points (Reinsch form, see
Green & Silverman, "Nonparametric Regression and Generalized Linear Models",
ch. 2). ``p = 1`` interpolates, ``p -> 0`` tends to the least-squares line.
Run orders are rescaled to unit mean spacing before fitting so that ``p`` has
the same meaning for any injection numbering.

Robustness comes from bisquare reweighting of residuals (as in LOWESS). When
``p`` is not given, it is selected by leave-one-out cross-validation over a
grid of candidates.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import linalg

from driftqc.core.exceptions import FitConvergenceError

__all__ = [
    "SmoothingSpline",
    "CrossValidationResult",
    "fit_smoothing_spline",
    "loo_cross_validate",
    "fit_qc_drift",
]

_MIN_WEIGHT = 1e-6
_BISQUARE_WIDTH = 6.0
_RESIDUAL_TOL = 1e-10


@dataclass
class SmoothingSpline:
    """A fitted natural cubic smoothing spline, callable on run orders."""

    knots: np.ndarray  # original-scale x, strictly increasing
    values: np.ndarray  # fitted values at knots
    second_derivatives: np.ndarray  # at knots (scaled x), zero at both ends
    p: float
    weights: np.ndarray
    origin: float
    spacing: float

    def __call__(self, x) -> np.ndarray:
        t = (np.asarray(x, dtype=np.float64) - self.origin) / self.spacing
        return _evaluate(self._scaled_knots, self.values, self.second_derivatives, t)

    @property
    def _scaled_knots(self) -> np.ndarray:
        return (self.knots - self.origin) / self.spacing


@dataclass
class CrossValidationResult:
    """
    Leave-one-out search over candidate smoothing parameters.

    ``errors[i, j]`` is the squared prediction error at held-out point ``j``
    for candidate ``candidates[i]``; NaN where that fit failed.
    """

    candidates: np.ndarray
    errors: np.ndarray
    failures: List[Tuple[float, int, str]] = field(default_factory=list)

    @property
    def mean_errors(self) -> np.ndarray:
        means = np.full(self.candidates.size, np.inf)
        for i in range(self.candidates.size):
            row = self.errors[i]
            if np.all(np.isfinite(row)):
                means[i] = float(np.mean(row))
        return means

    @property
    def best_index(self) -> Optional[int]:
        means = self.mean_errors
        if not np.any(np.isfinite(means)):
            return None
        # first minimum: candidates are sorted ascending, so ties go to the smoother fit
        return int(np.argmin(means))

    @property
    def best(self) -> Optional[float]:
        idx = self.best_index
        return None if idx is None else float(self.candidates[idx])


def _penalty_from_p(p: float) -> float:
    return (1.0 - p) / p


def _reinsch_solve(
    x: np.ndarray, y: np.ndarray, w: np.ndarray, lam: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Solve for fitted values and second derivatives at the knots.

    ``x`` must be strictly increasing with at least two points. Returns
    (g, gamma) where gamma has zeros at both ends (natural spline).
    """
    n = x.size
    if n == 2:
        return y.copy(), np.zeros(2)

    h = np.diff(x)
    m = n - 2

    # Q^T: m x n second-difference operator
    qt = np.zeros((m, n))
    rows = np.arange(m)
    qt[rows, rows] = 1.0 / h[:-1]
    qt[rows, rows + 1] = -(1.0 / h[:-1] + 1.0 / h[1:])
    qt[rows, rows + 2] = 1.0 / h[1:]

    r = np.zeros((m, m))
    r[rows, rows] = (h[:-1] + h[1:]) / 3.0
    if m > 1:
        r[rows[:-1], rows[:-1] + 1] = h[1:-1] / 6.0
        r[rows[:-1] + 1, rows[:-1]] = h[1:-1] / 6.0

    w_inv = 1.0 / w
    system = r + lam * (qt * w_inv) @ qt.T

    bandwidth = min(2, m - 1)
    banded = np.zeros((bandwidth + 1, m))
    for k in range(bandwidth + 1):
        banded[bandwidth - k, k:] = np.diagonal(system, k)

    gamma_inner = linalg.solveh_banded(banded, qt @ y)
    g = y - lam * w_inv * (qt.T @ gamma_inner)

    gamma = np.zeros(n)
    gamma[1:-1] = gamma_inner
    return g, gamma


def _evaluate(x: np.ndarray, g: np.ndarray, gamma: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Evaluate the natural spline at ``t``; linear beyond the end knots."""
    t = np.atleast_1d(t).astype(np.float64)
    n = x.size
    h = np.diff(x)
    out = np.empty_like(t)

    seg = np.clip(np.searchsorted(x, t, side="right") - 1, 0, n - 2)
    left = x[seg]
    right = x[seg + 1]
    hs = h[seg]
    dl = t - left
    dr = right - t
    out[:] = (dl * g[seg + 1] + dr * g[seg]) / hs - (dl * dr / 6.0) * (
        (1.0 + dl / hs) * gamma[seg + 1] + (1.0 + dr / hs) * gamma[seg]
    )

    below = t < x[0]
    if np.any(below):
        slope = (g[1] - g[0]) / h[0] - h[0] * gamma[1] / 6.0
        out[below] = g[0] - (x[0] - t[below]) * slope

    above = t > x[-1]
    if np.any(above):
        slope = (g[-1] - g[-2]) / h[-1] + h[-1] * gamma[-2] / 6.0
        out[above] = g[-1] + (t[above] - x[-1]) * slope

    return out


def _bisquare_weights(residuals: np.ndarray, y: np.ndarray) -> Optional[np.ndarray]:
    scale = np.median(np.abs(residuals))
    # residuals at rounding level: the fit is exact, nothing to downweight
    floor = _RESIDUAL_TOL * max(1.0, float(np.max(np.abs(y))))
    if not np.isfinite(scale) or scale <= floor:
        return None
    u = residuals / (_BISQUARE_WIDTH * scale)
    w = np.where(np.abs(u) < 1.0, (1.0 - u**2) ** 2, 0.0)
    return np.maximum(w, _MIN_WEIGHT)


def fit_smoothing_spline(
    x: Sequence[float],
    y: Sequence[float],
    p: float,
    robust_iterations: int = 3,
) -> SmoothingSpline:
    """
    Fit a robust cubic smoothing spline.

    Args:
        x: Run orders (unique)
        y: Responses, all finite
        p: Smoothing parameter in (0, 1]
        robust_iterations: Bisquare reweighting passes after the first fit

    Returns:
        SmoothingSpline: callable fit

    Raises:
        ValueError: On invalid input shapes, duplicate x or p outside (0, 1]
        FitConvergenceError: If the linear system cannot be solved or the fit
            is not finite
    """
    if not 0.0 < p <= 1.0:
        raise ValueError(f"Smoothing parameter must be in (0, 1], got {p}")

    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.ndim != 1 or x.shape != y.shape:
        raise ValueError("x and y must be one-dimensional arrays of equal length")
    if x.size < 2:
        raise FitConvergenceError(f"at least 2 points required, got {x.size}")
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
        raise FitConvergenceError("non-finite input values")

    order = np.argsort(x, kind="stable")
    x, y = x[order], y[order]
    if np.any(np.diff(x) <= 0):
        raise ValueError("x values must be unique")

    origin = float(x[0])
    spacing = float((x[-1] - x[0]) / (x.size - 1))
    xs = (x - origin) / spacing

    lam = _penalty_from_p(p)
    w = np.ones_like(y)

    for iteration in range(robust_iterations + 1):
        try:
            g, gamma = _reinsch_solve(xs, y, w, lam)
        except (linalg.LinAlgError, ValueError) as e:
            raise FitConvergenceError(f"spline system could not be solved: {e}") from e

        if not (np.all(np.isfinite(g)) and np.all(np.isfinite(gamma))):
            raise FitConvergenceError(
                f"non-finite spline coefficients at robustness iteration {iteration}"
            )

        if iteration == robust_iterations:
            break

        new_w = _bisquare_weights(y - g, y)
        if new_w is None:
            break
        if np.all(new_w <= _MIN_WEIGHT):
            raise FitConvergenceError("all robustness weights collapsed")
        w = new_w

    return SmoothingSpline(
        knots=x,
        values=g,
        second_derivatives=gamma,
        p=float(p),
        weights=w,
        origin=origin,
        spacing=spacing,
    )


def loo_cross_validate(
    x: Sequence[float],
    y: Sequence[float],
    candidates: Sequence[float],
    robust_iterations: int = 3,
) -> CrossValidationResult:
    """
    Leave-one-out cross-validation of smoothing parameters.

    Outer loop over candidates, inner loop over held-out points; each fit uses
    every point except the held-out one.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    grid = np.asarray(sorted(candidates), dtype=np.float64)
    n = x.size
    if n < 3:
        raise FitConvergenceError(f"leave-one-out needs at least 3 points, got {n}")

    errors = np.full((grid.size, n), np.nan)
    failures: List[Tuple[float, int, str]] = []
    indices = np.arange(n)

    for i in range(grid.size):
        for j in range(n):
            train = indices != j
            try:
                spline = fit_smoothing_spline(
                    x[train], y[train], grid[i], robust_iterations=robust_iterations
                )
            except FitConvergenceError as e:
                failures.append((float(grid[i]), j, e.reason))
                continue
            prediction = spline(x[j])[0]
            errors[i, j] = (prediction - y[j]) ** 2

    return CrossValidationResult(candidates=grid, errors=errors, failures=failures)


def fit_qc_drift(
    x: Sequence[float],
    y: Sequence[float],
    p: float,
    robust_iterations: int = 3,
    candidates: Optional[Sequence[float]] = None,
) -> Tuple[SmoothingSpline, Optional[CrossValidationResult]]:
    """
    Fit the QC drift curve, selecting ``p`` by cross-validation when ``p == 0``.

    Returns:
        (spline, cv_result) where cv_result is None for a fixed ``p``

    Raises:
        FitConvergenceError: If the final fit fails or no candidate survives
            cross-validation
    """
    if p != 0.0:
        return fit_smoothing_spline(x, y, p, robust_iterations=robust_iterations), None

    if candidates is None or len(candidates) == 0:
        raise ValueError("candidates are required when p == 0")

    cv = loo_cross_validate(x, y, candidates, robust_iterations=robust_iterations)
    best = cv.best
    if best is None:
        candidate, held_out, reason = cv.failures[0]
        raise FitConvergenceError(
            f"no smoothing candidate survived cross-validation ({reason})",
            candidate=candidate,
            held_out=held_out,
        )

    spline = fit_smoothing_spline(x, y, best, robust_iterations=robust_iterations)
    return spline, cv
