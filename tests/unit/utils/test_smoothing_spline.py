"""Tests for the robust cubic smoothing spline and LOO selection."""

import numpy as np
import pytest

from driftqc.core.exceptions import FitConvergenceError
from driftqc.utils.smoothing_spline import (
    CrossValidationResult,
    fit_qc_drift,
    fit_smoothing_spline,
    loo_cross_validate,
)


@pytest.fixture
def noisy_curve():
    rng = np.random.default_rng(7)
    x = np.array([1, 4, 7, 10, 13, 16, 19, 22, 25, 28], dtype=float)
    y = 100 + 10 * np.sin(x / 6.0) + rng.normal(0, 0.5, x.size)
    return x, y


class TestFitSmoothingSpline:
    def test_interpolates_at_p_one(self, noisy_curve):
        x, y = noisy_curve
        spline = fit_smoothing_spline(x, y, 1.0)
        np.testing.assert_allclose(spline(x), y, rtol=1e-9)

    @pytest.mark.parametrize("p", [0.001, 0.5, 1.0])
    def test_reproduces_straight_line(self, p):
        x = np.array([2, 5, 6, 11, 15], dtype=float)
        y = 3.0 + 0.5 * x
        spline = fit_smoothing_spline(x, y, p)
        t = np.array([0.0, 3.0, 8.5, 15.0, 20.0])
        np.testing.assert_allclose(spline(t), 3.0 + 0.5 * t, rtol=1e-9)

    def test_constant_responses_give_constant_fit(self):
        x = np.array([1, 3, 8, 12], dtype=float)
        y = np.full(4, 42.0)
        spline = fit_smoothing_spline(x, y, 0.3)
        np.testing.assert_allclose(spline(np.arange(0, 15)), 42.0)

    def test_smaller_p_is_smoother(self, noisy_curve):
        x, y = noisy_curve
        rough = fit_smoothing_spline(x, y, 0.99, robust_iterations=0)
        smooth = fit_smoothing_spline(x, y, 0.01, robust_iterations=0)
        rss_rough = np.sum((rough(x) - y) ** 2)
        rss_smooth = np.sum((smooth(x) - y) ** 2)
        assert rss_smooth > rss_rough

    def test_unsorted_input(self, noisy_curve):
        x, y = noisy_curve
        order = np.random.default_rng(0).permutation(x.size)
        a = fit_smoothing_spline(x, y, 0.5)
        b = fit_smoothing_spline(x[order], y[order], 0.5)
        np.testing.assert_allclose(a(x), b(x))

    def test_robust_fit_downweights_outlier(self):
        x = np.arange(1, 12, dtype=float)
        y = 50.0 + 2.0 * x
        y[5] += 40.0
        plain = fit_smoothing_spline(x, y, 0.1, robust_iterations=0)
        robust = fit_smoothing_spline(x, y, 0.1, robust_iterations=3)
        truth = 50.0 + 2.0 * x[5]
        assert abs(robust(x[5])[0] - truth) < abs(plain(x[5])[0] - truth)
        assert robust.weights[5] < 0.01

    def test_two_points_is_a_line(self):
        spline = fit_smoothing_spline([0.0, 10.0], [1.0, 3.0], 0.5)
        np.testing.assert_allclose(spline([5.0, 20.0]), [2.0, 5.0])

    def test_invalid_p_rejected(self):
        with pytest.raises(ValueError):
            fit_smoothing_spline([1, 2, 3], [1, 2, 3], 0.0)

    def test_duplicate_x_rejected(self):
        with pytest.raises(ValueError, match="unique"):
            fit_smoothing_spline([1, 2, 2, 3], [1, 2, 3, 4], 0.5)

    def test_non_finite_input_fails(self):
        with pytest.raises(FitConvergenceError, match="non-finite"):
            fit_smoothing_spline([1, 2, 3, 4], [1.0, np.nan, 3.0, 4.0], 0.5)

    def test_single_point_fails(self):
        with pytest.raises(FitConvergenceError):
            fit_smoothing_spline([1.0], [1.0], 0.5)


class TestLeaveOneOut:
    def test_error_matrix_shape(self, noisy_curve):
        x, y = noisy_curve
        cv = loo_cross_validate(x, y, [0.9, 0.1, 0.5])
        assert isinstance(cv, CrossValidationResult)
        assert cv.candidates.tolist() == [0.1, 0.5, 0.9]
        assert cv.errors.shape == (3, x.size)
        assert np.all(np.isfinite(cv.errors))
        assert cv.failures == []

    def test_best_minimizes_mean_error(self, noisy_curve):
        x, y = noisy_curve
        cv = loo_cross_validate(x, y, [0.001, 0.05, 0.5, 0.99])
        means = cv.mean_errors
        assert cv.best == cv.candidates[int(np.argmin(means))]

    def test_minimum_four_points(self):
        x = np.array([1.0, 4.0, 7.0, 10.0])
        y = np.array([10.0, 11.0, 10.5, 12.0])
        cv = loo_cross_validate(x, y, [0.1, 0.9])
        assert cv.errors.shape == (2, 4)
        assert cv.best is not None

    def test_too_few_points(self):
        with pytest.raises(FitConvergenceError, match="at least 3"):
            loo_cross_validate([1.0, 2.0], [1.0, 2.0], [0.5])

    def test_failed_candidate_recorded(self):
        cv = CrossValidationResult(
            candidates=np.array([0.1, 0.5]),
            errors=np.array([[np.nan, 1.0], [2.0, 2.0]]),
            failures=[(0.1, 0, "boom")],
        )
        assert np.isinf(cv.mean_errors[0])
        assert cv.best == 0.5

    def test_no_surviving_candidate(self):
        cv = CrossValidationResult(
            candidates=np.array([0.1]), errors=np.array([[np.nan, np.nan]])
        )
        assert cv.best is None


class TestFitQCDrift:
    def test_fixed_p_skips_cross_validation(self, noisy_curve):
        x, y = noisy_curve
        spline, cv = fit_qc_drift(x, y, 0.7)
        assert cv is None
        assert spline.p == 0.7

    def test_auto_selects_from_grid(self, noisy_curve):
        x, y = noisy_curve
        grid = [0.01, 0.1, 0.5, 0.9]
        spline, cv = fit_qc_drift(x, y, 0.0, candidates=grid)
        assert cv is not None
        assert spline.p in grid
        assert spline.p == cv.best

    def test_auto_requires_candidates(self, noisy_curve):
        x, y = noisy_curve
        with pytest.raises(ValueError):
            fit_qc_drift(x, y, 0.0, candidates=None)
