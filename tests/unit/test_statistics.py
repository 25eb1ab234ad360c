"""
Unit tests for statistics primitives.
"""

import math

import numpy as np
import pytest

from studentalerts.anomaly.statistics import (
    beta_cdf,
    clamp,
    clamp01,
    correlation_p_value,
    fisher_exact_p,
    huber_regression,
    mad,
    median,
    normal_quantile,
    outlier_mask,
    pearson_correlation,
    robust_z_scores,
)


def test_clamp_handles_non_finite():
    assert clamp(math.nan, 0.0, 1.0) == 0.0
    assert clamp(math.inf, -1.0, 1.0) == -1.0
    assert clamp01(1.7) == 1.0
    assert clamp01(-0.2) == 0.0


def test_median_ignores_non_finite():
    assert median([1.0, 2.0, 3.0, math.nan]) == 2.0
    assert median([]) == 0.0


def test_mad_raw_and_normal_scale():
    values = [1.0, 2.0, 3.0, 4.0, 100.0]

    assert mad(values, scale="raw") == 1.0
    assert mad(values) == pytest.approx(1.4826)
    assert mad([5.0, 5.0, 5.0]) == 0.0


def test_robust_z_scores_constant_series_is_zero():
    assert np.all(robust_z_scores([3.0, 3.0, 3.0]) == 0.0)


def test_outlier_mask_flags_extreme_point():
    mask = outlier_mask([1.0, 2.0, 3.0, 4.0, 100.0], threshold=3.5)

    assert mask.tolist() == [False, False, False, False, True]


def test_pearson_correlation():
    assert pearson_correlation([1, 2, 3, 4], [2, 4, 6, 8]) == pytest.approx(1.0)
    assert pearson_correlation([1, 2, 3, 4], [8, 6, 4, 2]) == pytest.approx(-1.0)
    assert pearson_correlation([1, 2, 3], [5, 5, 5]) == 0.0
    assert pearson_correlation([1], [1]) == 0.0


def test_correlation_p_value_bounds():
    assert correlation_p_value(0.0, 10) == pytest.approx(1.0)
    assert correlation_p_value(0.9, 2) == 1.0
    assert correlation_p_value(0.9, 20) < 0.001


def test_huber_regression_exact_line():
    x = list(range(10))
    y = [2.0 * v + 1.0 for v in x]

    slope, intercept = huber_regression(x, y)

    assert slope == pytest.approx(2.0)
    assert intercept == pytest.approx(1.0)


def test_huber_regression_resists_outlier():
    x = list(range(10))
    y = [2.0 * v + 1.0 for v in x]
    y[-1] = 100.0

    slope, _ = huber_regression(x, y)
    ols_slope = np.polyfit(x, y, 1)[0]

    assert abs(slope - 2.0) < 0.5
    assert abs(slope - 2.0) < abs(ols_slope - 2.0)


def test_huber_regression_degenerate():
    assert huber_regression([], []) == (0.0, 0.0)
    assert huber_regression([1.0, 1.0, 1.0], [3.0, 4.0, 5.0]) == (0.0, 4.0)


def test_distribution_helpers():
    assert normal_quantile(0.975) == pytest.approx(1.96, abs=1e-3)
    assert beta_cdf(0.5, 1.0, 1.0) == pytest.approx(0.5)
    assert fisher_exact_p(8, 1, 1, 8) < 0.01
    assert fisher_exact_p(5, 5, 5, 5) == pytest.approx(1.0)
