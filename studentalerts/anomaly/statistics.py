"""
Statistics primitives shared by baselines and detectors.

Robust location/scale (median, MAD), robust z-scores, correlation, Huber
regression and the handful of distribution functions the detectors need.
numpy does the vector work; scipy supplies the distributions.

All functions tolerate empty input and return neutral values rather than
raising, because every caller treats "no signal" as a normal outcome.
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np
from scipy import stats

# Consistency constant so MAD estimates sigma for normal data
MAD_NORMAL_SCALE = 1.4826
# IQR of a normal distribution in units of sigma
IQR_NORMAL_SCALE = 1.349


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp to [lower, upper]; non-finite values collapse to lower."""
    if value is None or not math.isfinite(value):
        return lower
    return min(max(value, lower), upper)


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def _finite(values: Sequence[float]) -> np.ndarray:
    arr = np.asarray(list(values), dtype=float)
    return arr[np.isfinite(arr)]


def median(values: Sequence[float]) -> float:
    arr = _finite(values)
    if arr.size == 0:
        return 0.0
    return float(np.median(arr))


def mad(values: Sequence[float], scale: str = "normal") -> float:
    """
    Median absolute deviation.

    Args:
        values: Sample values (non-finite entries ignored)
        scale: "normal" returns a sigma estimate (x1.4826), "raw" the plain MAD
    """
    arr = _finite(values)
    if arr.size == 0:
        return 0.0
    raw = float(np.median(np.abs(arr - np.median(arr))))
    return raw * MAD_NORMAL_SCALE if scale == "normal" else raw


def robust_z_scores(values: Sequence[float]) -> np.ndarray:
    """
    Robust z-scores on a median/MAD basis.

    Returns zeros when the MAD is zero, so a constant series has no outliers.
    """
    arr = np.asarray(list(values), dtype=float)
    finite = arr[np.isfinite(arr)]
    if finite.size == 0:
        return np.zeros_like(arr)
    center = float(np.median(finite))
    sigma = mad(finite)
    if sigma <= 0:
        return np.zeros_like(arr)
    return (arr - center) / sigma


def outlier_mask(values: Sequence[float], threshold: float = 3.5) -> np.ndarray:
    """Boolean mask marking finite values whose |robust z| exceeds threshold."""
    arr = np.asarray(list(values), dtype=float)
    z = robust_z_scores(arr)
    return np.isfinite(arr) & (np.abs(z) > threshold)


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Pearson r over index-aligned pairs where both values are finite.

    Returns 0.0 when fewer than two pairs remain or either side is constant.
    """
    xa = np.asarray(list(x), dtype=float)
    ya = np.asarray(list(y), dtype=float)
    n = min(xa.size, ya.size)
    xa, ya = xa[:n], ya[:n]
    keep = np.isfinite(xa) & np.isfinite(ya)
    xa, ya = xa[keep], ya[keep]
    if xa.size < 2:
        return 0.0
    xs = xa - xa.mean()
    ys = ya - ya.mean()
    denom = math.sqrt(float(np.dot(xs, xs)) * float(np.dot(ys, ys)))
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(xs, ys) / denom, -1.0, 1.0))


def correlation_p_value(r: float, n: int) -> float:
    """Two-sided p-value for Pearson r with n pairs (Student t, n-2 dof)."""
    if n < 3 or not math.isfinite(r):
        return 1.0
    if abs(r) >= 1.0:
        return 0.0
    t = r * math.sqrt((n - 2) / (1.0 - r * r))
    return float(2.0 * stats.t.sf(abs(t), df=n - 2))


def huber_regression(
    x: Sequence[float],
    y: Sequence[float],
    delta: float = 1.345,
    max_iter: int = 50,
    tol: float = 1e-8,
) -> Tuple[float, float]:
    """
    Robust linear fit y = slope * x + intercept with Huber weights (IRLS).

    Returns (slope, intercept). Degenerate inputs give a flat line at the median.
    """
    xa = np.asarray(list(x), dtype=float)
    ya = np.asarray(list(y), dtype=float)
    keep = np.isfinite(xa) & np.isfinite(ya)
    xa, ya = xa[keep], ya[keep]
    if xa.size == 0:
        return 0.0, 0.0
    if xa.size < 2 or np.ptp(xa) == 0:
        return 0.0, float(np.median(ya))

    design = np.column_stack([xa, np.ones_like(xa)])
    coef, *_ = np.linalg.lstsq(design, ya, rcond=None)

    for _ in range(max_iter):
        residuals = ya - design @ coef
        scale = mad(residuals)
        if scale <= 0:
            break
        u = np.abs(residuals / scale)
        weights = np.where(u <= delta, 1.0, delta / np.maximum(u, 1e-12))
        root_w = np.sqrt(weights)
        new_coef, *_ = np.linalg.lstsq(design * root_w[:, None], ya * root_w, rcond=None)
        if np.max(np.abs(new_coef - coef)) < tol:
            coef = new_coef
            break
        coef = new_coef

    return float(coef[0]), float(coef[1])


def normal_cdf(z: float) -> float:
    return float(stats.norm.cdf(z))


def normal_quantile(p: float) -> float:
    return float(stats.norm.ppf(p))


def beta_cdf(x: float, alpha: float, beta: float) -> float:
    return float(stats.beta.cdf(clamp01(x), alpha, beta))


def fisher_exact_p(a: int, b: int, c: int, d: int) -> float:
    """Two-tailed Fisher exact p-value for the 2x2 table [[a, b], [c, d]]."""
    _, p_value = stats.fisher_exact([[int(a), int(b)], [int(c), int(d)]], alternative="two-sided")
    return float(p_value)
