"""
Numeric primitives shared by the crop pattern classifier, the phenology
detector and the SAR-NDVI calibration.

All functions accept plain sequences or numpy arrays and return Python
floats (or numpy arrays for series transforms).
"""

import math
import numpy as np
from datetime import date
from typing import Optional, Sequence, Tuple


def moving_average(values: Sequence[float], window: int = 3) -> np.ndarray:
    """
    Centred moving average that shrinks at the edges.

    Point i averages the slice [i - window//2, i + ceil(window/2)), clipped
    to the series bounds, so the output has the same length as the input.
    """
    arr = np.asarray(values, dtype=float)
    n = len(arr)
    if n == 0:
        return arr

    lo = window // 2
    hi = math.ceil(window / 2)
    out = np.empty(n)
    for i in range(n):
        start = max(0, i - lo)
        end = min(n, i + hi)
        out[i] = arr[start:end].mean()
    return out


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolated percentile (p in 0-100). Empty input -> 0."""
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), p))


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(np.asarray(values, dtype=float)))


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation. Fewer than 2 values -> 0."""
    if len(values) < 2:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def linear_regression(
    xs: Sequence[float],
    ys: Sequence[float]
) -> Optional[Tuple[float, float, float]]:
    """
    Ordinary least squares fit of y = slope * x + intercept.

    Returns:
        (slope, intercept, r_squared), or None when x has no variance.
    """
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if len(x) == 0 or len(x) != len(y):
        return None

    dx = x - x.mean()
    dy = y - y.mean()
    ss_xx = float(np.sum(dx * dx))
    ss_xy = float(np.sum(dx * dy))
    ss_yy = float(np.sum(dy * dy))

    if ss_xx == 0:
        return None

    slope = ss_xy / ss_xx
    intercept = float(y.mean()) - slope * float(x.mean())
    r_squared = (ss_xy ** 2) / (ss_xx * ss_yy) if ss_yy > 0 else 0.0
    return slope, intercept, r_squared


def max_growth_rate(values: Sequence[float], dates: Sequence[date]) -> float:
    """Largest positive per-day NDVI increase between consecutive samples."""
    if len(values) < 2:
        return 0.0

    max_rate = 0.0
    for i in range(1, len(values)):
        days = (dates[i] - dates[i - 1]).days
        if days > 0:
            rate = (values[i] - values[i - 1]) / days
            if rate > max_rate:
                max_rate = rate
    return float(max_rate)


def pearson_r(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Pearson correlation. Zero-variance or empty input -> 0."""
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    n = len(x)
    if n == 0:
        return 0.0
    sx = x.std()
    sy = y.std()
    if sx == 0 or sy == 0:
        return 0.0
    return float(np.sum((x - x.mean()) * (y - y.mean())) / (n * sx * sy))


def r2_score(y_true: Sequence[float], y_pred: Sequence[float]) -> float:
    """Coefficient of determination. Constant targets -> 0."""
    t = np.asarray(y_true, dtype=float)
    p = np.asarray(y_pred, dtype=float)
    if len(t) == 0:
        return 0.0
    ss_tot = float(np.sum((t - t.mean()) ** 2))
    ss_res = float(np.sum((t - p) ** 2))
    if ss_tot == 0:
        return 0.0
    return 1.0 - ss_res / ss_tot


def rmse(y_true: Sequence[float], y_pred: Sequence[float]) -> float:
    t = np.asarray(y_true, dtype=float)
    p = np.asarray(y_pred, dtype=float)
    if len(t) == 0:
        return 0.0
    return float(np.sqrt(np.mean((t - p) ** 2)))


def days_between(start: date, end: date) -> int:
    return (end - start).days
