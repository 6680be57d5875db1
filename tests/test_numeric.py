import numpy as np
import pytest
from datetime import date, timedelta

from pheno_fusion.analysis.numeric import (
    moving_average,
    percentile,
    mean,
    std_dev,
    linear_regression,
    max_growth_rate,
    pearson_r,
    r2_score,
    rmse,
    days_between,
)


def test_moving_average_same_length():
    """Edges shrink the window instead of dropping points."""
    values = [0.1, 0.1, 0.8, 0.8, 0.1, 0.1]
    smoothed = moving_average(values, 3)

    assert len(smoothed) == len(values)
    assert smoothed[0] == pytest.approx(0.1)
    assert smoothed[2] == pytest.approx((0.1 + 0.8 + 0.8) / 3)
    assert np.max(smoothed) < 0.8


def test_moving_average_empty():
    assert len(moving_average([], 3)) == 0


def test_percentile_and_mean():
    values = [0.1, 0.2, 0.3, 0.4, 0.5]
    assert percentile(values, 50) == pytest.approx(0.3)
    assert percentile(values, 10) == pytest.approx(0.14)
    assert percentile([], 10) == 0.0
    assert mean(values) == pytest.approx(0.3)
    assert mean([]) == 0.0


def test_std_dev_population():
    assert std_dev([1.0]) == 0.0
    assert std_dev([1.0, 3.0]) == pytest.approx(1.0)


def test_linear_regression_perfect_line():
    slope, intercept, r2 = linear_regression([0, 1, 2, 3], [1, 3, 5, 7])
    assert slope == pytest.approx(2.0)
    assert intercept == pytest.approx(1.0)
    assert r2 == pytest.approx(1.0)


def test_linear_regression_no_variance():
    assert linear_regression([2, 2, 2], [1, 2, 3]) is None


def test_max_growth_rate():
    start = date(2024, 10, 1)
    dates = [start + timedelta(days=d) for d in (0, 5, 10, 20)]
    values = [0.2, 0.3, 0.6, 0.7]
    # 0.3 over 5 days is the steepest rise
    assert max_growth_rate(values, dates) == pytest.approx(0.06)
    assert max_growth_rate([0.5], dates[:1]) == 0.0


def test_pearson_r():
    assert pearson_r([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
    assert pearson_r([1, 2, 3], [6, 4, 2]) == pytest.approx(-1.0)
    assert pearson_r([1, 1, 1], [1, 2, 3]) == 0.0


def test_r2_and_rmse():
    y = [1.0, 2.0, 3.0]
    assert r2_score(y, y) == pytest.approx(1.0)
    assert r2_score([2.0, 2.0], [1.0, 3.0]) == 0.0
    assert rmse(y, [1.0, 2.0, 5.0]) == pytest.approx(np.sqrt(4 / 3))


def test_days_between():
    assert days_between(date(2025, 1, 1), date(2025, 1, 31)) == 30
