import pytest
from datetime import date, datetime, timedelta

from pheno_fusion.analysis.correlation import (
    calculate_historical_correlation,
    correlation_diagnosis,
    detect_sos,
    final_correlation,
    CorrelationResult,
    INDEX,
    SOS,
)
from pheno_fusion.data.timeseries import Observation

SEASON_VALUES = [
    0.20, 0.25, 0.32, 0.40, 0.50, 0.60, 0.70, 0.78, 0.84, 0.85,
    0.85, 0.82, 0.75, 0.65, 0.55, 0.45, 0.36, 0.28, 0.22, 0.20,
]


# Helper to generate dates
def generate_dates(start_str, count, interval_days=6):
    start = datetime.strptime(start_str, "%Y-%m-%d").date()
    return [start + timedelta(days=i * interval_days) for i in range(count)]


def make_series(values, start_str="2024-10-01", interval_days=6):
    dates = generate_dates(start_str, len(values), interval_days)
    return tuple(Observation(date=d, raw=v) for d, v in zip(dates, values))


def test_detect_sos_last_low_point_before_peak():
    assert detect_sos(make_series(SEASON_VALUES)) == date(2024, 10, 13)


def test_detect_sos_needs_crop_peak():
    assert detect_sos(make_series([0.25] * 10)) is None
    assert detect_sos(make_series(SEASON_VALUES[:4])) is None


def test_identical_season_scores_full_marks():
    series = make_series(SEASON_VALUES)
    result = calculate_historical_correlation(series, [series])

    assert result.alignment_method == SOS
    assert result.points_compared == 20
    assert result.historical_seasons == 1
    assert result.pearson_score == 100
    assert result.rmse_score == 100
    assert result.adherence_score == 100
    assert result.composite_score == 100


def test_shifted_season_aligned_on_emergence():
    """Last year's season started 12 days earlier; SOS alignment removes the offset."""
    current = make_series(SEASON_VALUES)
    previous = make_series(SEASON_VALUES, start_str="2023-09-19")
    result = calculate_historical_correlation(current, [previous])

    assert result.alignment_method == SOS
    assert result.composite_score == 100


def test_flat_history_scores_low():
    current = make_series(SEASON_VALUES)
    flat = make_series([0.25] * 20)
    result = calculate_historical_correlation(current, [flat])

    assert result.pearson_score == 0
    assert result.composite_score < 50
    assert any("SOS not detected" in w for w in result.warnings)


def test_without_history_returns_neutral():
    result = calculate_historical_correlation(make_series(SEASON_VALUES), [])

    assert result.composite_score == 50
    assert result.points_compared == 0
    assert final_correlation(result, 72) == 72


def test_short_current_season_returns_neutral():
    series = make_series(SEASON_VALUES)
    result = calculate_historical_correlation(series[:4], [series])

    assert result.composite_score == 50
    assert result.warnings == ("Not enough data for correlation",)


def test_flat_current_season_aligns_by_index():
    current = make_series([0.25, 0.26, 0.24, 0.25, 0.27, 0.25])
    result = calculate_historical_correlation(current, [make_series(SEASON_VALUES)])

    assert result.alignment_method == INDEX
    assert result.points_compared == 6


def test_final_correlation_prefers_composite():
    result = CorrelationResult(90, 80, 70, 81, 12, 2, SOS)
    assert final_correlation(result, 40) == 81
    assert final_correlation(result._replace(points_compared=4), 40) == 40


@pytest.mark.parametrize("score,level", [(85, "EXCELLENT"), (60, "GOOD"), (45, "FAIR"), (10, "POOR")])
def test_diagnosis_levels(score, level):
    result = CorrelationResult(0, 0, 0, score, 10, 1, SOS)
    assert correlation_diagnosis(result)[0] == level


def test_result_to_dict():
    result = CorrelationResult(90, 80, 70, 81, 12, 2, SOS, ("note",))
    data = result.to_dict()
    assert data['composite_score'] == 81
    assert data['warnings'] == ["note"]
