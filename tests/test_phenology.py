import pytest
from datetime import date, datetime, timedelta

from pheno_fusion.analysis.phenology import (
    calculate_phenology,
    calculate_confidence_score,
    calculate_dynamic_eos,
    detect_replanting,
    calculate_correlation,
    historical_average,
    confidence_band,
    phenology_from_dict,
    PhenologyConfig,
    ALGORITHM,
    PROJECTION,
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


def test_full_season_detected():
    """20 points rising to 0.85 and back: every date found by the algorithm."""
    series = make_series(SEASON_VALUES)
    result = calculate_phenology(series, [], PhenologyConfig("SOJA", 100.0))

    assert result.method == ALGORITHM
    assert result.sos_date == date(2024, 10, 13)
    assert result.peak_date == date(2024, 11, 24)
    assert result.eos_date == date(2025, 1, 5)
    assert result.planting_date == date(2024, 10, 5)
    assert result.confidence_score >= 75
    assert result.confidence == "HIGH"
    assert result.is_ordered
    assert not result.detected_replanting


def test_flat_series_has_no_cycle():
    values = [0.25, 0.24, 0.26, 0.25, 0.27, 0.23, 0.25, 0.26, 0.24, 0.25, 0.26, 0.25, 0.24]
    result = calculate_phenology(make_series(values, interval_days=5), [], PhenologyConfig("SOJA", 50.0))

    assert result.sos_date is None
    assert result.eos_date is None
    assert result.method == PROJECTION
    assert result.has_diagnostic("LOW_PEAK")


def test_order_holds_for_unsorted_input():
    series = list(make_series(SEASON_VALUES))
    series.reverse()
    result = calculate_phenology(series, [], PhenologyConfig("MILHO", 10.0))
    assert result.sos_date < result.peak_date < result.eos_date


def test_insufficient_data_default():
    result = calculate_phenology(make_series([0.3, 0.5]), [], PhenologyConfig("SOJA", 10.0))

    assert result.confidence_score == 10
    assert result.confidence == "LOW"
    assert result.has_diagnostic("INSUFFICIENT_DATA")
    assert result.yield_estimate_kg == pytest.approx(35000)


def test_planting_date_input_overrides_sos():
    series = make_series(SEASON_VALUES)
    config = PhenologyConfig("SOJA", 100.0, planting_date_input=date(2024, 10, 2))
    result = calculate_phenology(series, [], config)

    assert result.planting_date == date(2024, 10, 2)
    assert result.sos_date == date(2024, 10, 10)
    assert result.has_diagnostic("PLANTING_DATE_PROVIDED")
    assert result.confidence_score == 100


def test_late_planting_input_is_flagged():
    series = make_series(SEASON_VALUES)
    config = PhenologyConfig("SOJA", 100.0, planting_date_input=date(2024, 12, 1))
    result = calculate_phenology(series, [], config)
    assert result.has_diagnostic("SOS_AFTER_PEAK")
    assert result.planting_date == date(2024, 12, 1)
    assert result.sos_date == date(2024, 10, 13)
    assert result.is_ordered


def test_eos_projected_from_cycle_when_curve_still_green():
    rising = SEASON_VALUES[:12]
    result = calculate_phenology(make_series(rising), [], PhenologyConfig("SOJA", 100.0))

    assert result.method == PROJECTION
    assert result.eos_date == result.planting_date + timedelta(days=120)
    assert result.has_diagnostic("EOS_PROJECTED_CYCLE")
    assert result.is_ordered


def test_confidence_score_is_monotone():
    base = dict(
        has_sos=False, has_eos=False, has_peak=False, method=PROJECTION,
        correlation=50, data_points=10, peak_ndvi=0.5, peak_min_ndvi=0.7,
    )
    reference = calculate_confidence_score(**base)
    upgrades = dict(
        has_sos=True, has_eos=True, has_peak=True, method=ALGORITHM,
        correlation=80, data_points=25, peak_ndvi=0.8, has_input_planting_date=True,
    )
    for key, value in upgrades.items():
        assert calculate_confidence_score(**{**base, key: value}) >= reference
    assert calculate_confidence_score(**{**base, **upgrades}) == 100


def test_confidence_band():
    assert confidence_band(80) == "HIGH"
    assert confidence_band(75) == "MEDIUM"
    assert confidence_band(40) == "LOW"


def test_detect_replanting():
    smoothed = [0.6, 0.6, 0.6, 0.6, 0.6, 0.6, 0.3, 0.3, 0.3, 0.3, 0.3, 0.6, 0.6, 0.6, 0.6, 0.6]
    assert detect_replanting(smoothed) == 6
    assert detect_replanting([0.6] * 16) == -1


def test_dynamic_eos():
    last = date(2025, 1, 1)
    assert calculate_dynamic_eos(0.30, last, -0.02, 0.38) == last

    eos = calculate_dynamic_eos(0.60, last, -0.02, 0.38)
    assert eos is not None and eos > last
    assert calculate_dynamic_eos(0.60, last, -0.0001, 0.38) is None


def test_historical_correlation():
    history = [make_series(SEASON_VALUES), make_series(SEASON_VALUES)]
    avg = historical_average(len(SEASON_VALUES), history)
    assert avg == pytest.approx(SEASON_VALUES)
    assert historical_average(2, []) == [0.5, 0.5]
    assert calculate_correlation(SEASON_VALUES, avg) == 100
    assert calculate_correlation([0.5, 0.5], [0.1, 0.1]) == 50


def test_result_round_trip():
    config = PhenologyConfig("SOJA", 100.0, planting_date_input=date(2024, 10, 2))
    result = calculate_phenology(make_series(SEASON_VALUES), [], config)
    assert phenology_from_dict(result.to_dict()) == result
