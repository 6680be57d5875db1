"""
Historical correlation.

Scores how closely the current season follows past seasons. Seasons are
aligned by days since emergence (SOS) when both curves show one, else by
sample index, and compared on three metrics:

    pearson   - curve shape, negative correlation scores 0
    rmse      - absolute distance (NDVI range is [0, 1])
    adherence - share of points inside the historical min/max envelope

Composite = 0.4 pearson + 0.3 rmse + 0.3 adherence.
"""

import logging
from datetime import date
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from .numeric import mean, pearson_r, rmse
from ..data.timeseries import Observation, valid_sorted

logger = logging.getLogger(__name__)

SOS = "SOS"
INDEX = "INDEX"

SOS_THRESHOLD = 0.35
MIN_POINTS = 5
MIN_CROP_PEAK = 0.5
CURRENT_TOLERANCE_DAYS = 2
HISTORICAL_TOLERANCE_DAYS = 3
ENVELOPE_MARGIN = 0.05

PEARSON_WEIGHT = 0.4
RMSE_WEIGHT = 0.3
ADHERENCE_WEIGHT = 0.3


class AlignedPoint(NamedTuple):
    day_of_cycle: int
    date: date
    current: float
    historical: Tuple[float, ...]

    @property
    def historical_avg(self) -> float:
        return mean(self.historical)


class CorrelationResult(NamedTuple):
    pearson_score: int
    rmse_score: int
    adherence_score: int
    composite_score: int
    points_compared: int
    historical_seasons: int
    alignment_method: str
    warnings: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        data = self._asdict()
        data['warnings'] = list(self.warnings)
        return data


def _default(warnings: Sequence[str], **overrides) -> CorrelationResult:
    result = CorrelationResult(50, 50, 50, 50, 0, 0, INDEX, tuple(warnings))
    return result._replace(**overrides)


def detect_sos(observations: Sequence[Observation], threshold: float = SOS_THRESHOLD) -> Optional[date]:
    """
    Last sample below `threshold` at or before the peak.

    Returns None when the season has fewer than 5 samples or never reaches
    a crop-like peak; the first sample when nothing before the peak is low.
    """
    if len(observations) < MIN_POINTS:
        return None

    peak_idx, peak = 0, 0.0
    for i, obs in enumerate(observations):
        if obs.value > peak:
            peak_idx, peak = i, obs.value
    if peak < MIN_CROP_PEAK:
        return None

    for i in range(peak_idx, -1, -1):
        if observations[i].value < threshold:
            return observations[i].date
    return observations[0].date


def _by_day_of_cycle(observations: Sequence[Observation], origin: date) -> List[Tuple[int, Observation]]:
    return sorted((((o.date - origin).days, o) for o in observations), key=lambda pair: pair[0])


def _nearest(aligned: Sequence[Tuple[int, Observation]], day: int, tolerance: int) -> Optional[Observation]:
    for d, obs in aligned:
        if abs(d - day) <= tolerance:
            return obs
    return None


def _align_by_sos(
    current: List[Observation],
    historical: List[List[Observation]],
    current_sos: date,
    threshold: float,
    warnings: List[str]
) -> List[AlignedPoint]:
    current_aligned = _by_day_of_cycle(current, current_sos)

    historical_aligned = []
    for idx, season in enumerate(historical, start=1):
        season_sos = detect_sos(season, threshold)
        if season_sos is None:
            warnings.append(f"Season -{idx}: SOS not detected, aligning by first date")
            season_sos = season[0].date
        historical_aligned.append(_by_day_of_cycle(season, season_sos))

    points = []
    for day in sorted({d for d, _ in current_aligned}):
        obs = _nearest(current_aligned, day, CURRENT_TOLERANCE_DAYS)
        if obs is None:
            continue
        values = []
        for aligned in historical_aligned:
            match = _nearest(aligned, day, HISTORICAL_TOLERANCE_DAYS)
            if match is not None:
                values.append(match.value)
        if values:
            points.append(AlignedPoint(day, obs.date, obs.value, tuple(values)))
    return points


def _align_by_index(current: List[Observation], historical: List[List[Observation]]) -> List[AlignedPoint]:
    points = []
    for idx, obs in enumerate(current):
        values = tuple(season[idx].value for season in historical if idx < len(season))
        if values:
            points.append(AlignedPoint(idx, obs.date, obs.value, values))
    return points


def calculate_historical_correlation(
    current: Sequence[Observation],
    historical: Sequence[Sequence[Observation]],
    sos_threshold: float = SOS_THRESHOLD,
    min_points: int = MIN_POINTS
) -> CorrelationResult:
    """
    Composite similarity of the current season to past seasons.

    Args:
        current: NDVI observations of the current season.
        historical: One observation series per past season.
        sos_threshold: NDVI below which a sample counts as pre-emergence.
        min_points: Minimum valid samples per series and aligned points.

    Returns:
        CorrelationResult with scores in [0, 100]. Thin data yields the
        neutral 50 result with `points_compared` below `min_points`.
    """
    valid_current = valid_sorted(current)
    if len(valid_current) < min_points:
        return _default(["Not enough data for correlation"])

    seasons = [valid_sorted(s) for s in historical]
    seasons = [s for s in seasons if len(s) >= min_points]
    if not seasons:
        return _default(["No historical season with enough data"])

    warnings: List[str] = []
    points: List[AlignedPoint] = []
    method = INDEX

    current_sos = detect_sos(valid_current, sos_threshold)
    if current_sos is not None:
        method = SOS
        points = _align_by_sos(valid_current, seasons, current_sos, sos_threshold, warnings)

    if len(points) < min_points:
        warnings.append("SOS alignment insufficient, aligning by index")
        method = INDEX
        points = _align_by_index(valid_current, seasons)

    if len(points) < min_points:
        warnings.append(f"Only {len(points)} aligned points")
        return _default(
            warnings,
            points_compared=len(points),
            historical_seasons=len(seasons),
            alignment_method=method,
        )

    current_values = [p.current for p in points]
    average_values = [p.historical_avg for p in points]

    pearson_score = round(max(0.0, pearson_r(current_values, average_values)) * 100)
    rmse_score = round((1 - min(1.0, rmse(current_values, average_values))) * 100)

    inside = sum(
        1 for p in points
        if min(p.historical) - ENVELOPE_MARGIN <= p.current <= max(p.historical) + ENVELOPE_MARGIN
    )
    adherence_score = round(inside / len(points) * 100)

    composite = round(
        pearson_score * PEARSON_WEIGHT
        + rmse_score * RMSE_WEIGHT
        + adherence_score * ADHERENCE_WEIGHT
    )

    logger.debug(
        f"[CORRELATION] {method}: pearson={pearson_score} rmse={rmse_score} "
        f"adherence={adherence_score} composite={composite} ({len(points)} points)"
    )

    return CorrelationResult(
        pearson_score=int(pearson_score),
        rmse_score=int(rmse_score),
        adherence_score=int(adherence_score),
        composite_score=int(composite),
        points_compared=len(points),
        historical_seasons=len(seasons),
        alignment_method=method,
        warnings=tuple(warnings),
    )


def correlation_diagnosis(result: CorrelationResult) -> Tuple[str, str]:
    """(level, description) for a correlation result."""
    score = result.composite_score
    if score >= 80:
        return "EXCELLENT", f"Season closely follows the historical pattern ({result.historical_seasons} seasons)"
    if score >= 60:
        return "GOOD", "Season within the historical expectation"
    if score >= 40:
        return "FAIR", "Season shows moderate deviations from history"
    if result.alignment_method == INDEX:
        return "POOR", "Phenological alignment not possible; comparison may be imprecise"
    return "POOR", "Season behaves atypically compared to history"


def final_correlation(result: CorrelationResult, fallback: int, min_points: int = MIN_POINTS) -> int:
    """Composite score when enough points were compared, else `fallback`."""
    return result.composite_score if result.points_compared >= min_points else fallback
