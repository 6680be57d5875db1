"""
Phenology Detector.

Detects SOS / peak / EOS on a smoothed NDVI curve using per-crop
thresholds, flags replanting, projects EOS from an active senescence trend
(or the typical crop cycle), and scores the result.
"""

import math
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np

from .numeric import moving_average, linear_regression
from .thresholds import PhenologyThresholds, get_phenology_thresholds
from ..data.timeseries import Observation, valid_sorted, parse_date, format_date

logger = logging.getLogger(__name__)

INFO = "INFO"
WARNING = "WARNING"
ERROR = "ERROR"

ALGORITHM = "ALGORITHM"
PROJECTION = "PROJECTION"

MIN_POINTS = 5

# Exponential senescence model floor (bare soil / straw)
SENESCENCE_MIN_NDVI = 0.18
MAX_DYNAMIC_EOS_DAYS = 60
SENESCENCE_WINDOW = 14

REPLANTING_OFFSET = 5


class PhenologyConfig(NamedTuple):
    crop: str
    area_ha: float
    planting_date_input: Optional[date] = None


class Diagnostic(NamedTuple):
    type: str
    code: str
    message: str
    date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'code': self.code,
            'message': self.message,
            'date': format_date(self.date),
        }


def diagnostic_from_dict(data: Dict[str, Any]) -> Diagnostic:
    raw = data.get('date')
    return Diagnostic(
        type=data['type'],
        code=data['code'],
        message=data['message'],
        date=parse_date(raw) if raw else None,
    )


class PhenologyResult(NamedTuple):
    planting_date: Optional[date]
    sos_date: Optional[date]
    eos_date: Optional[date]
    peak_date: Optional[date]
    cycle_days: int
    detected_replanting: bool
    replanting_date: Optional[date]
    yield_estimate_kg: float
    yield_estimate_kg_ha: float
    phenology_health: str
    peak_ndvi: float
    confidence: str
    confidence_score: int
    method: str
    historical_correlation: int
    diagnostics: tuple = ()

    @property
    def is_ordered(self) -> bool:
        """True unless SOS, peak and EOS are all known and out of order."""
        if self.sos_date is None or self.peak_date is None or self.eos_date is None:
            return True
        return self.sos_date < self.peak_date < self.eos_date

    def has_diagnostic(self, code: str) -> bool:
        return any(d.code == code for d in self.diagnostics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'planting_date': format_date(self.planting_date),
            'sos_date': format_date(self.sos_date),
            'eos_date': format_date(self.eos_date),
            'peak_date': format_date(self.peak_date),
            'cycle_days': self.cycle_days,
            'detected_replanting': self.detected_replanting,
            'replanting_date': format_date(self.replanting_date),
            'yield_estimate_kg': self.yield_estimate_kg,
            'yield_estimate_kg_ha': self.yield_estimate_kg_ha,
            'phenology_health': self.phenology_health,
            'peak_ndvi': self.peak_ndvi,
            'confidence': self.confidence,
            'confidence_score': self.confidence_score,
            'method': self.method,
            'historical_correlation': self.historical_correlation,
            'diagnostics': [d.to_dict() for d in self.diagnostics],
        }


def phenology_from_dict(data: Dict[str, Any]) -> PhenologyResult:
    def _d(key):
        raw = data.get(key)
        return parse_date(raw) if raw else None

    return PhenologyResult(
        planting_date=_d('planting_date'),
        sos_date=_d('sos_date'),
        eos_date=_d('eos_date'),
        peak_date=_d('peak_date'),
        cycle_days=int(data['cycle_days']),
        detected_replanting=bool(data['detected_replanting']),
        replanting_date=_d('replanting_date'),
        yield_estimate_kg=data['yield_estimate_kg'],
        yield_estimate_kg_ha=data['yield_estimate_kg_ha'],
        phenology_health=data['phenology_health'],
        peak_ndvi=data['peak_ndvi'],
        confidence=data['confidence'],
        confidence_score=int(data['confidence_score']),
        method=data['method'],
        historical_correlation=int(data['historical_correlation']),
        diagnostics=tuple(diagnostic_from_dict(d) for d in data.get('diagnostics', ())),
    )


class SenescenceTrend(NamedTuple):
    is_senescence: bool
    slope: float
    r_squared: float
    last_ndvi: float
    last_date: date


def confidence_band(score: int) -> str:
    if score > 75:
        return "HIGH"
    if score > 40:
        return "MEDIUM"
    return "LOW"


def _default_result(t: PhenologyThresholds, area_ha: float, diagnostics: List[Diagnostic]) -> PhenologyResult:
    return PhenologyResult(
        planting_date=None,
        sos_date=None,
        eos_date=None,
        peak_date=None,
        cycle_days=t.cycle_days,
        detected_replanting=False,
        replanting_date=None,
        yield_estimate_kg=area_ha * t.base_yield_kg_ha,
        yield_estimate_kg_ha=t.base_yield_kg_ha,
        phenology_health="POOR",
        peak_ndvi=0.0,
        confidence="LOW",
        confidence_score=10,
        method=PROJECTION,
        historical_correlation=50,
        diagnostics=tuple(diagnostics),
    )


def detect_replanting(smoothed: Sequence[float]) -> int:
    """
    Look for a collapse and recovery of the canopy (green, bare, green
    again five samples either side).

    Returns:
        Index of the trough, or -1 when no replanting pattern exists.
    """
    off = REPLANTING_OFFSET
    for i in range(off, len(smoothed) - off):
        if smoothed[i - off] > 0.5 and smoothed[i] < 0.35 and smoothed[i + off] > 0.5:
            return i
    return -1


def calculate_correlation(current: Sequence[float], history_avg: Sequence[float]) -> int:
    n = min(len(current), len(history_avg))
    if n < 3:
        return 50
    diff = np.abs(np.asarray(current[:n], dtype=float) - np.asarray(history_avg[:n], dtype=float))
    score = round((1 - float(diff.mean()) * 1.5) * 100)
    return int(max(0, min(100, score)))


def historical_average(length: int, historical: Sequence[Sequence[Observation]]) -> List[float]:
    """Per-index mean of historical seasons; indices no season covers -> 0.5."""
    averages = []
    for idx in range(length):
        values = [
            season[idx].value or 0.0
            for season in historical
            if idx < len(season) and season[idx] is not None
        ]
        averages.append(sum(values) / len(values) if values else 0.5)
    return averages


def detect_senescence_trend(
    observations: Sequence[Observation],
    peak_idx: int,
    window: int = SENESCENCE_WINDOW
) -> Optional[SenescenceTrend]:
    """Linear trend over the last `window` post-peak samples."""
    if len(observations) < 10 or peak_idx < 0:
        return None

    after_peak = observations[peak_idx:]
    if len(after_peak) < 5:
        return None

    last_n = after_peak[-window:]
    if len(last_n) < 5:
        return None

    base = last_n[0].date
    xs = [(o.date - base).days for o in last_n]
    ys = [o.value or 0.0 for o in last_n]

    fit = linear_regression(xs, ys)
    if fit is None:
        return None
    slope, _, r_squared = fit

    last = last_n[-1]
    last_ndvi = last.value or 0.0
    peak_ndvi = observations[peak_idx].value or 0.0

    return SenescenceTrend(
        is_senescence=slope < -0.01 and r_squared > 0.7 and last_ndvi < peak_ndvi * 0.85,
        slope=slope,
        r_squared=r_squared,
        last_ndvi=last_ndvi,
        last_date=last.date,
    )


def calculate_dynamic_eos(
    last_ndvi: float,
    last_date: date,
    slope: float,
    eos_threshold: float,
    min_ndvi: float = SENESCENCE_MIN_NDVI
) -> Optional[date]:
    """
    Solve NDVI(t) = min + (N0 - min) * exp(-k t) for the day the EOS
    threshold is crossed.

    Returns:
        The crossing date, last_date if already below threshold, or None
        when the model has no solution within 60 days.
    """
    if last_ndvi <= eos_threshold:
        return last_date

    decay = abs(slope) / max(0.3, last_ndvi - min_ndvi)
    ratio = (eos_threshold - min_ndvi) / (last_ndvi - min_ndvi)
    if ratio <= 0 or ratio >= 1 or decay == 0:
        return None

    days = -math.log(ratio) / decay
    if days > MAX_DYNAMIC_EOS_DAYS or days < 0:
        return None

    return last_date + timedelta(days=round(days))


def estimate_yield(peak_ndvi: float, area_ha: float, t: PhenologyThresholds) -> float:
    ndvi_factor = min(1.0, max(0.3, (peak_ndvi - 0.3) / 0.5))
    return round(t.base_yield_kg_ha * ndvi_factor * area_ha)


def assess_phenology_health(
    peak_ndvi: float,
    correlation: int,
    method: str,
    diagnostics: Sequence[Diagnostic]
) -> str:
    errors = sum(1 for d in diagnostics if d.type == ERROR)
    warnings = sum(1 for d in diagnostics if d.type == WARNING)

    if errors > 0:
        return "POOR"
    if peak_ndvi >= 0.75 and correlation >= 70 and method == ALGORITHM and warnings == 0:
        return "EXCELLENT"
    if peak_ndvi >= 0.65 and correlation >= 50:
        return "GOOD"
    if peak_ndvi >= 0.50 or warnings <= 1:
        return "FAIR"
    return "POOR"


def calculate_confidence_score(
    has_sos: bool,
    has_eos: bool,
    has_peak: bool,
    method: str,
    correlation: float,
    data_points: int,
    peak_ndvi: float,
    peak_min_ndvi: float,
    has_input_planting_date: bool = False
) -> int:
    score = 10
    if has_input_planting_date:
        score += 25
    if has_sos:
        score += 20
    if has_eos:
        score += 15
    if has_peak:
        score += 15
    if method == ALGORITHM:
        score += 10
    if correlation > 70:
        score += 10
    if data_points >= 20:
        score += 5
    if peak_ndvi >= peak_min_ndvi:
        score += 5
    return min(100, score)


def calculate_phenology(
    ndvi: Sequence[Observation],
    historical: Sequence[Sequence[Observation]],
    config: PhenologyConfig
) -> PhenologyResult:
    """
    Detect the crop cycle of one season.

    Args:
        ndvi: Current-season observations (any order, nulls allowed).
        historical: Zero or more previous seasons, each date-ordered.
        config: Crop code, area and optional operator planting date.

    Returns:
        PhenologyResult. Thin input yields a LOW-confidence default with
        an explanatory diagnostic rather than an exception.
    """
    t = get_phenology_thresholds(config.crop)
    diagnostics: List[Diagnostic] = []

    if not ndvi or len(ndvi) < MIN_POINTS:
        return _default_result(t, config.area_ha, [
            Diagnostic(ERROR, "INSUFFICIENT_DATA", "Insufficient data for analysis")
        ])

    observations = valid_sorted(ndvi)
    if len(observations) < MIN_POINTS:
        diagnostics.append(Diagnostic(
            WARNING, "FEW_POINTS", f"Only {len(observations)} valid NDVI points"
        ))
        return _default_result(t, config.area_ha, diagnostics)

    dates = [o.date for o in observations]
    smoothed = moving_average([o.value for o in observations], 3)

    peak_idx = int(np.argmax(smoothed))
    max_val = float(smoothed[peak_idx])

    if max_val < t.peak_min_ndvi:
        diagnostics.append(Diagnostic(
            WARNING, "LOW_PEAK",
            f"Peak NDVI ({max_val:.2f}) below expected ({t.peak_min_ndvi})"
        ))

    # The peak itself can never be SOS/EOS; a curve that never rises above
    # the crossing threshold has neither.
    sos_idx = -1
    if max_val >= t.sos_ndvi:
        for i in range(peak_idx - 1, -1, -1):
            if smoothed[i] < t.sos_ndvi:
                sos_idx = i
                break

    eos_idx = -1
    if max_val >= t.eos_ndvi:
        for i in range(peak_idx + 1, len(smoothed)):
            if smoothed[i] < t.eos_ndvi:
                eos_idx = i
                break

    replant_idx = detect_replanting(smoothed)
    replanting_date = dates[replant_idx] if replant_idx >= 0 else None
    if replanting_date:
        diagnostics.append(Diagnostic(
            WARNING, "REPLANTING_DETECTED", "Possible replanting detected", replanting_date
        ))

    sos_detected = dates[sos_idx] if sos_idx >= 0 else None
    eos_detected = dates[eos_idx] if eos_idx >= 0 else None
    peak_date = dates[peak_idx]

    method = ALGORITHM
    has_input_planting = config.planting_date_input is not None

    if has_input_planting:
        planting_date = parse_date(config.planting_date_input)
        sos_date = planting_date + timedelta(days=t.emergence_days)
        diagnostics.append(Diagnostic(
            INFO, "PLANTING_DATE_PROVIDED",
            f"Planting date provided by the operator: {planting_date.isoformat()}",
            planting_date
        ))
        if sos_date >= peak_date:
            diagnostics.append(Diagnostic(
                WARNING, "SOS_AFTER_PEAK",
                f"SOS from operator planting date ({sos_date.isoformat()}) is not before "
                f"the NDVI peak ({peak_date.isoformat()}); using the detected SOS"
            ))
            sos_date = sos_detected
    else:
        sos_date = sos_detected
        planting_date = sos_date - timedelta(days=t.emergence_days) if sos_date else None

    eos_date = eos_detected
    used_dynamic = False

    if eos_detected is None:
        method = PROJECTION

        trend = detect_senescence_trend(observations, peak_idx)
        if trend is not None and trend.is_senescence:
            dynamic = calculate_dynamic_eos(trend.last_ndvi, trend.last_date, trend.slope, t.eos_ndvi)
            if dynamic is not None:
                eos_date = dynamic
                used_dynamic = True
                diagnostics.append(Diagnostic(
                    INFO, "EOS_DYNAMIC_SENESCENCE",
                    f"Harvest computed from senescence trend "
                    f"(R2={trend.r_squared * 100:.0f}%, slope={trend.slope * 100:.1f}%/day)",
                    dynamic
                ))

        if eos_date is None and planting_date is not None:
            projected = planting_date + timedelta(days=t.cycle_days)
            if projected > peak_date:
                eos_date = projected
                diagnostics.append(Diagnostic(
                    INFO, "EOS_PROJECTED_CYCLE",
                    f"Harvest projected from the typical cycle ({t.cycle_days} days)"
                ))
            else:
                diagnostics.append(Diagnostic(
                    WARNING, "EOS_BEFORE_PEAK",
                    f"Projected harvest ({projected.isoformat()}) is not after the NDVI peak; discarded"
                ))

    if has_input_planting and eos_detected is None and not used_dynamic:
        diagnostics.append(Diagnostic(
            INFO, "EOS_PROJECTED_FROM_INPUT",
            "Harvest projected from the operator planting date"
        ))

    correlation = 50
    if historical:
        correlation = calculate_correlation(smoothed, historical_average(len(smoothed), historical))

    yield_kg = estimate_yield(max_val, config.area_ha, t)
    yield_kg_ha = yield_kg / config.area_ha if config.area_ha > 0 else 0.0

    score = calculate_confidence_score(
        has_sos=sos_date is not None,
        has_eos=eos_detected is not None,
        has_peak=peak_idx >= 0,
        method=method,
        correlation=correlation,
        data_points=len(observations),
        peak_ndvi=max_val,
        peak_min_ndvi=t.peak_min_ndvi,
        has_input_planting_date=has_input_planting,
    )

    health = assess_phenology_health(max_val, correlation, method, diagnostics)

    logger.debug(
        f"[PHENOLOGY] {config.crop}: sos={format_date(sos_date)} peak={format_date(peak_date)} "
        f"eos={format_date(eos_date)} method={method} score={score}"
    )

    return PhenologyResult(
        planting_date=planting_date,
        sos_date=sos_date,
        eos_date=eos_date,
        peak_date=peak_date,
        cycle_days=t.cycle_days,
        detected_replanting=replanting_date is not None,
        replanting_date=replanting_date,
        yield_estimate_kg=yield_kg,
        yield_estimate_kg_ha=yield_kg_ha,
        phenology_health=health,
        peak_ndvi=max_val,
        confidence=confidence_band(score),
        confidence_score=score,
        method=method,
        historical_correlation=correlation,
        diagnostics=tuple(diagnostics),
    )
