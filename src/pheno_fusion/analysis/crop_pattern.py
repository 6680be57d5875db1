"""
Crop Pattern Classifier.

Algorithmic pre-validator that scores the NDVI curve shape against the
declared crop's thresholds to decide whether the crop is actually present
and behaving typically. Runs right after phenology detection in the
pipeline and short-circuits it on NO_CROP.

Statuses:
    NO_CROP    - no productive cycle; pipeline stops, verifier not needed
    ANOMALOUS  - curve does not resemble the declared crop; verifier called
    ATYPICAL   - crop present with deviations; verifier called
    TYPICAL    - within expected ranges
"""

import logging
from datetime import date
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from .numeric import percentile, std_dev, mean, max_growth_rate
from .thresholds import (
    CROP_PATTERN_THRESHOLDS,
    PERENNIAL,
    ANNUAL,
    SEMI_PERENNIAL,
    CycleThresholds,
    PerennialThresholds,
    get_pattern_thresholds,
    get_crop_category,
)
from ..data.timeseries import Observation, valid_sorted, format_date

logger = logging.getLogger(__name__)

TYPICAL = "TYPICAL"
ATYPICAL = "ATYPICAL"
ANOMALOUS = "ANOMALOUS"
NO_CROP = "NO_CROP"

MIN_POINTS = 5


class CropPatternMetrics(NamedTuple):
    peak_ndvi: float = 0.0
    basal_ndvi: float = 0.0
    amplitude: float = 0.0
    mean_ndvi: float = 0.0
    std_ndvi: float = 0.0
    growth_rate: float = 0.0
    cycle_duration_days: Optional[int] = None
    data_points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._asdict())


class CropPatternResult(NamedTuple):
    status: str
    crop_type: str
    category: str
    metrics: CropPatternMetrics
    hypotheses: tuple
    reason: str
    should_short_circuit: bool
    should_call_verifier: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'crop_type': self.crop_type,
            'category': self.category,
            'metrics': self.metrics.to_dict(),
            'hypotheses': list(self.hypotheses),
            'reason': self.reason,
            'should_short_circuit': self.should_short_circuit,
            'should_call_verifier': self.should_call_verifier,
        }


def crop_pattern_from_dict(data: Dict[str, Any]) -> CropPatternResult:
    return CropPatternResult(
        status=data['status'],
        crop_type=data['crop_type'],
        category=data['category'],
        metrics=CropPatternMetrics(**data['metrics']),
        hypotheses=tuple(data.get('hypotheses', ())),
        reason=data.get('reason', ''),
        should_short_circuit=bool(data.get('should_short_circuit')),
        should_call_verifier=bool(data.get('should_call_verifier')),
    )


def calculate_metrics(
    values: Sequence[float],
    dates: Sequence[date],
    sos_date: Optional[date],
    eos_date: Optional[date]
) -> CropPatternMetrics:
    peak = float(max(values))
    basal = percentile(values, 10)

    cycle = None
    if sos_date and eos_date:
        cycle = (eos_date - sos_date).days

    return CropPatternMetrics(
        peak_ndvi=peak,
        basal_ndvi=basal,
        amplitude=peak - basal,
        mean_ndvi=mean(values),
        std_ndvi=std_dev(values),
        growth_rate=max_growth_rate(values, dates),
        cycle_duration_days=cycle,
        data_points=len(values),
    )


# Hypothesis generators

def no_crop_hypotheses(mean_ndvi: float) -> List[str]:
    if mean_ndvi < 0.20:
        return ["Bare soil or cleared area", "Possible urban area or infrastructure"]
    if mean_ndvi < 0.35:
        return ["Possible degraded pasture or fallow", "Soil with residual cover (straw)"]
    return ["Possible established pasture", "Spontaneous vegetation without a productive cycle"]


def anomalous_hypotheses(peak_ndvi: float, crop_type: str) -> List[str]:
    hypotheses = [
        f"Crop other than {crop_type.lower()} (unidentified type)",
        "Total crop failure from drought, frost or disease",
        "Planting failure or extremely uneven emergence",
    ]
    if peak_ndvi > 0.40:
        hypotheses.append("Possible cover crop or green manure")
    return hypotheses


def atypical_hypotheses(metrics: CropPatternMetrics, crop_type: str, cycle_problem: bool) -> List[str]:
    hypotheses = [f"{crop_type} under severe stress (water, nutrient or sanitary)"]
    if cycle_problem:
        hypotheses.append("Very late planting or replanting with a compressed cycle")
        hypotheses.append(f"{crop_type.lower()} variety with an atypical cycle")
    if metrics.amplitude < 0.20:
        hypotheses.append("Low canopy cover, possible stand failure")
    return hypotheses


def _insufficient(crop_type: str, count: int, valid: bool) -> CropPatternResult:
    kind = "valid " if valid else ""
    return CropPatternResult(
        status=ATYPICAL,
        crop_type=crop_type,
        category=get_crop_category(crop_type),
        metrics=CropPatternMetrics(data_points=count),
        hypotheses=(f"Insufficient {kind}data for pattern analysis",),
        reason=f"Only {count} {kind}NDVI points available (minimum: {MIN_POINTS})",
        should_short_circuit=False,
        should_call_verifier=False,
    )


def analyze_crop_pattern(
    ndvi: Sequence[Observation],
    crop_type: str,
    sos_date: Optional[date] = None,
    eos_date: Optional[date] = None
) -> CropPatternResult:
    """
    Classify an NDVI series against the declared crop's expected pattern.

    Args:
        ndvi: NDVI observations (any order, nulls allowed).
        crop_type: Declared crop code (e.g. "SOJA"); may be wrong.
        sos_date: Detected start of season, if any.
        eos_date: Detected end of season, if any.

    Returns:
        CropPatternResult. Never raises; thin data degrades to ATYPICAL.
    """
    if not ndvi or len(ndvi) < MIN_POINTS:
        return _insufficient(crop_type, len(ndvi or ()), valid=False)

    observations = valid_sorted(ndvi)
    if len(observations) < MIN_POINTS:
        return _insufficient(crop_type, len(observations), valid=True)

    values = [o.value for o in observations]
    dates = [o.date for o in observations]
    metrics = calculate_metrics(values, dates, sos_date, eos_date)
    thresholds = get_pattern_thresholds(crop_type)

    logger.info(
        f"[CROP_PATTERN] Analyzing {crop_type} ({thresholds.category}): "
        f"peak={metrics.peak_ndvi:.2f}, amp={metrics.amplitude:.2f}, "
        f"mean={metrics.mean_ndvi:.2f}, std={metrics.std_ndvi:.2f}, points={metrics.data_points}"
    )

    if thresholds.category == PERENNIAL:
        return classify_perennial(metrics, thresholds, crop_type)
    return classify_annual(metrics, thresholds, crop_type)


def classify_annual(metrics: CropPatternMetrics, t: CycleThresholds, crop_type: str) -> CropPatternResult:
    """Bell-curve rules shared by annual and semi-perennial crops."""
    category = t.category

    if metrics.peak_ndvi < t.no_crop_peak and metrics.amplitude < t.no_crop_amplitude:
        return CropPatternResult(
            status=NO_CROP,
            crop_type=crop_type,
            category=category,
            metrics=metrics,
            hypotheses=tuple(no_crop_hypotheses(metrics.mean_ndvi)),
            reason=(
                f"Peak NDVI ({metrics.peak_ndvi:.2f}) below crop detection minimum ({t.no_crop_peak}) "
                f"and amplitude ({metrics.amplitude:.2f}) insufficient (< {t.no_crop_amplitude})"
            ),
            should_short_circuit=True,
            should_call_verifier=False,
        )

    cycle = metrics.cycle_duration_days
    has_cycle = (
        cycle is not None
        and t.min_cycle_days * 0.7 <= cycle <= t.max_cycle_days * 1.3
    )

    if metrics.peak_ndvi < t.anomalous_peak or (not has_cycle and metrics.amplitude < t.expected_amplitude * 0.6):
        return CropPatternResult(
            status=ANOMALOUS,
            crop_type=crop_type,
            category=category,
            metrics=metrics,
            hypotheses=tuple(anomalous_hypotheses(metrics.peak_ndvi, crop_type)),
            reason=(
                f"NDVI curve does not resemble {t.label}: peak {metrics.peak_ndvi:.2f} "
                f"(expected >= {t.anomalous_peak}), cycle {'detected' if has_cycle else 'not detected'}"
            ),
            should_short_circuit=False,
            should_call_verifier=True,
        )

    low_peak = metrics.peak_ndvi < t.peak_min_ndvi
    cycle_problem = cycle is not None and (cycle < t.min_cycle_days or cycle > t.max_cycle_days)
    no_cycle = cycle is None and category in (ANNUAL, SEMI_PERENNIAL)
    low_amplitude = metrics.amplitude < t.expected_amplitude * 0.85

    if low_peak or cycle_problem or no_cycle or low_amplitude:
        reasons = []
        if low_peak:
            reasons.append(f"peak {metrics.peak_ndvi:.2f} (expected >= {t.peak_min_ndvi})")
        if cycle_problem:
            reasons.append(f"cycle {cycle}d (expected {t.min_cycle_days}-{t.max_cycle_days}d)")
        if no_cycle:
            reasons.append("SOS/EOS not detected (undefined cycle)")
        if low_amplitude:
            reasons.append(f"amplitude {metrics.amplitude:.2f} (expected >= {t.expected_amplitude * 0.85:.2f})")

        return CropPatternResult(
            status=ATYPICAL,
            crop_type=crop_type,
            category=category,
            metrics=metrics,
            hypotheses=tuple(atypical_hypotheses(metrics, crop_type, cycle_problem or no_cycle)),
            reason=f"{t.label} with deviations: {'; '.join(reasons)}",
            should_short_circuit=False,
            should_call_verifier=True,
        )

    return CropPatternResult(
        status=TYPICAL,
        crop_type=crop_type,
        category=category,
        metrics=metrics,
        hypotheses=(),
        reason=f"Typical NDVI pattern for {t.label}: peak {metrics.peak_ndvi:.2f}, amplitude {metrics.amplitude:.2f}",
        should_short_circuit=False,
        should_call_verifier=False,
    )


def classify_perennial(metrics: CropPatternMetrics, t: PerennialThresholds, crop_type: str) -> CropPatternResult:
    """Stable-baseline rules for perennial crops (no annual SOS/EOS cycle)."""
    if metrics.mean_ndvi < t.no_crop_baseline and metrics.std_ndvi < 0.05:
        return CropPatternResult(
            status=NO_CROP,
            crop_type=crop_type,
            category=PERENNIAL,
            metrics=metrics,
            hypotheses=tuple(no_crop_hypotheses(metrics.mean_ndvi)),
            reason=(
                f"Mean NDVI ({metrics.mean_ndvi:.2f}) consistently below the {t.label} "
                f"baseline ({t.no_crop_baseline})"
            ),
            should_short_circuit=True,
            should_call_verifier=False,
        )

    if metrics.mean_ndvi < t.baseline_min_ndvi:
        return CropPatternResult(
            status=ANOMALOUS,
            crop_type=crop_type,
            category=PERENNIAL,
            metrics=metrics,
            hypotheses=(
                f"{t.label} abandoned or being renewed",
                "Recent drastic pruning",
                "Area in transition (replanting)",
            ),
            reason=(
                f"Mean NDVI ({metrics.mean_ndvi:.2f}) below the expected minimum for "
                f"{t.label} ({t.baseline_min_ndvi})"
            ),
            should_short_circuit=False,
            should_call_verifier=True,
        )

    if metrics.amplitude > t.anomalous_drop:
        return CropPatternResult(
            status=ATYPICAL,
            crop_type=crop_type,
            category=PERENNIAL,
            metrics=metrics,
            hypotheses=(
                "Possible frost, severe drought or disease",
                "Heavy defoliation",
                "Extreme weather event",
            ),
            reason=(
                f"NDVI variation ({metrics.amplitude:.2f}) above normal for {t.label} "
                f"(expected < {t.anomalous_drop})"
            ),
            should_short_circuit=False,
            should_call_verifier=True,
        )

    if metrics.mean_ndvi <= t.baseline_max_ndvi + 0.1:
        reason = (
            f"Typical NDVI pattern for {t.label}: mean {metrics.mean_ndvi:.2f}, "
            f"seasonal variation {metrics.std_ndvi:.2f}"
        )
    else:
        reason = f"Mean NDVI ({metrics.mean_ndvi:.2f}) above expected for {t.label}, very healthy stand"

    return CropPatternResult(
        status=TYPICAL,
        crop_type=crop_type,
        category=PERENNIAL,
        metrics=metrics,
        hypotheses=(),
        reason=reason,
        should_short_circuit=False,
        should_call_verifier=False,
    )


def supported_crop_types() -> List[Dict[str, str]]:
    """Crop codes the classifier knows, with label and category."""
    return [
        {'key': key, 'label': t.label, 'category': t.category}
        for key, t in CROP_PATTERN_THRESHOLDS.items()
    ]


def crop_thresholds_for_prompt(crop_type: str) -> Dict[str, str]:
    """Human-readable expectations handed to the external crop verifier."""
    t = get_pattern_thresholds(crop_type)
    if t.category == PERENNIAL:
        description = (
            f"Stable NDVI {t.baseline_min_ndvi}-{t.baseline_max_ndvi}, smooth seasonal variation "
            f"(amplitude < {t.seasonal_amplitude}), perennial shrubs without an annual SOS/EOS cycle"
        )
    else:
        description = (
            f"Peak NDVI >= {t.peak_min_ndvi}, cycle {t.min_cycle_days}-{t.max_cycle_days} days, "
            f"amplitude >= {t.expected_amplitude}, bell-shaped curve with distinct SOS/peak/EOS"
        )
    return {'category': t.category, 'label': t.label, 'description': description}
