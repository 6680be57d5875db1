"""
EOS Fusion Engine.

Reconciles the NDVI-based harvest projection, the thermal (GDD) projection,
water-stress acceleration and radar fusion quality into one harvest date
with a confidence, a method tag and an auditable trail of factors and
warnings.

The decision is an ordered list of rules. Each rule has a guard and a
producer; the first rule whose guard holds decides the date.
"""

import math
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from ..data.timeseries import parse_date, format_date

logger = logging.getLogger(__name__)

# NDVI thresholds
VEGETATIVE_MIN = 0.7
SENESCENCE_START = 0.65
MATURITY_NDVI = 0.5
DECLINE_RATE_FAST = 0.5      # %/point

# GDD progress thresholds (fraction of required)
GDD_REPRODUCTIVE_START = 0.5
GDD_GRAIN_FILLING_START = 0.7
GDD_SENESCENCE_START = 0.9
GDD_MATURITY = 1.0

# Stress accelerates senescence
WATER_STRESS_ADJUSTMENT_DAYS = {
    'NONE': 0,
    'LOW': 0,
    'MEDIUM': -2,
    'HIGH': -4,
    'CRITICAL': -7,
}

GDD_CONFIDENCE_MAP = {
    'HIGH': 90,
    'MEDIUM': 70,
    'LOW': 50,
}
DEFAULT_GDD_CONFIDENCE = 70

CONVERGENCE_DAYS = 7

# Methods
NDVI = "NDVI"
GDD = "GDD"
FUSION = "FUSION"
NDVI_ADJUSTED = "NDVI_ADJUSTED"
GDD_ADJUSTED = "GDD_ADJUSTED"

# Stages
VEGETATIVE = "VEGETATIVE"
REPRODUCTIVE = "REPRODUCTIVE"
GRAIN_FILLING = "GRAIN_FILLING"
SENESCENCE = "SENESCENCE"
MATURITY = "MATURITY"


class FusionMetrics(NamedTuple):
    """Quality of the optical+radar NDVI series fed into the fusion."""
    gaps_filled: int = 0
    max_gap_days: int = 0
    radar_contribution: float = 0.0
    continuity_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._asdict())


class EosFusionInput(NamedTuple):
    eos_ndvi: Optional[date]
    ndvi_confidence: float
    current_ndvi: float
    peak_ndvi: float
    ndvi_decline_rate: float
    eos_gdd: Optional[date]
    gdd_confidence: str
    gdd_accumulated: float
    gdd_required: float
    planting_date: Optional[date] = None
    crop_type: str = "SOJA"
    water_stress_level: Optional[str] = None
    stress_days: Optional[int] = None
    yield_impact: Optional[float] = None
    fusion_metrics: Optional[FusionMetrics] = None


class Projection(NamedTuple):
    date: Optional[date]
    confidence: float
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {'date': format_date(self.date), 'confidence': self.confidence, 'status': self.status}


class Projections(NamedTuple):
    ndvi: Projection
    gdd: Projection
    water_adjustment: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ndvi': self.ndvi.to_dict(),
            'gdd': self.gdd.to_dict(),
            'water_adjustment': self.water_adjustment,
        }


class EosFusionResult(NamedTuple):
    eos: date
    confidence: int
    method: str
    passed: bool
    phenological_stage: str
    explanation: str
    factors: tuple
    warnings: tuple
    projections: Projections

    def to_dict(self) -> Dict[str, Any]:
        return {
            'eos': format_date(self.eos),
            'confidence': self.confidence,
            'method': self.method,
            'passed': self.passed,
            'phenological_stage': self.phenological_stage,
            'explanation': self.explanation,
            'factors': list(self.factors),
            'warnings': list(self.warnings),
            'projections': self.projections.to_dict(),
        }


def _projection_from_dict(data: Dict[str, Any]) -> Projection:
    raw = data.get('date')
    return Projection(parse_date(raw) if raw else None, data['confidence'], data['status'])


def eos_fusion_from_dict(data: Dict[str, Any]) -> EosFusionResult:
    p = data['projections']
    return EosFusionResult(
        eos=parse_date(data['eos']),
        confidence=int(data['confidence']),
        method=data['method'],
        passed=bool(data['passed']),
        phenological_stage=data['phenological_stage'],
        explanation=data['explanation'],
        factors=tuple(data.get('factors', ())),
        warnings=tuple(data.get('warnings', ())),
        projections=Projections(
            ndvi=_projection_from_dict(p['ndvi']),
            gdd=_projection_from_dict(p['gdd']),
            water_adjustment=int(p['water_adjustment']),
        ),
    )


class Signals(NamedTuple):
    """Derived indicators every rule reads."""
    input: EosFusionInput
    today: date
    gdd_progress: float
    water_adjustment: int
    gdd_confidence: int


class RuleOutcome(NamedTuple):
    eos: date
    confidence: float
    method: str
    explanation: str
    factors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class EosRule(NamedTuple):
    name: str
    guard: Callable[[Signals], bool]
    produce: Callable[[Signals], RuleOutcome]


def _shift(d: date, days: int) -> date:
    return d + timedelta(days=days)


def _weighted_date(s: Signals) -> Tuple[date, float, float]:
    """Confidence-weighted mean of the NDVI and GDD dates."""
    ndvi_w = s.input.ndvi_confidence / 100
    gdd_w = s.gdd_confidence / 100
    total = ndvi_w + gdd_w
    if total <= 0:
        ndvi_w = gdd_w = total = 1.0
    ordinal = (s.input.eos_ndvi.toordinal() * ndvi_w + s.input.eos_gdd.toordinal() * gdd_w) / total
    return date.fromordinal(int(round(ordinal))), ndvi_w, gdd_w


def _fmt(d: Optional[date]) -> str:
    return d.strftime('%d/%m/%y') if d else "N/A"


# Rule 1: maturity confirmed

def _maturity_guard(s: Signals) -> bool:
    i = s.input
    return (
        s.gdd_progress >= GDD_MATURITY
        and i.current_ndvi < SENESCENCE_START
        and i.ndvi_decline_rate > DECLINE_RATE_FAST
    )


def _maturity_produce(s: Signals) -> RuleOutcome:
    i = s.input
    if i.eos_ndvi and i.eos_gdd:
        base, _, _ = _weighted_date(s)
        eos = _shift(base, s.water_adjustment)
    elif i.eos_ndvi:
        eos = _shift(i.eos_ndvi, s.water_adjustment)
    elif i.eos_gdd:
        eos = _shift(i.eos_gdd, s.water_adjustment)
    else:
        eos = s.today

    warnings = ()
    if eos < s.today:
        warnings = (f"Maturity already reached on {_fmt(eos)}, harvest should be immediate",)

    return RuleOutcome(
        eos=eos,
        confidence=max(i.ndvi_confidence, s.gdd_confidence),
        method=FUSION,
        explanation="Physiological maturity reached (GDD 100%), active senescence confirmed by NDVI",
        factors=(
            "GDD: 100% - physiological maturity",
            f"NDVI: {i.current_ndvi * 100:.0f}% - declining",
            f"Decline rate: {i.ndvi_decline_rate:.2f}%/pt",
        ),
        warnings=warnings,
    )


# Rule 2: NDVI projection is stale but the canopy is still green

def _stale_ndvi_guard(s: Signals) -> bool:
    i = s.input
    return i.eos_ndvi is not None and i.eos_ndvi < s.today and i.current_ndvi > MATURITY_NDVI


def _stale_ndvi_produce(s: Signals) -> RuleOutcome:
    i = s.input
    if i.eos_gdd and i.eos_gdd > s.today:
        return RuleOutcome(
            eos=_shift(i.eos_gdd, s.water_adjustment),
            confidence=s.gdd_confidence,
            method=GDD_ADJUSTED if s.water_adjustment != 0 else GDD,
            explanation=(
                "Historical NDVI projection has passed but current NDVI shows a green canopy. "
                "Using thermal accumulation (GDD)."
            ),
            factors=(
                f"Current NDVI: {i.current_ndvi * 100:.0f}% (still high)",
                f"GDD: {s.gdd_progress * 100:.0f}% complete",
            ),
            warnings=(f"NDVI EOS ({format_date(i.eos_ndvi)}) has passed - adjusted to GDD",),
        )

    days_remaining = math.ceil((1 - s.gdd_progress) * 10)
    return RuleOutcome(
        eos=_shift(s.today, days_remaining),
        confidence=50,
        method=GDD,
        explanation="Projection based on remaining GDD. Limited data.",
        warnings=(
            f"NDVI EOS ({format_date(i.eos_ndvi)}) has passed with a green canopy",
            "Projection with high uncertainty",
        ),
    )


# Rule 3: both projections agree

def _converging_guard(s: Signals) -> bool:
    i = s.input
    return (
        i.eos_ndvi is not None
        and i.eos_gdd is not None
        and abs((i.eos_ndvi - i.eos_gdd).days) < CONVERGENCE_DAYS
    )


def _converging_produce(s: Signals) -> RuleOutcome:
    i = s.input
    base, ndvi_w, gdd_w = _weighted_date(s)
    confidence = round((i.ndvi_confidence * ndvi_w + s.gdd_confidence * gdd_w) / (ndvi_w + gdd_w))
    return RuleOutcome(
        eos=_shift(base, s.water_adjustment),
        confidence=confidence,
        method=FUSION,
        explanation="NDVI and GDD projections converge. Using confidence-weighted average.",
        factors=(
            f"NDVI: {_fmt(i.eos_ndvi)} ({i.ndvi_confidence:g}%)",
            f"GDD: {_fmt(i.eos_gdd)} ({s.gdd_confidence}%)",
        ),
    )


# Rule 4: NDVI only

def _ndvi_guard(s: Signals) -> bool:
    return s.input.eos_ndvi is not None


def _ndvi_produce(s: Signals) -> RuleOutcome:
    i = s.input
    return RuleOutcome(
        eos=_shift(i.eos_ndvi, s.water_adjustment),
        confidence=i.ndvi_confidence,
        method=NDVI_ADJUSTED if s.water_adjustment != 0 else NDVI,
        explanation="Projection based on the historical NDVI curve.",
        factors=(f"Historical correlation: {i.ndvi_confidence:g}%",),
    )


# Rule 5: GDD only

def _gdd_guard(s: Signals) -> bool:
    return s.input.eos_gdd is not None


def _gdd_produce(s: Signals) -> RuleOutcome:
    """
    A GDD date in the past while NDVI is still high and growing (or near
    peak) is treated as derived from a wrong planting date: it is discarded
    for a conservative 45/60-day guess.
    """
    i = s.input
    eos = _shift(i.eos_gdd, s.water_adjustment)
    in_past = eos < s.today
    still_high = i.current_ndvi >= VEGETATIVE_MIN
    still_growing = i.ndvi_decline_rate <= 0
    near_peak = i.peak_ndvi > 0 and (i.current_ndvi / i.peak_ndvi) > 0.90

    if in_past and still_high and (still_growing or near_peak):
        days = 60 if still_growing else 45
        trend = "declining" if i.ndvi_decline_rate > 0 else "growing"
        return RuleOutcome(
            eos=_shift(s.today, days),
            confidence=35,
            method=GDD_ADJUSTED,
            explanation=(
                "GDD indicates maturity in the past, but NDVI shows active growth. "
                "GDD projection discarded: planting date possibly wrong or cycle differs."
            ),
            factors=(
                f"GDD: {s.gdd_progress * 100:.0f}% ({_fmt(i.eos_gdd)}) - INCONSISTENT",
                f"Current NDVI: {i.current_ndvi * 100:.0f}% (peak: {i.peak_ndvi * 100:.0f}%) - green canopy",
                f"NDVI trend: {trend} ({i.ndvi_decline_rate:.2f}%/pt)",
                f"Conservative estimate: ~{days} days from today",
            ),
            warnings=(
                f"GDD EOS ({format_date(i.eos_gdd)}) discarded: NDVI at "
                f"{i.current_ndvi * 100:.0f}% contradicts maturity",
                "Likely: missing or wrong planting date, or an undetected second cycle",
            ),
        )

    confidence = s.gdd_confidence
    warnings = ()
    if in_past:
        confidence = min(confidence, 60)
        warnings = (f"GDD EOS ({format_date(i.eos_gdd)}) is in the past - confidence reduced",)

    return RuleOutcome(
        eos=eos,
        confidence=confidence,
        method=GDD_ADJUSTED if s.water_adjustment != 0 else GDD,
        explanation="Projection based on thermal accumulation (GDD).",
        factors=(f"GDD progress: {s.gdd_progress * 100:.0f}%",),
        warnings=warnings,
    )


# Rule 6: nothing to go on

def _no_data_produce(s: Signals) -> RuleOutcome:
    return RuleOutcome(
        eos=_shift(s.today, 30),
        confidence=30,
        method=NDVI,
        explanation="Insufficient data for an accurate projection.",
        warnings=("Estimated projection - limited data",),
    )


EOS_RULES: Tuple[EosRule, ...] = (
    EosRule("maturity_confirmed", _maturity_guard, _maturity_produce),
    EosRule("stale_ndvi_green_canopy", _stale_ndvi_guard, _stale_ndvi_produce),
    EosRule("converging", _converging_guard, _converging_produce),
    EosRule("ndvi_only", _ndvi_guard, _ndvi_produce),
    EosRule("gdd_only", _gdd_guard, _gdd_produce),
    EosRule("no_data", lambda s: True, _no_data_produce),
)


def select_rule(signals: Signals) -> EosRule:
    for rule in EOS_RULES:
        if rule.guard(signals):
            return rule
    return EOS_RULES[-1]


def determine_phenological_stage(current_ndvi: float, gdd_progress: float, ndvi_decline: float) -> str:
    """Stage from NDVI/GDD agreement; NDVI wins when they conflict."""
    if current_ndvi < MATURITY_NDVI:
        return MATURITY

    if gdd_progress > 1.1:
        # GDD overshoot with a green, flat canopy points at a wrong planting date
        if current_ndvi >= VEGETATIVE_MIN and ndvi_decline < 0.05:
            return VEGETATIVE
        if current_ndvi >= SENESCENCE_START:
            return REPRODUCTIVE
        return MATURITY

    if ndvi_decline > 0.15 and gdd_progress > GDD_GRAIN_FILLING_START:
        return SENESCENCE
    if gdd_progress > GDD_SENESCENCE_START and ndvi_decline > 0.05:
        return SENESCENCE
    if gdd_progress > GDD_GRAIN_FILLING_START:
        return GRAIN_FILLING
    if gdd_progress > GDD_REPRODUCTIVE_START:
        return REPRODUCTIVE
    return VEGETATIVE


def calculate_fusion_confidence_boost(
    base_confidence: float,
    metrics: Optional[FusionMetrics],
    stage: str
) -> Tuple[float, List[str]]:
    if metrics is None:
        return base_confidence, []

    boost = 0
    details = []

    if metrics.max_gap_days <= 5:
        boost += 10
        details.append("Continuous series (max gap 5d): +10%")
    elif metrics.max_gap_days <= 10:
        boost += 5
        details.append("Moderately continuous series: +5%")
    elif metrics.gaps_filled > 0:
        boost += 8
        details.append(f"{metrics.gaps_filled} gap(s) filled by radar: +8%")

    if metrics.radar_contribution > 0:
        radar_bonus = min(5, metrics.radar_contribution * 10)
        critical = stage in (SENESCENCE, MATURITY)
        final_bonus = round(radar_bonus * (1.5 if critical else 1.0))
        if final_bonus > 0:
            boost += final_bonus
            note = " (critical stage)" if critical else ""
            details.append(f"Radar contribution: +{final_bonus}%{note}")

    return min(100, base_confidence + boost), details


def projection_status(eos: Optional[date], today: date) -> str:
    if eos is None:
        return "Unavailable"
    diff = (eos - today).days
    if diff < 0:
        return f"Passed ({abs(diff)}d ago)"
    if diff == 0:
        return "Today"
    return f"In {diff}d"


def gdd_projection_status(gdd_progress: float, eos: Optional[date], today: date) -> str:
    if gdd_progress >= GDD_MATURITY:
        return f"Maturity reached ({gdd_progress * 100:.0f}%)"
    if eos is None:
        return "Calculating..."
    diff = (eos - today).days
    if diff < 0:
        return "Should have matured"
    if diff == 0:
        return "Maturity today"
    return f"In {diff}d ({gdd_progress * 100:.0f}%)"


def calculate_fused_eos(fusion_input: EosFusionInput, today: Optional[date] = None) -> EosFusionResult:
    """
    Fuse NDVI, GDD, water stress and radar quality into one harvest date.

    Args:
        fusion_input: Projections and indicators for one field.
        today: Reference day; defaults to the current date.

    Returns:
        EosFusionResult with confidence in [0, 100] and passed == (eos < today).
    """
    today = today or date.today()
    i = fusion_input
    factors: List[str] = []
    warnings: List[str] = []

    gdd_progress = i.gdd_accumulated / i.gdd_required if i.gdd_required > 0 else 0.0
    ndvi_decline = (i.peak_ndvi - i.current_ndvi) / i.peak_ndvi if i.peak_ndvi > 0 else 0.0
    stage = determine_phenological_stage(i.current_ndvi, gdd_progress, ndvi_decline)

    water_adjustment = WATER_STRESS_ADJUSTMENT_DAYS.get(i.water_stress_level or 'NONE', 0)
    if water_adjustment != 0:
        factors.append(f"Water adjustment: {water_adjustment:+d} days")

    gdd_confidence = GDD_CONFIDENCE_MAP.get(i.gdd_confidence, DEFAULT_GDD_CONFIDENCE)
    signals = Signals(i, today, gdd_progress, water_adjustment, gdd_confidence)

    rule = select_rule(signals)
    outcome = rule.produce(signals)
    logger.debug(f"[EOS_FUSION] Rule '{rule.name}' -> {outcome.eos} ({outcome.method})")

    factors.extend(outcome.factors)
    warnings.extend(outcome.warnings)

    if i.water_stress_level == 'CRITICAL':
        warnings.append(
            f"Critical water stress: {i.stress_days} days, "
            f"estimated yield impact {i.yield_impact}%"
        )
        factors.append("Stress accelerates senescence")
    elif i.water_stress_level == 'HIGH':
        warnings.append(f"High water stress: {i.stress_days} stress days")

    confidence, boost_details = calculate_fusion_confidence_boost(outcome.confidence, i.fusion_metrics, stage)
    if boost_details:
        factors.append("Sentinel-1 radar:")
        factors.extend(f"  - {d}" for d in boost_details)

    confidence = int(round(max(0.0, min(100.0, confidence))))

    return EosFusionResult(
        eos=outcome.eos,
        confidence=confidence,
        method=outcome.method,
        passed=outcome.eos < today,
        phenological_stage=stage,
        explanation=outcome.explanation,
        factors=tuple(factors),
        warnings=tuple(warnings),
        projections=Projections(
            ndvi=Projection(i.eos_ndvi, i.ndvi_confidence, projection_status(i.eos_ndvi, today)),
            gdd=Projection(i.eos_gdd, gdd_confidence, gdd_projection_status(gdd_progress, i.eos_gdd, today)),
            water_adjustment=water_adjustment,
        ),
    )


def confidence_label(confidence: float) -> str:
    if confidence >= 75:
        return "HIGH"
    if confidence >= 50:
        return "MEDIUM"
    return "LOW"


METHOD_LABELS = {
    NDVI: "Historical NDVI",
    GDD: "Thermal accumulation",
    FUSION: "NDVI + GDD",
    NDVI_ADJUSTED: "NDVI + water adjustment",
    GDD_ADJUSTED: "GDD + water adjustment",
}

STAGE_LABELS = {
    VEGETATIVE: "Vegetative",
    REPRODUCTIVE: "Reproductive",
    GRAIN_FILLING: "Grain filling",
    SENESCENCE: "Senescence",
    MATURITY: "Maturity",
}


def method_label(method: str) -> str:
    return METHOD_LABELS.get(method, method)


def stage_label(stage: str) -> str:
    return STAGE_LABELS.get(stage, stage)
