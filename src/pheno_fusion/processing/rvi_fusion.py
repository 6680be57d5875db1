"""
Classic RVI gap filling.

Used when no per-field calibration can fill the optical gaps. Radar
samples inside a gap are converted to the dual-pol Radar Vegetation Index
and mapped to NDVI through fixed per-crop regressions (NDVI = a * RVI + b).
"""

import logging
import math
from typing import NamedTuple, Sequence

from ..analysis.eos_fusion import FusionMetrics
from ..data.timeseries import Observation, RadarObservation, max_gap_days
from .sar_fusion import OPTICAL, FusedPoint, FusionResult, find_gaps, is_reliable, optical_passthrough

logger = logging.getLogger(__name__)

RADAR = "RADAR"
RVI = "RVI"
LINEAR_REGRESSION = "LINEAR_REGRESSION"


class RviCoefficients(NamedTuple):
    a: float
    b: float
    r2: float


FIXED_COEFFICIENTS = {
    "SOJA": RviCoefficients(1.15, -0.15, 0.78),
    "MILHO": RviCoefficients(1.10, -0.12, 0.75),
    "ALGODAO": RviCoefficients(1.20, -0.18, 0.72),
}
DEFAULT_COEFFICIENTS = RviCoefficients(1.12, -0.14, 0.70)


def calculate_rvi(vh_db: float, vv_db: float) -> float:
    """
    Dual-pol RVI = q(q+3) / (q+1)^2 with q = VH/VV in linear power.

    Clamped to [0, 1]; a vanishing VV return gives 1.
    """
    vh_lin = math.pow(10, vh_db / 10)
    vv_lin = math.pow(10, vv_db / 10)
    if vv_lin < 1e-10:
        return 1.0
    q = vh_lin / vv_lin
    rvi = q * (q + 3) / ((q + 1) ** 2)
    return max(0.0, min(1.0, rvi))


def coefficients_for(crop_type: str) -> RviCoefficients:
    return FIXED_COEFFICIENTS.get((crop_type or "").upper(), DEFAULT_COEFFICIENTS)


def rvi_to_ndvi(rvi: float, crop_type: str) -> float:
    coeffs = coefficients_for(crop_type)
    return max(-1.0, min(1.0, coeffs.a * rvi + coeffs.b))


def fuse_rvi_ndvi(
    optical: Sequence[Observation],
    sar: Sequence[RadarObservation],
    crop_type: str
) -> FusionResult:
    """
    Fill optical gaps longer than 10 days with RVI-derived NDVI.

    Returns:
        FusionResult with `calibration_used` False. Without gaps or radar
        samples inside them, the optical series is passed through.
    """
    reliable = sorted((o for o in optical if is_reliable(o)), key=lambda o: o.date)
    gaps = find_gaps(reliable)
    if not gaps or not sar:
        return optical_passthrough(optical)

    coeffs = coefficients_for(crop_type)
    optical_dates = {o.date for o in optical}
    in_gaps = [
        s for s in sorted(sar, key=lambda r: r.date)
        if s.date not in optical_dates and any(start < s.date < end for start, end in gaps)
    ]

    radar_points = [
        FusedPoint(s.date, rvi_to_ndvi(calculate_rvi(s.vh, s.vv), crop_type), RADAR, 0.7 * coeffs.r2)
        for s in in_gaps
    ]
    points = [FusedPoint(o.date, o.value, OPTICAL, o.quality) for o in reliable] + radar_points
    points.sort(key=lambda p: p.date)

    logger.info(f"[RVI_FUSION] {len(gaps)} gaps, {len(radar_points)} filled with fixed {crop_type} coefficients")

    return FusionResult(
        points=tuple(points),
        gaps_filled=len(radar_points),
        optical_points=len(reliable),
        sar_fused_points=len(radar_points),
        fusion_method=LINEAR_REGRESSION if radar_points else "NONE",
        feature_used=RVI,
        model_r2=coeffs.r2,
        model_rmse=0.0,
        calibration_used=False,
    )


def build_rvi_fusion_metrics(result: FusionResult) -> FusionMetrics:
    total = len(result.points)
    return FusionMetrics(
        gaps_filled=result.gaps_filled,
        max_gap_days=max_gap_days(p.date for p in result.points),
        radar_contribution=result.sar_fused_points / total if total else 0.0,
        continuity_score=0.8 if result.gaps_filled > 0 else 1.0,
    )
