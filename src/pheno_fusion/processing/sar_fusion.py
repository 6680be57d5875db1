"""
SAR -> NDVI adaptive fusion.

Fills optical gaps longer than 10 days with NDVI predicted from Sentinel-1
backscatter through the field's calibration model. Any missing or thin
input degrades to an optical-only passthrough; fusion never raises.
"""

import logging
from datetime import date
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from ..analysis.eos_fusion import FusionMetrics
from ..data.timeseries import Observation, RadarObservation, max_gap_days, format_date, parse_date
from ..errors import CalibrationError, PersistenceError
from .calibration import CalibrationModel, CalibrationStore, train_local_calibration
from . import models

logger = logging.getLogger(__name__)

OPTICAL = "OPTICAL"
SAR_FUSED = "SAR_FUSED"

MIN_SAR_POINTS = 5
MAX_CLOUD_COVER = 50
GAP_DAYS = 10


class FusedPoint(NamedTuple):
    date: date
    ndvi: float
    source: str
    quality: float
    uncertainty: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': format_date(self.date),
            'ndvi': self.ndvi,
            'source': self.source,
            'quality': self.quality,
            'uncertainty': self.uncertainty,
        }


class FusionResult(NamedTuple):
    points: tuple
    gaps_filled: int
    optical_points: int
    sar_fused_points: int
    fusion_method: str
    feature_used: str
    model_r2: float
    model_rmse: float
    calibration_used: bool

    @property
    def sar_ratio(self) -> float:
        total = self.optical_points + self.sar_fused_points
        return self.sar_fused_points / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = self._asdict()
        data['points'] = [p.to_dict() for p in self.points]
        return data


def fusion_from_dict(data: Dict[str, Any]) -> FusionResult:
    points = tuple(
        FusedPoint(parse_date(p['date']), p['ndvi'], p['source'], p['quality'], p.get('uncertainty'))
        for p in data.get('points', ())
    )
    return FusionResult(**{**data, 'points': points})


class HarvestConfidence(NamedTuple):
    confidence: float
    source: str
    note: str


def _optical_point(obs: Observation) -> FusedPoint:
    return FusedPoint(obs.date, obs.value, OPTICAL, obs.quality)


def optical_passthrough(optical: Sequence[Observation]) -> FusionResult:
    points = tuple(_optical_point(o) for o in optical if o.value is not None)
    return FusionResult(
        points=points,
        gaps_filled=0,
        optical_points=len(points),
        sar_fused_points=0,
        fusion_method="NONE",
        feature_used="NONE",
        model_r2=0.0,
        model_rmse=0.0,
        calibration_used=False,
    )


def find_gaps(reliable: Sequence[Observation], gap_days: int = GAP_DAYS) -> List[Tuple[date, date]]:
    """(start, end) of consecutive reliable optical samples more than gap_days apart."""
    gaps = []
    for prev, curr in zip(reliable, reliable[1:]):
        if (curr.date - prev.date).days > gap_days:
            gaps.append((prev.date, curr.date))
    return gaps


def is_reliable(obs: Observation) -> bool:
    return obs.value is not None and (not obs.cloud_cover or obs.cloud_cover < MAX_CLOUD_COVER)


def _load_or_train(
    field_id: str,
    optical: Sequence[Observation],
    sar: Sequence[RadarObservation],
    store: CalibrationStore,
    force_retrain: bool
) -> Optional[CalibrationModel]:
    calibration = store.get(field_id)
    if calibration is None or force_retrain:
        trained = train_local_calibration(field_id, sar, optical)
        if trained is not None:
            try:
                store.save(trained)
                logger.info(f"[SAR_FUSION] Calibration saved for field {field_id}")
            except PersistenceError as e:
                logger.warning(f"[SAR_FUSION] Could not save calibration for field {field_id}: {e}")
            calibration = trained
        elif force_retrain and calibration is not None:
            logger.warning(f"[SAR_FUSION] Retrain failed for field {field_id}, keeping stored model")
    return calibration


def fuse_sar_ndvi(
    field_id: str,
    optical: Sequence[Observation],
    sar: Sequence[RadarObservation],
    store: CalibrationStore,
    force_retrain: bool = False
) -> FusionResult:
    """
    Fill optical gaps with radar-predicted NDVI.

    Args:
        field_id: Key of the field's calibration in `store`.
        optical: NDVI observations.
        sar: Sentinel-1 VV/VH observations.
        store: Calibration store; a newly trained model is saved into it.
        force_retrain: Retrain even when a model is stored.

    Returns:
        FusionResult sorted by date. SAR points are only added strictly
        inside a >10 day gap and never on a date with an optical sample.
    """
    logger.info(f"[SAR_FUSION] Starting fusion for field {field_id}")
    logger.info(f"[SAR_FUSION] Optical: {len(optical)}, SAR: {len(sar)}")

    default = optical_passthrough(optical)

    if not sar or len(sar) < MIN_SAR_POINTS:
        logger.info("[SAR_FUSION] Not enough SAR data, returning optical only")
        return default

    calibration = _load_or_train(field_id, optical, sar, store, force_retrain)
    if calibration is None:
        logger.info("[SAR_FUSION] No calibration available, returning optical only")
        return default

    reliable = sorted((o for o in optical if is_reliable(o)), key=lambda o: o.date)
    gaps = find_gaps(reliable)

    if not gaps:
        logger.info("[SAR_FUSION] No gaps found, returning optical only")
        return default._replace(calibration_used=True, model_r2=calibration.r2)

    logger.info(f"[SAR_FUSION] Found {len(gaps)} gaps to fill")

    try:
        predictor = models.build_predictor(calibration.model_type, calibration.params)
    except (CalibrationError, KeyError, ValueError) as e:
        logger.warning(f"[SAR_FUSION] Stored calibration for field {field_id} unusable: {e}")
        return default

    optical_dates = {o.date for o in optical}
    points = [_optical_point(o) for o in reliable]
    taken = set(optical_dates)
    quality = min(0.9, 0.5 + calibration.r2 * 0.4)
    fused = 0

    for s in sorted(sar, key=lambda r: r.date):
        if s.date in taken:
            continue
        if not any(start < s.date < end for start, end in gaps):
            continue

        try:
            prediction = predictor(calibration.features(s))
        except (CalibrationError, ValueError, IndexError, TypeError) as e:
            logger.warning(f"[SAR_FUSION] Prediction failed for field {field_id}: {e}; returning optical only")
            return default
        points.append(FusedPoint(
            date=s.date,
            ndvi=max(0.0, min(1.0, prediction.mean)),
            source=SAR_FUSED,
            quality=quality,
            uncertainty=prediction.std,
        ))
        taken.add(s.date)
        fused += 1

    points.sort(key=lambda p: p.date)
    logger.info(f"[SAR_FUSION] Fusion complete: {fused} gaps filled")

    return FusionResult(
        points=tuple(points),
        gaps_filled=fused,
        optical_points=len(reliable),
        sar_fused_points=fused,
        fusion_method=models.resolve_model_type(calibration.model_type, calibration.params),
        feature_used=calibration.feature_type,
        model_r2=calibration.r2,
        model_rmse=calibration.rmse,
        calibration_used=True,
    )


def calculate_harvest_confidence(result: FusionResult, base_confidence: float) -> HarvestConfidence:
    """Scale a harvest confidence by how much of the series came from radar."""
    ratio = result.sar_ratio
    if ratio == 0:
        return HarvestConfidence(base_confidence, "OPTICAL", "Based on optical data only")
    if ratio < 0.3:
        adjustment = 0.95 + result.model_r2 * 0.05
        return HarvestConfidence(
            base_confidence * adjustment, "MIXED",
            f"SAR-NDVI fusion ({ratio * 100:.0f}% SAR, R2={result.model_r2 * 100:.0f}%)"
        )
    adjustment = 0.85 + result.model_r2 * 0.15
    return HarvestConfidence(
        base_confidence * adjustment, "SAR_HEAVY",
        f"SAR-heavy fusion ({ratio * 100:.0f}% SAR, R2={result.model_r2 * 100:.0f}%)"
    )


def build_fusion_metrics(result: FusionResult) -> FusionMetrics:
    return FusionMetrics(
        gaps_filled=result.gaps_filled,
        max_gap_days=max_gap_days(p.date for p in result.points),
        radar_contribution=result.sar_ratio,
        continuity_score=0.9 if result.model_r2 > 0.5 else 0.8,
    )
