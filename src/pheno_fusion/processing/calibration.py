"""
Per-field SAR -> NDVI calibration: feature selection, leave-one-out model
selection and the keyed calibration store.
"""

import os
import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

from ..analysis.numeric import pearson_r, r2_score, rmse
from ..data.timeseries import Observation, RadarObservation
from ..errors import CalibrationError, PersistenceError
from . import models

logger = logging.getLogger(__name__)

VH = "VH"
VV = "VV"
VV_VH = "VV_VH"

MIN_PAIRS_FOR_SELECTION = 5
MIN_PAIRS_FOR_CALIBRATION = 8
VH_STRONG_CORRELATION = 0.70
VV_MARGIN = 0.15


class Pair(NamedTuple):
    date: date
    vv: float
    vh: float
    ndvi: float


class FeatureSelection(NamedTuple):
    feature_type: str
    pairs: tuple
    correlation_vv: float
    correlation_vh: float


class CalibrationModel(NamedTuple):
    field_id: str
    feature_type: str
    model_type: str
    r2: float
    rmse: float
    correlation_vv: float
    correlation_vh: float
    trained_at: datetime
    n_pairs: int
    params: Dict[str, Any]

    def features(self, obs: RadarObservation) -> List[float]:
        """Feature vector for a radar sample under this model's feature type."""
        return feature_vector(self.feature_type, obs.vv, obs.vh)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field_id': self.field_id,
            'feature_type': self.feature_type,
            'model_type': self.model_type,
            'r2': self.r2,
            'rmse': self.rmse,
            'correlation_vv': self.correlation_vv,
            'correlation_vh': self.correlation_vh,
            'trained_at': self.trained_at.isoformat(),
            'n_pairs': self.n_pairs,
            'params': self.params,
        }


def calibration_from_dict(data: Dict[str, Any]) -> CalibrationModel:
    return CalibrationModel(
        field_id=data['field_id'],
        feature_type=data['feature_type'],
        model_type=data['model_type'],
        r2=float(data['r2']),
        rmse=float(data['rmse']),
        correlation_vv=float(data['correlation_vv']),
        correlation_vh=float(data['correlation_vh']),
        trained_at=datetime.fromisoformat(data['trained_at']),
        n_pairs=int(data['n_pairs']),
        params=dict(data.get('params') or {}),
    )


def feature_vector(feature_type: str, vv: float, vh: float) -> List[float]:
    if feature_type == VH:
        return [vh]
    if feature_type == VV:
        return [vv]
    return [vv, vh]


def _offsets(tolerance_days: int) -> List[int]:
    """0, -1, +1, -2, +2, ... up to the tolerance."""
    out = [0]
    for d in range(1, tolerance_days + 1):
        out.extend((-d, d))
    return out


def find_pairs(
    sar: Sequence[RadarObservation],
    optical: Sequence[Observation],
    tolerance_days: int = 5
) -> List[Pair]:
    """
    Match each radar sample with the nearest optical NDVI within the
    tolerance, preferring earlier dates on ties.
    """
    by_date = {o.date: o.value for o in optical if o.value is not None}
    offsets = _offsets(tolerance_days)

    pairs = []
    for s in sar:
        for off in offsets:
            ndvi = by_date.get(s.date + timedelta(days=off))
            if ndvi is not None:
                pairs.append(Pair(s.date, s.vv, s.vh, ndvi))
                break
    return pairs


def select_best_feature(
    sar: Sequence[RadarObservation],
    optical: Sequence[Observation]
) -> FeatureSelection:
    """
    Pick VH, VV or both from |Pearson r| against NDVI over coincident pairs.
    """
    pairs = tuple(find_pairs(sar, optical))

    if len(pairs) < MIN_PAIRS_FOR_SELECTION:
        return FeatureSelection(VV_VH, pairs, 0.0, 0.0)

    ndvi = [p.ndvi for p in pairs]
    corr_vv = abs(pearson_r([p.vv for p in pairs], ndvi))
    corr_vh = abs(pearson_r([p.vh for p in pairs], ndvi))

    logger.info(f"[SAR_FUSION] Correlations: VV={corr_vv * 100:.1f}%, VH={corr_vh * 100:.1f}%")

    if corr_vh > VH_STRONG_CORRELATION:
        feature = VH
    elif corr_vv > corr_vh + VV_MARGIN:
        feature = VV
    else:
        feature = VV_VH
    return FeatureSelection(feature, pairs, corr_vv, corr_vh)


def _evaluate(model_type: str, trainer, X, y, **kwargs):
    try:
        preds = models.loo_predictions(trainer, X, y, **kwargs)
    except CalibrationError as e:
        logger.warning(f"[SAR_FUSION] {model_type} leave-one-out failed: {e}")
        return None
    return r2_score(y, preds), rmse(y, preds)


def train_local_calibration(
    field_id: str,
    sar: Sequence[RadarObservation],
    optical: Sequence[Observation],
    now: Optional[datetime] = None
) -> Optional[CalibrationModel]:
    """
    Train a per-field calibration.

    GPR and KNN(k=5) compete on leave-one-out R2; the winner is refitted on
    all pairs. When neither trains, the ridge linear model is used on its
    own. The linear coefficients are always stored alongside as a fallback.

    Returns:
        CalibrationModel, or None with fewer than 8 coincident pairs or when
        no model can be trained.
    """
    logger.info(f"[SAR_FUSION] Training calibration for field {field_id}")
    logger.info(f"[SAR_FUSION] SAR points: {len(sar)}, NDVI points: {len(optical)}")

    selection = select_best_feature(sar, optical)
    if len(selection.pairs) < MIN_PAIRS_FOR_CALIBRATION:
        logger.info(f"[SAR_FUSION] Not enough pairs ({len(selection.pairs)}) for calibration")
        return None

    X = [feature_vector(selection.feature_type, p.vv, p.vh) for p in selection.pairs]
    y = [p.ndvi for p in selection.pairs]

    best_type = None
    best_r2 = float('-inf')
    best_rmse = float('inf')

    for model_type, trainer, kwargs in ((models.GPR, models.train_gpr, {}), (models.KNN, models.train_knn, {'k': 5})):
        scores = _evaluate(model_type, trainer, X, y, **kwargs)
        if scores is not None and scores[0] > best_r2:
            best_type, (best_r2, best_rmse) = model_type, scores

    if best_type is None:
        scores = _evaluate(models.LINEAR, models.train_linear, X, y)
        if scores is None:
            logger.warning(f"[SAR_FUSION] No calibration model could be trained for field {field_id}")
            return None
        best_type, (best_r2, best_rmse) = models.LINEAR, scores

    logger.info(
        f"[SAR_FUSION] Best model: {best_type}, R2={best_r2 * 100:.1f}%, RMSE={best_rmse:.3f}"
    )

    try:
        if best_type == models.GPR:
            params = models.train_gpr(X, y)
        elif best_type == models.KNN:
            params = models.train_knn(X, y, k=5)
        else:
            params = {}
        params.update(models.train_linear(X, y))
    except CalibrationError as e:
        logger.warning(f"[SAR_FUSION] Final {best_type} fit failed for field {field_id}: {e}")
        return None

    return CalibrationModel(
        field_id=field_id,
        feature_type=selection.feature_type,
        model_type=best_type,
        r2=float(best_r2),
        rmse=float(best_rmse),
        correlation_vv=float(selection.correlation_vv),
        correlation_vh=float(selection.correlation_vh),
        trained_at=now or datetime.now(timezone.utc),
        n_pairs=len(selection.pairs),
        params=params,
    )


class CalibrationStore:
    """In-memory mapping field id -> CalibrationModel."""

    def __init__(self, calibrations: Optional[Iterable[CalibrationModel]] = None):
        self._models: Dict[str, CalibrationModel] = {}
        for m in calibrations or ():
            self._models[m.field_id] = m

    def get(self, field_id: str) -> Optional[CalibrationModel]:
        return self._models.get(field_id)

    def save(self, model: CalibrationModel) -> None:
        self._models[model.field_id] = model

    def delete(self, field_id: str) -> None:
        self._models.pop(field_id, None)

    def __contains__(self, field_id) -> bool:
        return field_id in self._models

    def __len__(self) -> int:
        return len(self._models)


class JsonCalibrationStore(CalibrationStore):
    """
    CalibrationStore persisted to a single JSON file keyed by field id.

    The file is rewritten atomically on every save/delete.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        if os.path.exists(path):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    raw = json.load(f)
                for field_id, data in raw.items():
                    self._models[field_id] = calibration_from_dict(data)
            except (OSError, ValueError, KeyError) as e:
                raise PersistenceError(f"Cannot read calibration store {path}: {e}") from e

    def _flush(self, models: Dict[str, CalibrationModel]) -> None:
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump({k: m.to_dict() for k, m in models.items()}, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot write calibration store {self.path}: {e}") from e

    def save(self, model: CalibrationModel) -> None:
        models = {**self._models, model.field_id: model}
        self._flush(models)
        self._models = models

    def delete(self, field_id: str) -> None:
        models = {k: m for k, m in self._models.items() if k != field_id}
        self._flush(models)
        self._models = models
