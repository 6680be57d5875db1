"""
Pipeline state and collaborator bundle.

`PipelineContext` is immutable. Steps return an updated copy through
`PipelineContext.update`, which refuses agronomic writes once a run has
short-circuited.
"""

import asyncio
import inspect
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, NamedTuple, Optional, Union

from ..analysis.correlation import CorrelationResult
from ..analysis.crop_pattern import CropPatternResult
from ..analysis.eos_fusion import EosFusionResult, FusionMetrics
from ..analysis.phenology import PhenologyResult
from ..config import Settings, load_settings
from ..data.providers import (
    ENVELOPE,
    PRECIPITATION,
    THERMAL,
    WATER_BALANCE,
    HttpClimateService,
    HttpNdviProvider,
    HttpRadarProvider,
)
from ..data.store import InMemoryRecordStore
from ..data.timeseries import NdviReport, parse_date, format_date
from ..errors import ProviderError, ShortCircuitViolation
from ..processing.calibration import CalibrationStore
from ..processing.sar_fusion import FusionResult, HarvestConfidence

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
PARTIAL = "PARTIAL"
ERROR = "ERROR"


class FieldInfo(NamedTuple):
    id: str
    geometry: Union[str, dict]
    season_start: date
    crop_type: str
    name: str = ""
    planting_date_input: Optional[date] = None
    workspace_id: Optional[str] = None


class AiValidationResult(NamedTuple):
    agreement: str
    confidence: float
    eos_adjusted_date: Optional[date] = None
    visual_alerts: tuple = ()
    crop_verification: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agreement': self.agreement,
            'confidence': self.confidence,
            'eos_adjusted_date': format_date(self.eos_adjusted_date),
            'visual_alerts': list(self.visual_alerts),
            'crop_verification': self.crop_verification,
        }


def ai_validation_from_dict(data: Dict[str, Any]) -> AiValidationResult:
    raw = data.get('eos_adjusted_date')
    return AiValidationResult(
        agreement=data['agreement'],
        confidence=data.get('confidence', 0),
        eos_adjusted_date=parse_date(raw) if raw else None,
        visual_alerts=tuple(data.get('visual_alerts') or ()),
        crop_verification=data.get('crop_verification'),
    )


class ClimateServices(NamedTuple):
    precipitation: Any = None
    water_balance: Any = None
    thermal: Any = None
    envelope: Any = None


class Services(NamedTuple):
    """
    External collaborators of one engine instance.

    Each provider only needs a `fetch` method (the AI validator `validate`,
    the record store `upsert`/`delete_and_recreate`/`mark_stale`). Methods
    may be plain functions or coroutines.
    """
    ndvi_provider: Any
    radar_provider: Any = None
    climate: ClimateServices = ClimateServices()
    ai_validator: Any = None
    record_store: Any = None
    calibration_store: Optional[CalibrationStore] = None
    settings: Settings = Settings()


def create_services(ndvi_provider, settings: Optional[Settings] = None, **kwargs) -> Services:
    """Services with fresh in-memory stores for whatever is not supplied."""
    kwargs.setdefault('record_store', InMemoryRecordStore())
    kwargs.setdefault('calibration_store', CalibrationStore())
    return Services(ndvi_provider=ndvi_provider, settings=settings or load_settings(), **kwargs)


def create_http_services(settings: Optional[Settings] = None, **kwargs) -> Services:
    """Services backed by the HTTP providers at the configured URLs."""
    settings = settings or load_settings()
    base_url, timeout = settings.climate_provider_url, settings.http_timeout
    kwargs.setdefault('radar_provider', HttpRadarProvider(settings.radar_provider_url, timeout))
    kwargs.setdefault('climate', ClimateServices(
        precipitation=HttpClimateService(PRECIPITATION, base_url, timeout),
        water_balance=HttpClimateService(WATER_BALANCE, base_url, timeout),
        thermal=HttpClimateService(THERMAL, base_url, timeout),
        envelope=HttpClimateService(ENVELOPE, base_url, timeout),
    ))
    return create_services(HttpNdviProvider(settings.ndvi_provider_url, timeout), settings, **kwargs)


class StepResult(NamedTuple):
    ok: bool = True
    error: Optional[str] = None
    short_circuit: bool = False


# Fields that carry agronomic results; frozen once a run short-circuits.
AGRONOMIC_FIELDS = frozenset([
    'detected_phenology', 'phenology', 'precipitation', 'harvest_adjustment',
    'water_balance', 'water_stress_level', 'stress_days', 'yield_impact',
    'thermal', 'climate_envelope', 'radar', 'fusion', 'fusion_metrics',
    'harvest_confidence', 'adjusted_confidence', 'fused_eos',
    'final_confidence_score', 'correlation', 'final_correlation', 'ai_validation',
])


class PipelineContext(NamedTuple):
    field_id: str
    field: FieldInfo
    run_date: date
    started_at: datetime

    # 01 fetch NDVI
    report: Optional[NdviReport] = None
    area_ha: float = 0.0

    # 02 phenology
    detected_phenology: Optional[PhenologyResult] = None
    phenology: Optional[PhenologyResult] = None
    planting_date_input: Optional[date] = None

    # 03 crop pattern
    crop_pattern: Optional[CropPatternResult] = None
    short_circuited: bool = False

    # 04 climate
    precipitation: Optional[Dict[str, Any]] = None
    harvest_adjustment: Optional[Dict[str, Any]] = None
    water_balance: Optional[Dict[str, Any]] = None
    water_stress_level: str = "NONE"
    stress_days: int = 0
    yield_impact: float = 0.0
    thermal: Optional[Dict[str, Any]] = None
    climate_envelope: Optional[Dict[str, Any]] = None

    # 05 radar
    radar: Optional[tuple] = None
    fusion: Optional[FusionResult] = None
    fusion_metrics: Optional[FusionMetrics] = None
    harvest_confidence: Optional[HarvestConfidence] = None
    adjusted_confidence: float = 0.0

    # 06 EOS fusion
    fused_eos: Optional[EosFusionResult] = None
    final_confidence_score: int = 0
    correlation: Optional[CorrelationResult] = None
    final_correlation: int = 50

    # 07 AI validation
    ai_validation: Optional[AiValidationResult] = None

    # 08 persist / status
    warnings: tuple = ()
    final_status: str = SUCCESS
    status_warnings: tuple = ()
    persisted: bool = False

    def update(self, **changes) -> 'PipelineContext':
        if self.short_circuited:
            blocked = AGRONOMIC_FIELDS.intersection(changes)
            if blocked:
                raise ShortCircuitViolation(
                    f"Run for field {self.field_id} short-circuited; refusing to write {sorted(blocked)}"
                )
        return self._replace(**changes)

    def with_warning(self, message: str) -> 'PipelineContext':
        return self._replace(warnings=self.warnings + (message,))

    @property
    def all_warnings(self) -> tuple:
        return self.warnings + self.status_warnings


def create_initial_context(
    field: FieldInfo,
    run_date: Optional[date] = None,
    started_at: Optional[datetime] = None
) -> PipelineContext:
    return PipelineContext(
        field_id=field.id,
        field=field,
        run_date=run_date or date.today(),
        started_at=started_at or datetime.now(timezone.utc),
        planting_date_input=field.planting_date_input,
    )


async def call_collaborator(fn: Callable, *args, timeout: float):
    """
    Await a collaborator call with a timeout. Sync callables run in a worker
    thread so they never block other fields' runs.

    Raises:
        ProviderError: On timeout or any failure inside the collaborator.
    """
    name = getattr(fn, '__qualname__', repr(fn))
    if inspect.iscoroutinefunction(fn):
        pending = fn(*args)
    else:
        pending = asyncio.to_thread(fn, *args)

    try:
        result = await asyncio.wait_for(pending, timeout)
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout)
    except asyncio.TimeoutError as e:
        raise ProviderError(f"{name} timed out after {timeout}s") from e
    except asyncio.CancelledError:
        raise
    except ProviderError:
        raise
    except Exception as e:
        raise ProviderError(f"{name} failed: {type(e).__name__}: {e}") from e
    return result
