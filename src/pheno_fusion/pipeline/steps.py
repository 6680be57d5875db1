"""
The eight pipeline steps.

Each step is `async (ctx, services) -> (ctx, StepResult)`. A step never
mutates its input context; collaborator failures are caught here and
turned into warnings so later steps still run.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..analysis.correlation import calculate_historical_correlation, final_correlation
from ..analysis.crop_pattern import NO_CROP, analyze_crop_pattern
from ..analysis.eos_fusion import EosFusionInput, calculate_fused_eos
from ..analysis.phenology import PhenologyConfig, calculate_phenology
from ..config import AI_VALIDATION_ON_LOW_CONFIDENCE, AI_VALIDATION_ON_PROCESS
from ..data.geometry import safe_field_area_ha
from ..data.timeseries import UNAVAILABLE, Observation, observation_to_dict, valid_sorted, parse_date
from ..errors import ProviderError
from ..processing.sar_fusion import build_fusion_metrics, calculate_harvest_confidence, fuse_sar_ndvi
from ..processing.rvi_fusion import build_rvi_fusion_metrics, fuse_rvi_ndvi
from .context import (
    AiValidationResult,
    PipelineContext,
    Services,
    StepResult,
    ai_validation_from_dict,
    call_collaborator,
)
from .status import finalize_status

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_AI_THRESHOLD = 50

# Water balance services may report Portuguese severity codes
WATER_STRESS_LEVELS = {
    'BAIXO': 'LOW',
    'MODERADO': 'MEDIUM',
    'SEVERO': 'HIGH',
    'CRITICO': 'CRITICAL',
    'NONE': 'NONE',
    'LOW': 'LOW',
    'MEDIUM': 'MEDIUM',
    'HIGH': 'HIGH',
    'CRITICAL': 'CRITICAL',
}

StepOutput = Tuple[PipelineContext, StepResult]


def _fail(ctx: PipelineContext, message: str) -> StepOutput:
    return ctx, StepResult(ok=False, error=message)


async def fetch_ndvi(ctx: PipelineContext, services: Services) -> StepOutput:
    field = ctx.field
    logger.info(f"[PIPELINE] [{ctx.field_id}] Fetching NDVI")
    try:
        report = await call_collaborator(
            services.ndvi_provider.fetch, field.geometry, field.season_start, field.crop_type,
            timeout=services.settings.step_timeout,
        )
    except ProviderError as e:
        logger.warning(f"[PIPELINE] [{ctx.field_id}] NDVI provider failed: {e}")
        return _fail(ctx, f"NDVI provider failed: {e}")

    if report is None or not report.ndvi:
        return _fail(ctx, "No NDVI data returned")

    area = report.area_ha
    if not area or area <= 0:
        area = safe_field_area_ha(field.geometry) or 0.0
        logger.info(f"[PIPELINE] [{ctx.field_id}] Area from geometry: {area:.2f} ha")

    logger.info(f"[PIPELINE] [{ctx.field_id}] {len(report.ndvi)} NDVI points, {len(report.historical)} historical seasons")
    return ctx.update(report=report, area_ha=area), StepResult()


async def detect_phenology(ctx: PipelineContext, services: Services) -> StepOutput:
    if ctx.report is None:
        return _fail(ctx, "Phenology skipped: no NDVI data")

    crop = ctx.field.crop_type
    detected = calculate_phenology(ctx.report.ndvi, ctx.report.historical, PhenologyConfig(crop, ctx.area_ha))

    phenology = detected
    if ctx.planting_date_input is not None:
        phenology = calculate_phenology(
            ctx.report.ndvi, ctx.report.historical,
            PhenologyConfig(crop, ctx.area_ha, ctx.planting_date_input),
        )

    logger.info(
        f"[PIPELINE] [{ctx.field_id}] Phenology: {phenology.method}, "
        f"score {phenology.confidence_score} ({phenology.confidence})"
    )
    return ctx.update(detected_phenology=detected, phenology=phenology), StepResult()


async def crop_pattern(ctx: PipelineContext, services: Services) -> StepOutput:
    if ctx.report is None:
        return _fail(ctx, "Crop pattern skipped: no NDVI data")

    phenology = ctx.phenology
    result = analyze_crop_pattern(
        ctx.report.ndvi,
        ctx.field.crop_type,
        phenology.sos_date if phenology else None,
        phenology.eos_date if phenology else None,
    )
    logger.info(f"[PIPELINE] [{ctx.field_id}] Crop pattern: {result.status}")

    if result.should_short_circuit:
        logger.info(f"[PIPELINE] [{ctx.field_id}] {NO_CROP}: short-circuiting ({result.reason})")
        return ctx.update(crop_pattern=result, short_circuited=True), StepResult(short_circuit=True)

    return ctx.update(crop_pattern=result), StepResult()


def map_water_stress(level: Optional[str], stress_days: int) -> str:
    """Normalise a water balance stress level, falling back to stress days."""
    if level:
        mapped = WATER_STRESS_LEVELS.get(str(level).upper())
        if mapped:
            return mapped
    if stress_days >= 20:
        return 'CRITICAL'
    if stress_days >= 10:
        return 'HIGH'
    if stress_days >= 5:
        return 'MEDIUM'
    if stress_days > 0:
        return 'LOW'
    return 'NONE'


async def _fetch_climate_record(ctx: PipelineContext, services: Services, service, label: str):
    """One climate sub-service; returns (record, warning)."""
    if service is None:
        return None, None
    field = ctx.field
    planting = ctx.phenology.planting_date if ctx.phenology and ctx.phenology.planting_date else field.season_start
    try:
        record = await call_collaborator(
            service.fetch, field.workspace_id, field.geometry, planting, field.crop_type,
            timeout=services.settings.step_timeout,
        )
        return record, None
    except ProviderError as e:
        logger.warning(f"[PIPELINE] [{ctx.field_id}] {label} unavailable: {e}")
        return None, f"{label} unavailable: {e}"


async def fetch_climate(ctx: PipelineContext, services: Services) -> StepOutput:
    if ctx.phenology is None:
        return _fail(ctx, "Climate skipped: no phenology")

    climate = services.climate
    (precipitation, w1), (water, w2), (thermal, w3), (envelope, w4) = await asyncio.gather(
        _fetch_climate_record(ctx, services, climate.precipitation, "Precipitation"),
        _fetch_climate_record(ctx, services, climate.water_balance, "Water balance"),
        _fetch_climate_record(ctx, services, climate.thermal, "Thermal sums"),
        _fetch_climate_record(ctx, services, climate.envelope, "Climate envelope"),
    )

    changes: Dict[str, Any] = {
        'precipitation': precipitation,
        'water_balance': water,
        'thermal': thermal,
        'climate_envelope': envelope,
    }
    if precipitation:
        changes['harvest_adjustment'] = precipitation.get('harvest_adjustment')

    if water:
        stress_days = int(water.get('stress_days') or 0)
        changes['stress_days'] = stress_days
        changes['water_stress_level'] = map_water_stress(water.get('stress_level'), stress_days)
        retained = water.get('yield_retained')
        if retained is not None:
            changes['yield_impact'] = -round((1 - float(retained)) * 100)

    ctx = ctx.update(**changes)
    for warning in (w1, w2, w3, w4):
        if warning:
            ctx = ctx.with_warning(warning)
    return ctx, StepResult()


async def fetch_radar(ctx: PipelineContext, services: Services) -> StepOutput:
    if not services.settings.sar_fusion_enabled or services.radar_provider is None:
        return ctx, StepResult()
    if ctx.report is None:
        return _fail(ctx, "Radar skipped: no NDVI data")

    field = ctx.field
    try:
        radar = await call_collaborator(
            services.radar_provider.fetch, field.workspace_id, field.geometry, field.season_start, ctx.run_date,
            timeout=services.settings.step_timeout,
        )
    except ProviderError as e:
        logger.warning(f"[PIPELINE] [{ctx.field_id}] Radar unavailable: {e}")
        return ctx.with_warning(f"Radar unavailable: {e}"), StepResult()

    if radar == UNAVAILABLE or not radar:
        return ctx, StepResult()

    changes: Dict[str, Any] = {'radar': tuple(radar)}
    fusion = None
    store = services.calibration_store
    if store is not None:
        fusion = await asyncio.to_thread(fuse_sar_ndvi, ctx.field_id, ctx.report.ndvi, radar, store)
        changes['fusion'] = fusion
        if fusion.gaps_filled > 0:
            changes['fusion_metrics'] = build_fusion_metrics(fusion)
            logger.info(f"[PIPELINE] [{ctx.field_id}] Radar filled {fusion.gaps_filled} gaps")

    if fusion is None or fusion.gaps_filled == 0:
        classic = fuse_rvi_ndvi(ctx.report.ndvi, radar, ctx.field.crop_type)
        if classic.gaps_filled > 0:
            changes['fusion'] = classic
            changes['fusion_metrics'] = build_rvi_fusion_metrics(classic)
            logger.info(f"[PIPELINE] [{ctx.field_id}] RVI fallback filled {classic.gaps_filled} gaps")

    if fusion is not None and fusion.calibration_used and ctx.phenology is not None:
        harvest = calculate_harvest_confidence(fusion, ctx.phenology.confidence_score)
        changes['harvest_confidence'] = harvest
        changes['adjusted_confidence'] = harvest.confidence

    return ctx.update(**changes), StepResult()


def ndvi_decline_rate(observations: Sequence[Observation]) -> float:
    """Mean percentage drop between consecutive samples over the last three."""
    values = [o.value for o in valid_sorted(observations)][-3:]
    drops = [(prev - curr) / prev * 100 for prev, curr in zip(values, values[1:]) if prev > 0]
    return sum(drops) / len(drops) if drops else 0.0


async def fuse_eos(ctx: PipelineContext, services: Services) -> StepOutput:
    phenology = ctx.phenology
    if phenology is None or ctx.report is None:
        return _fail(ctx, "EOS fusion skipped: no phenology")

    final_score = round(ctx.adjusted_confidence) if ctx.adjusted_confidence > 0 else phenology.confidence_score
    observations = valid_sorted(ctx.report.ndvi)
    current_ndvi = observations[-1].value if observations else 0.0

    thermal = ctx.thermal or {}
    projected = thermal.get('projected_eos')

    fusion_input = EosFusionInput(
        eos_ndvi=phenology.eos_date,
        ndvi_confidence=final_score,
        current_ndvi=current_ndvi,
        peak_ndvi=phenology.peak_ndvi,
        ndvi_decline_rate=ndvi_decline_rate(ctx.report.ndvi),
        eos_gdd=parse_date(projected) if projected else None,
        gdd_confidence=thermal.get('confidence') or 'MEDIUM',
        gdd_accumulated=float(thermal.get('gdd_accumulated') or 0.0),
        gdd_required=float(thermal.get('gdd_required') or 0.0),
        planting_date=phenology.planting_date,
        crop_type=ctx.field.crop_type,
        water_stress_level=ctx.water_stress_level,
        stress_days=ctx.stress_days,
        yield_impact=ctx.yield_impact,
        fusion_metrics=ctx.fusion_metrics,
    )

    fused = calculate_fused_eos(fusion_input, today=ctx.run_date)
    correlation = calculate_historical_correlation(ctx.report.ndvi, ctx.report.historical)
    logger.info(
        f"[PIPELINE] [{ctx.field_id}] Fused EOS {fused.eos.isoformat()} "
        f"({fused.method}, {fused.confidence}%)"
    )
    return ctx.update(
        fused_eos=fused,
        final_confidence_score=final_score,
        correlation=correlation,
        final_correlation=final_correlation(correlation, phenology.historical_correlation),
    ), StepResult()


def should_run_ai_validation(policy: str, confidence_score: int) -> bool:
    if policy == AI_VALIDATION_ON_PROCESS:
        return True
    if policy == AI_VALIDATION_ON_LOW_CONFIDENCE:
        return confidence_score < LOW_CONFIDENCE_AI_THRESHOLD
    return False


def _field_context(ctx: PipelineContext) -> Dict[str, Any]:
    return {
        'field_id': ctx.field_id,
        'crop_type': ctx.field.crop_type,
        'area_ha': ctx.area_ha,
        'ndvi': [observation_to_dict(o) for o in ctx.report.ndvi] if ctx.report else [],
        'phenology': ctx.phenology.to_dict() if ctx.phenology else None,
        'crop_pattern': ctx.crop_pattern.to_dict() if ctx.crop_pattern else None,
        'fused_eos': ctx.fused_eos.to_dict() if ctx.fused_eos else None,
        'correlation': ctx.correlation.to_dict() if ctx.correlation else None,
        'confidence_score': ctx.final_confidence_score,
    }


async def ai_validation(ctx: PipelineContext, services: Services) -> StepOutput:
    if services.ai_validator is None or ctx.phenology is None:
        return ctx, StepResult()
    if not should_run_ai_validation(services.settings.ai_validation, ctx.final_confidence_score):
        return ctx, StepResult()

    try:
        raw = await call_collaborator(
            services.ai_validator.validate, _field_context(ctx),
            timeout=services.settings.step_timeout,
        )
    except ProviderError as e:
        logger.warning(f"[PIPELINE] [{ctx.field_id}] AI validation failed: {e}")
        return ctx.with_warning(f"AI validation failed: {e}"), StepResult()

    if raw is None:
        return ctx, StepResult()

    try:
        result = raw if isinstance(raw, AiValidationResult) else ai_validation_from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"[PIPELINE] [{ctx.field_id}] Malformed AI validation: {e}")
        return ctx.with_warning(f"Malformed AI validation result: {e}"), StepResult()

    logger.info(f"[PIPELINE] [{ctx.field_id}] AI validation: {result.agreement}")
    return ctx.update(ai_validation=result), StepResult()


def ndvi_points(ctx: PipelineContext) -> List[Dict[str, Any]]:
    """Current and historical NDVI samples as store rows."""
    if ctx.report is None:
        return []
    points = [
        {**observation_to_dict(o), 'is_historical': False, 'season': 0}
        for o in ctx.report.ndvi
    ]
    for idx, season in enumerate(ctx.report.historical, start=1):
        points.extend(
            {**observation_to_dict(o), 'is_historical': True, 'season': idx}
            for o in season
        )
    return points


def short_circuit_record(ctx: PipelineContext) -> Dict[str, Any]:
    pattern = ctx.crop_pattern
    return {
        'status': ctx.final_status,
        'area_ha': ctx.area_ha,
        'volume_estimate_kg': 0,
        'peak_ndvi': pattern.metrics.peak_ndvi if pattern else 0.0,
        'phenology_health': 'POOR',
        'confidence_score': 10,
        'confidence': 'LOW',
        'method': 'ALGORITHM',
        'planting_date': None,
        'sos_date': None,
        'eos_date': None,
        'peak_date': None,
        'crop_pattern_status': pattern.status if pattern else None,
        'crop_pattern': pattern.to_dict() if pattern else None,
        'diagnostics': [{
            'type': 'ERROR',
            'code': pattern.status if pattern else NO_CROP,
            'message': pattern.reason if pattern else '',
            'date': None,
        }],
        'warnings': list(ctx.all_warnings),
        'processed_at': ctx.started_at.isoformat(),
    }


def full_record(ctx: PipelineContext) -> Dict[str, Any]:
    phenology = ctx.phenology
    detected = (ctx.detected_phenology or phenology).to_dict()
    record = phenology.to_dict()
    record.update({
        'status': ctx.final_status,
        'area_ha': ctx.area_ha,
        'volume_estimate_kg': phenology.yield_estimate_kg,
        'confidence_score': ctx.final_confidence_score or phenology.confidence_score,
        'historical_correlation': ctx.final_correlation,
        'correlation': ctx.correlation.to_dict() if ctx.correlation else None,
        'detected_planting_date': detected['planting_date'],
        'detected_sos_date': detected['sos_date'],
        'detected_eos_date': detected['eos_date'],
        'detected_confidence_score': detected['confidence_score'],
        'crop_pattern_status': ctx.crop_pattern.status if ctx.crop_pattern else None,
        'crop_pattern': ctx.crop_pattern.to_dict() if ctx.crop_pattern else None,
        'fused_eos': ctx.fused_eos.to_dict() if ctx.fused_eos else None,
        'harvest_confidence': ctx.harvest_confidence._asdict() if ctx.harvest_confidence else None,
        'fusion': ctx.fusion.to_dict() if ctx.fusion else None,
        'water_stress_level': ctx.water_stress_level,
        'ai_validation': ctx.ai_validation.to_dict() if ctx.ai_validation else None,
        'warnings': list(ctx.all_warnings),
        'processed_at': ctx.started_at.isoformat(),
    })
    return record


async def persist(ctx: PipelineContext, services: Services) -> StepOutput:
    store = services.record_store
    if store is None:
        return _fail(ctx, "No record store configured")
    if not ctx.short_circuited and ctx.phenology is None:
        return _fail(ctx, "Nothing to persist: no phenology")

    ctx = finalize_status(ctx)
    record = short_circuit_record(ctx) if ctx.short_circuited else full_record(ctx)
    timeout = services.settings.step_timeout

    try:
        await call_collaborator(store.upsert, ctx.field_id, record, timeout=timeout)
        await call_collaborator(store.delete_and_recreate, ctx.field_id, ndvi_points(ctx), timeout=timeout)
        await call_collaborator(store.mark_stale, ctx.field_id, timeout=timeout)
    except ProviderError as e:
        logger.error(f"[PIPELINE] [{ctx.field_id}] Persist failed: {e}")
        return _fail(ctx, f"Persist failed: {e}")

    logger.info(f"[PIPELINE] [{ctx.field_id}] Persisted with status {ctx.final_status}")
    return ctx.update(persisted=True), StepResult()
