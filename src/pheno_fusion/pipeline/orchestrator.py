"""
Pipeline orchestrator - runs the per-field processing chain.

Flow:
1) Fetch NDVI report (and field area)
2) Detect phenology (detected + operator-adjusted)
3) Classify crop pattern; NO_CROP jumps straight to persistence
4) Fetch climate records (precipitation, water balance, thermal, envelope)
5) Fetch radar and fill optical gaps through SAR-NDVI fusion
6) Fuse harvest date from NDVI, GDD, water stress and radar quality
7) Optional AI validation
8) Persist record and NDVI points
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import date
from typing import Callable, List, Optional, Sequence, Tuple, Union

from ..errors import FieldBusyError
from .context import FieldInfo, PipelineContext, Services, StepResult, create_initial_context
from .status import finalize_status
from . import steps

logger = logging.getLogger(__name__)

STEPS: Tuple[Tuple[str, Callable], ...] = (
    ("fetch_ndvi", steps.fetch_ndvi),
    ("detect_phenology", steps.detect_phenology),
    ("crop_pattern", steps.crop_pattern),
    ("fetch_climate", steps.fetch_climate),
    ("fetch_radar", steps.fetch_radar),
    ("fuse_eos", steps.fuse_eos),
    ("ai_validation", steps.ai_validation),
    ("persist", steps.persist),
)


async def run_pipeline(ctx: PipelineContext, services: Services, pipeline_steps=STEPS) -> PipelineContext:
    """
    Run every step in order on one field.

    A step that reports failure or raises only adds a warning; the chain
    continues. A short-circuit skips straight to persistence.
    """
    logger.info(f"[PIPELINE] [{ctx.field_id}] Starting run ({ctx.field.crop_type})")

    for name, step in pipeline_steps:
        try:
            ctx, result = await step(ctx, services)
        except asyncio.CancelledError:
            logger.warning(f"[PIPELINE] [{ctx.field_id}] Cancelled during {name}")
            raise
        except Exception as e:
            logger.exception(f"[PIPELINE] [{ctx.field_id}] Step {name} raised")
            ctx = ctx.with_warning(f"Step {name} failed: {e}")
            continue

        if not result.ok:
            logger.warning(f"[PIPELINE] [{ctx.field_id}] Step {name}: {result.error}")
            ctx = ctx.with_warning(f"Step {name}: {result.error}")

        if result.short_circuit:
            ctx, result = await _persist_short_circuit(ctx, services)
            break

    ctx = finalize_status(ctx)
    logger.info(f"[PIPELINE] [{ctx.field_id}] Finished with status {ctx.final_status}")
    return ctx


async def _persist_short_circuit(ctx: PipelineContext, services: Services) -> Tuple[PipelineContext, StepResult]:
    try:
        ctx, result = await steps.persist(ctx, services)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.exception(f"[PIPELINE] [{ctx.field_id}] Short-circuit persist raised")
        return ctx.with_warning(f"Step persist failed: {e}"), StepResult(ok=False, error=str(e))
    if not result.ok:
        ctx = ctx.with_warning(f"Step persist: {result.error}")
    return ctx, result


class RunRegistry:
    """At most one in-flight run per field id."""

    def __init__(self):
        self._active = set()

    def is_running(self, field_id: str) -> bool:
        return field_id in self._active

    @contextmanager
    def claim(self, field_id: str):
        if field_id in self._active:
            raise FieldBusyError(f"Field {field_id} is already being processed")
        self._active.add(field_id)
        try:
            yield
        finally:
            self._active.discard(field_id)


class PipelineOrchestrator:
    """Runs fields through the pipeline against one set of collaborators."""

    def __init__(self, services: Services, registry: Optional[RunRegistry] = None):
        self.services = services
        self.registry = registry or RunRegistry()

    async def process_field(self, field: FieldInfo, run_date: Optional[date] = None) -> PipelineContext:
        """
        Process one field.

        Raises:
            FieldBusyError: A run for the same field is already in flight.
        """
        with self.registry.claim(field.id):
            ctx = create_initial_context(field, run_date)
            return await run_pipeline(ctx, self.services)

    async def run_fields(
        self,
        fields: Sequence[FieldInfo],
        run_date: Optional[date] = None
    ) -> List[Union[PipelineContext, FieldBusyError]]:
        """
        Process several fields concurrently. Each entry of the result is the
        final context of that field, or the FieldBusyError that rejected it.
        """
        results = await asyncio.gather(
            *(self._process_or_busy(f, run_date) for f in fields)
        )
        done = sum(1 for r in results if isinstance(r, PipelineContext))
        logger.info(f"[PIPELINE] Batch finished: {done}/{len(fields)} fields processed")
        return list(results)

    async def _process_or_busy(self, field: FieldInfo, run_date: Optional[date]):
        try:
            return await self.process_field(field, run_date)
        except FieldBusyError as e:
            logger.warning(f"[PIPELINE] {e}")
            return e


async def process_field(field: FieldInfo, services: Services, run_date: Optional[date] = None) -> PipelineContext:
    """Single-field convenience wrapper around PipelineOrchestrator."""
    return await PipelineOrchestrator(services).process_field(field, run_date)
