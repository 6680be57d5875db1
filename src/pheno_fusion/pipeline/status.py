from typing import Tuple

from ..analysis.crop_pattern import ANOMALOUS, ATYPICAL, NO_CROP
from .context import ERROR, PARTIAL, SUCCESS, PipelineContext

CROP_ISSUE_STATUSES = (NO_CROP, ANOMALOUS, ATYPICAL)
MIN_NDVI_POINTS = 5
LOW_CONFIDENCE_SCORE = 30
LARGE_AREA_HA = 1000


def determine_status(ctx: PipelineContext) -> Tuple[str, tuple]:
    """
    Final run status from data quality.

    Returns:
        (status, extra_warnings). A short-circuited run is always SUCCESS;
        missing phenology is the only ERROR.
    """
    if ctx.short_circuited:
        return SUCCESS, ()

    phenology = ctx.phenology
    if phenology is None:
        return ERROR, ("Phenology could not be computed",)

    warnings = []
    status = SUCCESS
    crop_issue = ctx.crop_pattern is not None and ctx.crop_pattern.status in CROP_ISSUE_STATUSES

    ndvi = ctx.report.ndvi if ctx.report else ()
    if not ndvi:
        warnings.append("No NDVI data from the provider")
        status = PARTIAL
    elif len(ndvi) < MIN_NDVI_POINTS:
        warnings.append(f"Few NDVI points ({len(ndvi)})")

    if phenology.sos_date is None:
        warnings.append("Could not detect emergence (SOS)")
        if not crop_issue:
            status = PARTIAL
    if phenology.eos_date is None:
        warnings.append("Could not detect or project harvest (EOS)")
        if not crop_issue:
            status = PARTIAL

    if phenology.confidence_score < LOW_CONFIDENCE_SCORE:
        warnings.append(f"Very low confidence ({phenology.confidence_score}%)")
        if not crop_issue and status == SUCCESS:
            status = PARTIAL

    if ctx.area_ha > LARGE_AREA_HA:
        warnings.append(f"Very large area ({ctx.area_ha:.0f} ha), accuracy may suffer")

    return status, tuple(warnings)


def finalize_status(ctx: PipelineContext) -> PipelineContext:
    """Recompute status and its warnings; safe to call more than once."""
    status, extra = determine_status(ctx)
    return ctx._replace(final_status=status, status_warnings=extra)
