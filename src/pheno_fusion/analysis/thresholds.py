"""
Static per-crop agronomic threshold tables.

Two tables are kept: the crop pattern table (curve shape expectations used
by the classifier) and the phenology table (SOS/EOS crossings, cycle length
and yield baseline). Unknown crop codes fall back to soybean (SOJA).
"""

from typing import Dict, NamedTuple, Union

ANNUAL = "ANNUAL"
SEMI_PERENNIAL = "SEMI_PERENNIAL"
PERENNIAL = "PERENNIAL"

DEFAULT_CROP = "SOJA"


class CycleThresholds(NamedTuple):
    """Bell-curve expectations for annual and semi-perennial crops."""
    category: str
    peak_min_ndvi: float
    no_crop_peak: float
    no_crop_amplitude: float
    anomalous_peak: float
    min_cycle_days: int
    max_cycle_days: int
    expected_amplitude: float
    label: str


class PerennialThresholds(NamedTuple):
    """Stable-baseline expectations for perennial crops."""
    category: str
    baseline_min_ndvi: float
    baseline_max_ndvi: float
    no_crop_baseline: float
    seasonal_amplitude: float
    anomalous_drop: float
    label: str


PatternThresholds = Union[CycleThresholds, PerennialThresholds]


class PhenologyThresholds(NamedTuple):
    sos_ndvi: float
    eos_ndvi: float
    peak_min_ndvi: float
    cycle_days: int
    emergence_days: int
    base_yield_kg_ha: float


CROP_PATTERN_THRESHOLDS: Dict[str, PatternThresholds] = {
    # Annual
    "SOJA": CycleThresholds(ANNUAL, 0.70, 0.45, 0.15, 0.55, 80, 160, 0.35, "Soybean"),
    "MILHO": CycleThresholds(ANNUAL, 0.65, 0.40, 0.15, 0.50, 100, 180, 0.30, "Corn"),
    "GERGELIM": CycleThresholds(ANNUAL, 0.55, 0.35, 0.12, 0.42, 80, 130, 0.22, "Sesame"),
    "CEVADA": CycleThresholds(ANNUAL, 0.65, 0.40, 0.15, 0.50, 80, 150, 0.30, "Barley"),
    "ALGODAO": CycleThresholds(ANNUAL, 0.60, 0.38, 0.12, 0.48, 140, 220, 0.25, "Cotton"),
    "ARROZ": CycleThresholds(ANNUAL, 0.65, 0.35, 0.15, 0.48, 90, 150, 0.30, "Rice"),
    # Semi-perennial
    "CANA": CycleThresholds(SEMI_PERENNIAL, 0.70, 0.35, 0.10, 0.50, 300, 540, 0.35, "Sugarcane"),
    # Perennial
    "CAFE": PerennialThresholds(PERENNIAL, 0.50, 0.75, 0.30, 0.15, 0.25, "Coffee"),
}

CROP_PHENOLOGY_THRESHOLDS: Dict[str, PhenologyThresholds] = {
    "SOJA": PhenologyThresholds(0.35, 0.38, 0.70, 120, 8, 3500),
    "MILHO": PhenologyThresholds(0.30, 0.35, 0.65, 140, 7, 9000),
    "ALGODAO": PhenologyThresholds(0.32, 0.40, 0.60, 180, 10, 4500),
    "TRIGO": PhenologyThresholds(0.30, 0.35, 0.65, 120, 7, 3000),
}


def get_pattern_thresholds(crop_type: str) -> PatternThresholds:
    key = (crop_type or "").upper()
    return CROP_PATTERN_THRESHOLDS.get(key, CROP_PATTERN_THRESHOLDS[DEFAULT_CROP])


def get_phenology_thresholds(crop_type: str) -> PhenologyThresholds:
    key = (crop_type or "").upper()
    return CROP_PHENOLOGY_THRESHOLDS.get(key, CROP_PHENOLOGY_THRESHOLDS[DEFAULT_CROP])


def get_crop_category(crop_type: str) -> str:
    return get_pattern_thresholds(crop_type).category
