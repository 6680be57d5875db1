"""
pheno_fusion - phenological signal-fusion engine.

Turns per-field NDVI and Sentinel-1 radar series into a crop-presence
classification, crop-cycle dates with confidence, and a fused harvest date.
"""

from .config import Settings, load_settings, setup_logging
from .errors import (
    PhenoFusionError,
    ProviderError,
    CalibrationError,
    PersistenceError,
    ShortCircuitViolation,
    FieldBusyError,
)

__version__ = "0.1.0"
