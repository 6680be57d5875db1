"""
SAR -> NDVI calibration and gap filling.

- models.py: GPR / KNN / ridge-linear regressors as plain-data parameters
- calibration.py: per-field model training and the calibration stores
- sar_fusion.py: gap detection and fused series construction
- rvi_fusion.py: fixed-coefficient RVI gap filling when no calibration applies
"""

from .calibration import (
    train_local_calibration,
    calibration_from_dict,
    CalibrationModel,
    CalibrationStore,
    JsonCalibrationStore,
)
from .sar_fusion import (
    fuse_sar_ndvi,
    calculate_harvest_confidence,
    build_fusion_metrics,
    fusion_from_dict,
    FusionResult,
    FusedPoint,
)
from .rvi_fusion import (
    fuse_rvi_ndvi,
    calculate_rvi,
    build_rvi_fusion_metrics,
)

__all__ = [
    # calibration
    'train_local_calibration',
    'calibration_from_dict',
    'CalibrationModel',
    'CalibrationStore',
    'JsonCalibrationStore',
    # sar_fusion
    'fuse_sar_ndvi',
    'calculate_harvest_confidence',
    'build_fusion_metrics',
    'fusion_from_dict',
    'FusionResult',
    'FusedPoint',
    # rvi_fusion
    'fuse_rvi_ndvi',
    'calculate_rvi',
    'build_rvi_fusion_metrics',
]
