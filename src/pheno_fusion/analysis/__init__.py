from .crop_pattern import (
    analyze_crop_pattern,
    crop_pattern_from_dict,
    supported_crop_types,
    crop_thresholds_for_prompt,
    CropPatternResult,
    CropPatternMetrics,
)
from .phenology import (
    calculate_phenology,
    phenology_from_dict,
    PhenologyConfig,
    PhenologyResult,
    Diagnostic,
)
from .eos_fusion import (
    calculate_fused_eos,
    eos_fusion_from_dict,
    confidence_label,
    method_label,
    stage_label,
    EosFusionInput,
    EosFusionResult,
    FusionMetrics,
)
from .correlation import (
    calculate_historical_correlation,
    correlation_diagnosis,
    final_correlation,
    CorrelationResult,
)
