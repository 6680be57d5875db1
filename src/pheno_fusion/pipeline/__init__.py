from .context import (
    FieldInfo,
    PipelineContext,
    Services,
    ClimateServices,
    StepResult,
    AiValidationResult,
    create_services,
    create_http_services,
    create_initial_context,
)
from .orchestrator import PipelineOrchestrator, RunRegistry, run_pipeline, process_field, STEPS
from .status import determine_status, finalize_status
