from .context import (
    GeneratedInsight,
    JobStatus,
    JobType,
    OnFail,
    PipelineContext,
    PipelineResult,
    StepDef,
    StepStatus,
)
from .errors import PipelineError, SetupError, StepError

__all__ = [
    "GeneratedInsight",
    "JobStatus",
    "JobType",
    "OnFail",
    "PipelineContext",
    "PipelineResult",
    "StepDef",
    "StepStatus",
    "PipelineError",
    "SetupError",
    "StepError",
]
