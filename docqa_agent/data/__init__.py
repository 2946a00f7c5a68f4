from .run_config import RefinementConfig
from .run_structures import (
    AnalysisResult,
    CanonicalTest,
    ContextRun,
    ContextRunStatus,
    Decision,
    InterventionKind,
    InterventionRecord,
    RunMetadata,
    StepReport,
    StepState,
    TokenUsage,
)
from .step_structures import (
    DRIVER_REQUIRED_KINDS,
    SELECTOR_KINDS,
    ActionKind,
    AttemptOutcome,
    BrowserSpec,
    ExecutionAttempt,
    ExecutionContext,
    ExecutionOutcome,
    RefinedStep,
    RoughStep,
    SourceProvenance,
)

__all__ = [
    "ActionKind",
    "AnalysisResult",
    "AttemptOutcome",
    "BrowserSpec",
    "CanonicalTest",
    "ContextRun",
    "ContextRunStatus",
    "DRIVER_REQUIRED_KINDS",
    "Decision",
    "ExecutionAttempt",
    "ExecutionContext",
    "ExecutionOutcome",
    "InterventionKind",
    "InterventionRecord",
    "RefinedStep",
    "RefinementConfig",
    "RoughStep",
    "RunMetadata",
    "SELECTOR_KINDS",
    "SourceProvenance",
    "StepReport",
    "StepState",
    "TokenUsage",
]
