from .analysis_mode import AnalysisMode
from .context_resolver import AmbientEnvironment, ContextResolver, detect_environment, is_driver_required, resolve_contexts
from .parallel_executor import ParallelContextExecutor

__all__ = [
    "AmbientEnvironment",
    "AnalysisMode",
    "ContextResolver",
    "ParallelContextExecutor",
    "detect_environment",
    "is_driver_required",
    "resolve_contexts",
]
