__version__ = "0.1.0"

# Engine
from .core.runtime.execution_coordinator import ExecutionCoordinator
from .runtime import build_coordinator

# Boundary types
from .core.runtime.boundary_types import (
    DispatchTask,
    ExecutionOptions,
    PipelineConfiguration,
    PipelineDefinition,
    TaskFailure,
    TaskMetrics,
    TaskResult,
)
from .core.runtime.retry_policy import RetryPolicy
from .core.runtime.run_types import LogLevel, RunStatus, TaskStatus

# Pipelines
from .services.pipelines.inmem_source import InMemoryPipelineSource

__all__ = [
    # Engine
    "ExecutionCoordinator", "build_coordinator",
    # Boundary types
    "DispatchTask", "ExecutionOptions", "PipelineConfiguration", "PipelineDefinition",
    "TaskFailure", "TaskMetrics", "TaskResult", "RetryPolicy",
    "LogLevel", "RunStatus", "TaskStatus",
    # Pipelines
    "InMemoryPipelineSource",
]
