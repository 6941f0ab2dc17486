from __future__ import annotations

from typing import Any


class ExecutionError(Exception):
    """Base class for every error raised by the execution engine."""


class TaskExecutionError(ExecutionError):
    """
    Raised by executors (or built from a reported failure) for a failed task.

    `code` decides the retry path: see RetryPolicy.retryable_codes.
    """

    default_code = "TASK_FAILED"

    def __init__(
        self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.code = code or self.default_code
        self.details = details or {}


class TransientTaskError(TaskExecutionError):
    default_code = "TEMPORARY_FAILURE"


class PermanentTaskError(TaskExecutionError):
    default_code = "PERMANENT_FAILURE"


class RunNotFoundError(ExecutionError, KeyError):
    def __init__(self, run_id: str):
        super().__init__(f"Pipeline run '{run_id}' not found")
        self.run_id = run_id

    def __str__(self) -> str:
        return self.args[0]


class TaskNotFoundError(ExecutionError, KeyError):
    def __init__(self, task_id: str):
        super().__init__(f"Task execution '{task_id}' not found")
        self.task_id = task_id

    def __str__(self) -> str:
        return self.args[0]


class RetryLimitExceededError(ExecutionError):
    def __init__(self, kind: str, ident: str, retry_count: int, max_retries: int):
        super().__init__(
            f"Maximum retry count exceeded for {kind} '{ident}' ({retry_count}/{max_retries})"
        )
        self.retry_count = retry_count
        self.max_retries = max_retries


class InvalidStateError(ExecutionError):
    def __init__(self, message: str, *, status: str | None = None):
        super().__init__(message)
        self.status = status


class ConfigurationNotFoundError(ExecutionError):
    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline '{pipeline_id}' or its configuration could not be resolved")
        self.pipeline_id = pipeline_id


class InvalidConfigurationError(ExecutionError):
    def __init__(self, pipeline_id: str, unknown_nodes: list[str]):
        super().__init__(
            f"Pipeline '{pipeline_id}' has connections to unknown nodes: {', '.join(unknown_nodes)}"
        )
        self.pipeline_id = pipeline_id
        self.unknown_nodes = unknown_nodes
