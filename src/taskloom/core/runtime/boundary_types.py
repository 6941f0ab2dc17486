# Models for data crossing the engine boundary: pipeline definitions coming in from the
# definition collaborator, task results coming back from executors, and the views handed
# to status pollers.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import traceback
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from taskloom.core.runtime.retry_policy import RetryPolicy
from taskloom.core.runtime.run_types import ExecutionMetrics, LogEntry, RunRecord, TaskRecord


class PipelineNode(BaseModel):
    id: str
    type: str
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return str(self.config.get("label") or self.type)


class PipelineConnection(BaseModel):
    source: str
    target: str


class PipelineConfiguration(BaseModel):
    nodes: list[PipelineNode] = Field(default_factory=list)
    connections: list[PipelineConnection] = Field(default_factory=list)

    def dependencies_of(self, node_id: str) -> list[str]:
        """Source ids of every connection targeting `node_id`, in declaration order."""
        deps: list[str] = []
        for conn in self.connections:
            if conn.target == node_id and conn.source not in deps:
                deps.append(conn.source)
        return deps

    def unknown_references(self) -> list[str]:
        known = {n.id for n in self.nodes}
        missing: list[str] = []
        for conn in self.connections:
            for ref in (conn.source, conn.target):
                if ref not in known and ref not in missing:
                    missing.append(ref)
        return missing


class PipelineDefinition(BaseModel):
    pipeline_id: str
    name: str
    configuration: PipelineConfiguration


class TaskMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    duration: float = 0.0
    tokens_used: int = Field(default=0, alias="tokensUsed")
    cost: float = 0.0
    memory_usage: float = Field(default=0.0, alias="memoryUsage")
    cpu_time: float = Field(default=0.0, alias="cpuTime")

    def to_core(self) -> ExecutionMetrics:
        return ExecutionMetrics(
            duration=self.duration,
            tokens_used=self.tokens_used,
            cost=self.cost,
            memory_usage=self.memory_usage,
            cpu_time=self.cpu_time,
        )


class TaskFailure(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    stack: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> TaskFailure:
        code = getattr(exc, "code", None) or "INTERNAL_ERROR"
        details = getattr(exc, "details", None)
        return cls(
            code=str(code),
            message=str(exc) or type(exc).__name__,
            details=dict(details) if details else {"exception": type(exc).__name__},
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    @classmethod
    def coerce(cls, raw: TaskFailure | BaseException | dict[str, Any] | None) -> TaskFailure:
        if isinstance(raw, TaskFailure):
            return raw
        if isinstance(raw, BaseException):
            return cls.from_exception(raw)
        if raw is None:
            return cls(code="UNKNOWN_ERROR", message="Task reported failure without error details")
        return cls.model_validate(raw)


class TaskResult(BaseModel):
    success: bool
    outputs: dict[str, Any] | None = None
    error: TaskFailure | None = None
    metrics: TaskMetrics | None = None


@dataclass
class DispatchTask:
    """What an executor receives for each claimed task."""

    id: str
    run_id: str
    node_id: str
    node_type: str
    config: dict[str, Any]
    inputs: dict[str, Any]
    upstream: dict[str, Any] = field(default_factory=dict)  # dependency node_id -> outputs
    attempt: int = 1


@dataclass
class ExecutionOptions:
    priority: int = 0
    scheduled_for: datetime | None = None
    timeout_ms: int | None = None
    max_retries: int | None = None
    retry_policy: RetryPolicy | None = None
    executor_id: str | None = None


@dataclass
class ProgressSummary:
    total: int
    completed: int
    running: int
    failed: int
    percentage: float


@dataclass
class ExecutionStatusView:
    run: RunRecord
    tasks: list[TaskRecord]
    progress: ProgressSummary
    recent_logs: list[LogEntry]


@dataclass
class ExecutionStreamView:
    run: RunRecord
    tasks: list[TaskRecord]
    logs: list[LogEntry]
