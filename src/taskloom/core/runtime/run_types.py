from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Core-level records for runs, tasks and log entries. These are independent from the
# pydantic boundary models in boundary_types.py and from any storage encoding.


class RunStatus(str, Enum):
    queued = "QUEUED"
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"


class TaskStatus(str, Enum):
    pending = "PENDING"
    queued = "QUEUED"
    running = "RUNNING"
    completed = "COMPLETED"
    failed = "FAILED"
    cancelled = "CANCELLED"


class LogLevel(str, Enum):
    debug = "DEBUG"
    info = "INFO"
    warn = "WARN"
    error = "ERROR"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.completed, RunStatus.failed, RunStatus.cancelled})
ACTIVE_RUN_STATUSES = frozenset({RunStatus.queued, RunStatus.running})
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.completed, TaskStatus.failed, TaskStatus.cancelled})

# Forward-only run transitions. FAILED -> QUEUED is the one backward edge, used only by the
# explicit retry path. Run stores reject any other status change.
RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.queued: frozenset(
        {RunStatus.running, RunStatus.completed, RunStatus.failed, RunStatus.cancelled}
    ),
    RunStatus.running: frozenset({RunStatus.completed, RunStatus.failed, RunStatus.cancelled}),
    RunStatus.completed: frozenset(),
    RunStatus.failed: frozenset({RunStatus.queued}),
    RunStatus.cancelled: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    # rewriting a row without changing its status is always allowed
    return current == target or target in RUN_TRANSITIONS[current]


@dataclass
class ExecutionMetrics:
    duration: float = 0.0
    tokens_used: int = 0
    cost: float = 0.0
    memory_usage: float = 0.0
    cpu_time: float = 0.0

    @classmethod
    def aggregate(cls, items: list[ExecutionMetrics]) -> ExecutionMetrics:
        """Sum everything except memory, which is the peak across tasks."""
        return cls(
            duration=sum(m.duration for m in items),
            tokens_used=sum(m.tokens_used for m in items),
            cost=sum(m.cost for m in items),
            memory_usage=max((m.memory_usage for m in items), default=0.0),
            cpu_time=sum(m.cpu_time for m in items),
        )


@dataclass
class RunRecord:
    """
    Core-level representation of one pipeline run.

    `progress` is derived from the task counters by `with_counts()`; stores never accept a
    progress value written on its own.
    """

    run_id: str
    pipeline_id: str
    user_id: str
    status: RunStatus
    configuration: dict[str, Any]
    queued_at: datetime
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] | None = None
    progress: float = 0.0
    total_tasks: int = 0
    completed_tasks: int = 0
    retry_count: int = 0
    max_retries: int = 3
    priority: int = 0
    scheduled_for: datetime | None = None
    timeout_at: datetime | None = None
    retry_strategy: dict[str, Any] | None = None  # RetryPolicy.to_dict() for this run's tasks
    error: dict[str, Any] | None = None
    failure_reason: str | None = None
    metrics: ExecutionMetrics | None = None
    executor_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_update_at: datetime | None = None

    def with_counts(self, completed_tasks: int, total_tasks: int | None = None) -> RunRecord:
        total = self.total_tasks if total_tasks is None else total_tasks
        self.total_tasks = total
        self.completed_tasks = completed_tasks
        self.progress = completed_tasks / total if total > 0 else 0.0
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass
class TaskRecord:
    task_id: str
    run_id: str
    node_id: str
    node_name: str
    node_type: str
    status: TaskStatus
    execution_order: int
    queued_at: datetime
    config: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_at: datetime | None = None  # earliest time a scheduled retry may be dispatched
    outputs: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    failure_reason: str | None = None
    progress: float = 0.0
    metrics: ExecutionMetrics | None = None
    cache_key: str | None = None
    cached: bool = False
    executor_id: str | None = None
    timeout_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_update_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass
class LogEntry:
    run_id: str
    level: LogLevel
    message: str
    timestamp: datetime
    log_id: str = ""
    task_id: str | None = None
    category: str | None = None
    source: str | None = None
    error_code: str | None = None
    sequence_number: int = 0  # assigned by the LogStore on append
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class LogStats:
    run_id: str
    total: int
    by_level: dict[str, int]
    by_category: dict[str, int]
    recent_errors: list[LogEntry] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return self.by_level.get(LogLevel.error.value, 0)

    @property
    def warning_count(self) -> int:
        return self.by_level.get(LogLevel.warn.value, 0)
