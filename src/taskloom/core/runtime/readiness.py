from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from taskloom.contracts.services.tasks import TaskStore
from taskloom.core.runtime.run_types import TaskRecord, TaskStatus


@dataclass
class ReadinessSnapshot:
    """Readiness derived from one read of a run's task rows."""

    tasks: list[TaskRecord]
    ready: list[TaskRecord]  # dispatchable now
    deferred: list[TaskRecord]  # ready except for a retry_at still in the future

    @property
    def has_forward_progress(self) -> bool:
        return bool(self.ready or self.deferred)


def is_ready(task: TaskRecord, by_node: dict[str, TaskRecord]) -> bool:
    """
    A PENDING task is ready iff every dependency node id maps to a COMPLETED task of the
    same run. A dependency without a task row is unsatisfied.
    """
    if task.status != TaskStatus.pending:
        return False
    for node_id in task.dependencies:
        dep = by_node.get(node_id)
        if dep is None or dep.status != TaskStatus.completed:
            return False
    return True


class ReadinessResolver:
    """
    Computes the ready set of a run from current TaskStore state.

    Nothing is cached between calls: every check re-reads the run's task rows, so a
    restarted process (or a second poller) sees exactly what is persisted.
    """

    def __init__(self, task_store: TaskStore):
        self._tasks = task_store

    @staticmethod
    def resolve(tasks: list[TaskRecord], *, now: datetime | None = None) -> ReadinessSnapshot:
        by_node = {t.node_id: t for t in tasks}
        ready: list[TaskRecord] = []
        deferred: list[TaskRecord] = []
        for task in tasks:
            if not is_ready(task, by_node):
                continue
            if now is not None and task.retry_at is not None and task.retry_at > now:
                deferred.append(task)
            else:
                ready.append(task)
        return ReadinessSnapshot(tasks=tasks, ready=ready, deferred=deferred)

    async def snapshot(self, run_id: str, *, now: datetime | None = None) -> ReadinessSnapshot:
        return self.resolve(await self._tasks.list_by_run(run_id), now=now)

    async def ready_tasks(self, run_id: str, *, now: datetime | None = None) -> list[TaskRecord]:
        """
        Tasks that may be claimed now. Without `now`, scheduled retries count as ready.
        """
        snap = await self.snapshot(run_id, now=now)
        return snap.ready
