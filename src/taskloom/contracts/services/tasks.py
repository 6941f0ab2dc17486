from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Protocol

from taskloom.core.runtime.run_types import TaskRecord, TaskStatus

TaskMutation = Callable[[TaskRecord], TaskRecord]


class TaskStore(Protocol):
    """
    Abstract interface for persisting task rows (one per pipeline node per run).

    - `create_many()` writes a run's full task set in one atomic batch.
    - `update()` / `update_where()` are conditional: `mutate` runs against the current row
      only when its status is in `expected`. This is what makes task claiming exclusive.
    - Listing methods return rows ordered by execution_order.
    """

    async def create_many(self, records: list[TaskRecord]) -> None: ...
    async def get(self, task_id: str) -> TaskRecord | None: ...
    async def list_by_run(self, run_id: str) -> list[TaskRecord]: ...
    async def list_by_status(self, run_id: str, status: TaskStatus) -> list[TaskRecord]: ...
    async def find_by_node(self, run_id: str, node_id: str) -> TaskRecord | None: ...
    async def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        *,
        expected: Iterable[TaskStatus] | None = None,
    ) -> TaskRecord | None: ...
    async def update_where(
        self,
        run_id: str,
        mutate: TaskMutation,
        *,
        expected: Iterable[TaskStatus],
    ) -> list[TaskRecord]: ...
    async def find_due_retries(self, now: datetime) -> list[TaskRecord]: ...
    async def find_timed_out(self, now: datetime) -> list[TaskRecord]: ...
