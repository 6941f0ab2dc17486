from __future__ import annotations

import asyncio
from collections.abc import Iterable
import copy
from datetime import datetime

from taskloom.contracts.services.tasks import TaskMutation, TaskStore
from taskloom.core.runtime.run_types import TaskRecord, TaskStatus


class InMemoryTaskStore(TaskStore):
    """
    In-memory TaskStore.

    A single asyncio.Lock guards every read-modify-write, so the conditional `update()` is
    the exclusive claim point for concurrent pollers within one event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, TaskRecord] = {}
        self._by_run: dict[str, list[str]] = {}
        self._lock = asyncio.Lock()

    async def create_many(self, records: list[TaskRecord]) -> None:
        async with self._lock:
            for rec in records:
                if rec.task_id in self._records:
                    raise ValueError(f"Task '{rec.task_id}' already exists")
            for rec in records:
                self._records[rec.task_id] = copy.deepcopy(rec)
                self._by_run.setdefault(rec.run_id, []).append(rec.task_id)

    async def get(self, task_id: str) -> TaskRecord | None:
        async with self._lock:
            rec = self._records.get(task_id)
            return copy.deepcopy(rec) if rec is not None else None

    def _run_rows(self, run_id: str) -> list[TaskRecord]:
        rows = [self._records[tid] for tid in self._by_run.get(run_id, [])]
        return sorted(rows, key=lambda t: t.execution_order)

    async def list_by_run(self, run_id: str) -> list[TaskRecord]:
        async with self._lock:
            return [copy.deepcopy(t) for t in self._run_rows(run_id)]

    async def list_by_status(self, run_id: str, status: TaskStatus) -> list[TaskRecord]:
        async with self._lock:
            return [copy.deepcopy(t) for t in self._run_rows(run_id) if t.status == status]

    async def find_by_node(self, run_id: str, node_id: str) -> TaskRecord | None:
        async with self._lock:
            for t in self._run_rows(run_id):
                if t.node_id == node_id:
                    return copy.deepcopy(t)
        return None

    async def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        *,
        expected: Iterable[TaskStatus] | None = None,
    ) -> TaskRecord | None:
        allowed = set(expected) if expected is not None else None
        async with self._lock:
            rec = self._records.get(task_id)
            if rec is None:
                return None
            if allowed is not None and rec.status not in allowed:
                return None
            updated = mutate(copy.deepcopy(rec))
            self._records[task_id] = updated
            return copy.deepcopy(updated)

    async def update_where(
        self,
        run_id: str,
        mutate: TaskMutation,
        *,
        expected: Iterable[TaskStatus],
    ) -> list[TaskRecord]:
        allowed = set(expected)
        out: list[TaskRecord] = []
        async with self._lock:
            for rec in self._run_rows(run_id):
                if rec.status not in allowed:
                    continue
                updated = mutate(copy.deepcopy(rec))
                self._records[rec.task_id] = updated
                out.append(copy.deepcopy(updated))
        return out

    async def find_due_retries(self, now: datetime) -> list[TaskRecord]:
        async with self._lock:
            return [
                copy.deepcopy(t)
                for t in self._records.values()
                if t.status == TaskStatus.pending and t.retry_at is not None and t.retry_at <= now
            ]

    async def find_timed_out(self, now: datetime) -> list[TaskRecord]:
        async with self._lock:
            return [
                copy.deepcopy(t)
                for t in self._records.values()
                if t.status == TaskStatus.running and t.timeout_at is not None and t.timeout_at <= now
            ]
