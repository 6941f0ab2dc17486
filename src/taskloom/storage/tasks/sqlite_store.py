from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime

from taskloom.contracts.services.tasks import TaskMutation, TaskStore
from taskloom.core.runtime.run_types import TaskRecord, TaskStatus
from taskloom.storage.tasks.sqlite_store_sync import SQLiteTaskStoreSync


class SqliteTaskStore(TaskStore):
    """Async TaskStore over SQLiteTaskStoreSync."""

    def __init__(self, path: str):
        self._sync = SQLiteTaskStoreSync(path)

    async def create_many(self, records: list[TaskRecord]) -> None:
        await asyncio.to_thread(self._sync.create_many, records)

    async def get(self, task_id: str) -> TaskRecord | None:
        return await asyncio.to_thread(self._sync.get, task_id)

    async def list_by_run(self, run_id: str) -> list[TaskRecord]:
        return await asyncio.to_thread(self._sync.list_by_run, run_id)

    async def list_by_status(self, run_id: str, status: TaskStatus) -> list[TaskRecord]:
        return await asyncio.to_thread(self._sync.list_by_status, run_id, status)

    async def find_by_node(self, run_id: str, node_id: str) -> TaskRecord | None:
        return await asyncio.to_thread(self._sync.find_by_node, run_id, node_id)

    async def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        *,
        expected: Iterable[TaskStatus] | None = None,
    ) -> TaskRecord | None:
        return await asyncio.to_thread(self._sync.update, task_id, mutate, expected)

    async def update_where(
        self,
        run_id: str,
        mutate: TaskMutation,
        *,
        expected: Iterable[TaskStatus],
    ) -> list[TaskRecord]:
        return await asyncio.to_thread(self._sync.update_where, run_id, mutate, list(expected))

    async def find_due_retries(self, now: datetime) -> list[TaskRecord]:
        return await asyncio.to_thread(self._sync.find_due_retries, now)

    async def find_timed_out(self, now: datetime) -> list[TaskRecord]:
        return await asyncio.to_thread(self._sync.find_timed_out, now)
