from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime

from taskloom.contracts.services.runs import RunMutation, RunStore
from taskloom.core.runtime.run_types import RunRecord, RunStatus
from taskloom.storage.runs.sqlite_store_sync import SQLiteRunStoreSync


class SqliteRunStore(RunStore):
    """Async RunStore over SQLiteRunStoreSync; blocking calls run in a worker thread."""

    def __init__(self, path: str):
        self._sync = SQLiteRunStoreSync(path)

    async def create(self, record: RunRecord) -> None:
        await asyncio.to_thread(self._sync.create, record)

    async def get(self, run_id: str) -> RunRecord | None:
        return await asyncio.to_thread(self._sync.get, run_id)

    async def update(
        self,
        run_id: str,
        mutate: RunMutation,
        *,
        expected: Iterable[RunStatus] | None = None,
    ) -> RunRecord | None:
        return await asyncio.to_thread(self._sync.update, run_id, mutate, expected)

    async def list(
        self,
        *,
        pipeline_id: str | None = None,
        user_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        return await asyncio.to_thread(self._sync.list, pipeline_id, user_id, status, limit)

    async def find_queued(self, now: datetime, *, limit: int = 50) -> list[RunRecord]:
        return await asyncio.to_thread(self._sync.find_queued, now, limit)

    async def find_timed_out(self, now: datetime) -> list[RunRecord]:
        return await asyncio.to_thread(self._sync.find_timed_out, now)
