from __future__ import annotations

import asyncio
from collections.abc import Iterable

from taskloom.contracts.storage.log_store import LogStore
from taskloom.core.runtime.run_types import LogEntry, LogLevel, LogStats
from taskloom.storage.logs.sqlite_store_sync import SQLiteLogStoreSync


class SqliteLogStore(LogStore):
    def __init__(self, path: str):
        self._sync = SQLiteLogStoreSync(path)

    async def append(self, entry: LogEntry) -> LogEntry:
        return await asyncio.to_thread(self._sync.append, entry)

    async def stream(
        self,
        run_id: str,
        from_sequence: int = 0,
        *,
        levels: Iterable[LogLevel] | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        lv = list(levels) if levels is not None else None
        return await asyncio.to_thread(self._sync.stream, run_id, from_sequence, lv, limit)

    async def tail(self, run_id: str, limit: int = 50) -> list[LogEntry]:
        return await asyncio.to_thread(self._sync.tail, run_id, limit)

    async def for_task(self, task_id: str, limit: int = 100) -> list[LogEntry]:
        return await asyncio.to_thread(self._sync.for_task, task_id, limit)

    async def search(self, run_id: str, query: str) -> list[LogEntry]:
        return await asyncio.to_thread(self._sync.search, run_id, query)

    async def stats(self, run_id: str, *, recent_errors: int = 10) -> LogStats:
        return await asyncio.to_thread(self._sync.stats, run_id, recent_errors)
