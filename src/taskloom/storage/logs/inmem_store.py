from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Iterable
import copy
from uuid import uuid4

from taskloom.contracts.storage.log_store import LogStore
from taskloom.core.runtime.run_types import LogEntry, LogLevel, LogStats


class InMemoryLogStore(LogStore):
    """
    Process-local execution log.

    - One list per run, kept in sequence order.
    - Sequence assignment (last + 1) happens under a per-run asyncio.Lock.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list[LogEntry]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = self._locks[run_id] = asyncio.Lock()
        return lock

    async def append(self, entry: LogEntry) -> LogEntry:
        async with self._lock_for(entry.run_id):
            rows = self._entries.setdefault(entry.run_id, [])
            stored = copy.deepcopy(entry)
            stored.sequence_number = (rows[-1].sequence_number if rows else 0) + 1
            stored.log_id = stored.log_id or f"log-{uuid4().hex[:12]}"
            rows.append(stored)
            return copy.deepcopy(stored)

    async def stream(
        self,
        run_id: str,
        from_sequence: int = 0,
        *,
        levels: Iterable[LogLevel] | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        wanted = set(levels) if levels is not None else None
        out: list[LogEntry] = []
        for e in self._entries.get(run_id, []):
            if e.sequence_number <= from_sequence:
                continue
            if wanted is not None and e.level not in wanted:
                continue
            out.append(copy.deepcopy(e))
            if limit is not None and len(out) >= limit:
                break
        return out

    async def tail(self, run_id: str, limit: int = 50) -> list[LogEntry]:
        rows = self._entries.get(run_id, [])
        return [copy.deepcopy(e) for e in rows[-limit:]] if limit > 0 else []

    async def for_task(self, task_id: str, limit: int = 100) -> list[LogEntry]:
        out: list[LogEntry] = []
        for rows in self._entries.values():
            out.extend(e for e in rows if e.task_id == task_id)
        out.sort(key=lambda e: e.sequence_number)
        return [copy.deepcopy(e) for e in out[:limit]]

    async def search(self, run_id: str, query: str) -> list[LogEntry]:
        needle = query.lower()
        return [
            copy.deepcopy(e) for e in self._entries.get(run_id, []) if needle in e.message.lower()
        ]

    async def stats(self, run_id: str, *, recent_errors: int = 10) -> LogStats:
        rows = self._entries.get(run_id, [])
        by_level = Counter(e.level.value for e in rows)
        by_category = Counter(e.category for e in rows if e.category)
        errors = [e for e in rows if e.level == LogLevel.error]
        return LogStats(
            run_id=run_id,
            total=len(rows),
            by_level=dict(by_level),
            by_category=dict(by_category),
            recent_errors=[copy.deepcopy(e) for e in reversed(errors[-recent_errors:])],
        )
