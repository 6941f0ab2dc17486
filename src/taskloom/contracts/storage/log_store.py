from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from taskloom.core.runtime.run_types import LogEntry, LogLevel, LogStats

"""
Append-only, per-run sequenced execution log.

Implementations:
- InMemoryLogStore: per-run asyncio lock around the max+1 assignment
- SqliteLogStore: BEGIN IMMEDIATE transaction plus UNIQUE(run_id, sequence_number)

Two entries of the same run must never share a sequence number, and sequence numbers of a
run are gap-free when writers go through `append()`.
"""


class LogStore(Protocol):
    async def append(self, entry: LogEntry) -> LogEntry: ...
    async def stream(
        self,
        run_id: str,
        from_sequence: int = 0,
        *,
        levels: Iterable[LogLevel] | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]: ...
    async def tail(self, run_id: str, limit: int = 50) -> list[LogEntry]: ...
    async def for_task(self, task_id: str, limit: int = 100) -> list[LogEntry]: ...
    async def search(self, run_id: str, query: str) -> list[LogEntry]: ...
    async def stats(self, run_id: str, *, recent_errors: int = 10) -> LogStats: ...
