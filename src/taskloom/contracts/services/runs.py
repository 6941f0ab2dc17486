from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Protocol

from taskloom.core.runtime.run_types import RunRecord, RunStatus

RunMutation = Callable[[RunRecord], RunRecord]


class RunStore(Protocol):
    """
    Abstract interface for persisting run rows.

    Implementations can be in-memory or backed by SQLite. `update()` is the only write path
    after creation: it applies `mutate` to the current row atomically, and only when the row's
    status is in `expected` (None = any status). It returns the updated copy, or None when the
    row is missing or the guard did not match. A mutation that moves the status along an edge
    outside RUN_TRANSITIONS raises InvalidStateError and nothing is written.
    """

    async def create(self, record: RunRecord) -> None: ...
    async def get(self, run_id: str) -> RunRecord | None: ...
    async def update(
        self,
        run_id: str,
        mutate: RunMutation,
        *,
        expected: Iterable[RunStatus] | None = None,
    ) -> RunRecord | None: ...
    async def list(
        self,
        *,
        pipeline_id: str | None = None,
        user_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]: ...
    async def find_queued(self, now: datetime, *, limit: int = 50) -> list[RunRecord]: ...
    async def find_timed_out(self, now: datetime) -> list[RunRecord]: ...
