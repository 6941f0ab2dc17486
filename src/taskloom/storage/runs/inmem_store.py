from __future__ import annotations

import asyncio
from collections.abc import Iterable
import copy
from datetime import datetime

from taskloom.contracts.services.runs import RunMutation, RunStore
from taskloom.contracts.errors.errors import InvalidStateError
from taskloom.core.runtime.run_types import ACTIVE_RUN_STATUSES, RunRecord, RunStatus, can_transition


class InMemoryRunStore(RunStore):
    """
    Simple in-memory RunStore useful for tests and embedded use.

    Not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._records: dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: RunRecord) -> None:
        async with self._lock:
            self._records[record.run_id] = copy.deepcopy(record)

    async def get(self, run_id: str) -> RunRecord | None:
        async with self._lock:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            # return a deep copy to avoid external mutation of internal state
            return copy.deepcopy(rec)

    async def update(
        self,
        run_id: str,
        mutate: RunMutation,
        *,
        expected: Iterable[RunStatus] | None = None,
    ) -> RunRecord | None:
        allowed = set(expected) if expected is not None else None
        async with self._lock:
            rec = self._records.get(run_id)
            if rec is None:
                return None
            if allowed is not None and rec.status not in allowed:
                return None
            updated = mutate(copy.deepcopy(rec))
            if not can_transition(rec.status, updated.status):
                raise InvalidStateError(
                    f"Illegal run transition {rec.status.value} -> {updated.status.value}",
                    status=rec.status.value,
                )
            self._records[run_id] = updated
            return copy.deepcopy(updated)

    async def list(
        self,
        *,
        pipeline_id: str | None = None,
        user_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        async with self._lock:
            records: list[RunRecord] = list(self._records.values())
            if pipeline_id is not None:
                records = [r for r in records if r.pipeline_id == pipeline_id]
            if user_id is not None:
                records = [r for r in records if r.user_id == user_id]
            if status is not None:
                records = [r for r in records if r.status == status]

            records = sorted(records, key=lambda r: r.queued_at, reverse=True)
            # return copies
            return [copy.deepcopy(r) for r in records[:limit]]

    async def find_queued(self, now: datetime, *, limit: int = 50) -> list[RunRecord]:
        async with self._lock:
            records = [
                r
                for r in self._records.values()
                if r.status == RunStatus.queued
                and (r.scheduled_for is None or r.scheduled_for <= now)
            ]
            records.sort(key=lambda r: (-r.priority, r.queued_at))
            return [copy.deepcopy(r) for r in records[:limit]]

    async def find_timed_out(self, now: datetime) -> list[RunRecord]:
        async with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._records.values()
                if r.status in ACTIVE_RUN_STATUSES
                and r.timeout_at is not None
                and r.timeout_at <= now
            ]
