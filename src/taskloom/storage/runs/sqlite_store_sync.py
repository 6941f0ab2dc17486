from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
import json
import threading
from typing import Any

from taskloom.contracts.services.runs import RunMutation
from taskloom.contracts.errors.errors import InvalidStateError
from taskloom.core.runtime.run_types import ACTIVE_RUN_STATUSES, RunRecord, RunStatus, can_transition
from taskloom.storage.codec import doc_to_run, encode_enum, run_to_doc
from taskloom.storage.sqlite.connection import immediate_tx, open_sqlite, ts

"""
This is not used directly; only used by the async wrapper SqliteRunStore.
"""


class SQLiteRunStoreSync:
    """
    Durable run rows on SQLite.

    - The full record is stored as JSON in `data_json`.
    - Columns used for filtering (status, pipeline, user, times) are kept alongside it.
    - Thread-safe via RLock; conditional updates run inside BEGIN IMMEDIATE.
    """

    def __init__(self, path: str):
        self._db = open_sqlite(path)
        self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                run_id        TEXT PRIMARY KEY,
                pipeline_id   TEXT NOT NULL,
                user_id       TEXT NOT NULL,
                status        TEXT NOT NULL,
                priority      INTEGER NOT NULL DEFAULT 0,
                queued_at     REAL NOT NULL,
                scheduled_for REAL,
                timeout_at    REAL,
                data_json     TEXT NOT NULL
            )
            """
        )
        self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_runs_status ON pipeline_runs(status, priority, queued_at)"
        )
        self._db.execute("CREATE INDEX IF NOT EXISTS idx_runs_pipeline ON pipeline_runs(pipeline_id)")
        self._lock = threading.RLock()

    @staticmethod
    def _row(record: RunRecord) -> tuple[Any, ...]:
        return (
            record.run_id,
            record.pipeline_id,
            record.user_id,
            encode_enum(record.status),
            record.priority,
            ts(record.queued_at),
            ts(record.scheduled_for),
            ts(record.timeout_at),
            json.dumps(run_to_doc(record), ensure_ascii=False),
        )

    def _write(self, record: RunRecord) -> None:
        self._db.execute(
            """
            INSERT INTO pipeline_runs
                (run_id, pipeline_id, user_id, status, priority, queued_at,
                 scheduled_for, timeout_at, data_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                status = excluded.status,
                priority = excluded.priority,
                scheduled_for = excluded.scheduled_for,
                timeout_at = excluded.timeout_at,
                data_json = excluded.data_json
            """,
            self._row(record),
        )

    def create(self, record: RunRecord) -> None:
        with self._lock:
            self._db.execute(
                """
                INSERT INTO pipeline_runs
                    (run_id, pipeline_id, user_id, status, priority, queued_at,
                     scheduled_for, timeout_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._row(record),
            )

    def get(self, run_id: str) -> RunRecord | None:
        with self._lock:
            row = self._db.execute(
                "SELECT data_json FROM pipeline_runs WHERE run_id = ?", (run_id,)
            ).fetchone()
        if not row:
            return None
        return doc_to_run(json.loads(row[0]))

    def update(
        self,
        run_id: str,
        mutate: RunMutation,
        expected: Iterable[RunStatus] | None = None,
    ) -> RunRecord | None:
        allowed = set(expected) if expected is not None else None
        with self._lock, immediate_tx(self._db) as db:
            row = db.execute(
                "SELECT data_json FROM pipeline_runs WHERE run_id = ?", (run_id,)
            ).fetchone()
            if not row:
                return None
            rec = doc_to_run(json.loads(row[0]))
            if allowed is not None and rec.status not in allowed:
                return None
            previous = rec.status
            updated = mutate(rec)
            if not can_transition(previous, updated.status):
                # raising inside the transaction rolls it back
                raise InvalidStateError(
                    f"Illegal run transition {previous.value} -> {updated.status.value}",
                    status=previous.value,
                )
            self._write(updated)
            return updated

    def _select(self, where: str, params: list[Any], order: str, limit: int | None) -> list[RunRecord]:
        sql = "SELECT data_json FROM pipeline_runs"
        if where:
            sql += " WHERE " + where
        sql += " ORDER BY " + order
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [doc_to_run(json.loads(r[0])) for r in rows]

    def list(
        self,
        pipeline_id: str | None = None,
        user_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        where: list[str] = []
        params: list[Any] = []
        if pipeline_id is not None:
            where.append("pipeline_id = ?")
            params.append(pipeline_id)
        if user_id is not None:
            where.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            where.append("status = ?")
            params.append(encode_enum(status))
        return self._select(" AND ".join(where), params, "queued_at DESC", limit)

    def find_queued(self, now: datetime, limit: int = 50) -> list[RunRecord]:
        return self._select(
            "status = ? AND (scheduled_for IS NULL OR scheduled_for <= ?)",
            [encode_enum(RunStatus.queued), ts(now)],
            "priority DESC, queued_at ASC",
            limit,
        )

    def find_timed_out(self, now: datetime) -> list[RunRecord]:
        active = sorted(encode_enum(s) for s in ACTIVE_RUN_STATUSES)
        return self._select(
            f"status IN ({', '.join('?' for _ in active)}) AND timeout_at IS NOT NULL AND timeout_at <= ?",
            [*active, ts(now)],
            "timeout_at ASC",
            None,
        )
