from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
import json
import threading
from typing import Any

from taskloom.contracts.services.tasks import TaskMutation
from taskloom.core.runtime.run_types import TaskRecord, TaskStatus
from taskloom.storage.codec import doc_to_task, encode_enum, task_to_doc
from taskloom.storage.sqlite.connection import immediate_tx, open_sqlite, ts

"""
This is not used directly; only used by the async wrapper SqliteTaskStore.
"""


class SQLiteTaskStoreSync:
    """
    Durable task rows on SQLite.

    Each row:
      - task_id / run_id / node_id   identity
      - status                       claim guard for conditional updates
      - execution_order              listing order
      - retry_at / timeout_at        REAL seconds, used by the reaper queries
      - data_json                    the full TaskRecord
    """

    def __init__(self, path: str):
        self._db = open_sqlite(path)
        self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS task_executions (
                task_id         TEXT PRIMARY KEY,
                run_id          TEXT NOT NULL,
                node_id         TEXT NOT NULL,
                status          TEXT NOT NULL,
                execution_order INTEGER NOT NULL,
                retry_at        REAL,
                timeout_at      REAL,
                data_json       TEXT NOT NULL,
                UNIQUE (run_id, node_id)
            )
            """
        )
        self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_run ON task_executions(run_id, execution_order)"
        )
        self._db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON task_executions(status)")
        self._lock = threading.RLock()

    @staticmethod
    def _row(record: TaskRecord) -> tuple[Any, ...]:
        return (
            record.task_id,
            record.run_id,
            record.node_id,
            encode_enum(record.status),
            record.execution_order,
            ts(record.retry_at),
            ts(record.timeout_at),
            json.dumps(task_to_doc(record), ensure_ascii=False),
        )

    def create_many(self, records: list[TaskRecord]) -> None:
        with self._lock, immediate_tx(self._db) as db:
            db.executemany(
                """
                INSERT INTO task_executions
                    (task_id, run_id, node_id, status, execution_order, retry_at, timeout_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [self._row(r) for r in records],
            )

    def _select(self, where: str, params: list[Any]) -> list[TaskRecord]:
        sql = f"SELECT data_json FROM task_executions WHERE {where} ORDER BY execution_order ASC"
        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [doc_to_task(json.loads(r[0])) for r in rows]

    def get(self, task_id: str) -> TaskRecord | None:
        found = self._select("task_id = ?", [task_id])
        return found[0] if found else None

    def list_by_run(self, run_id: str) -> list[TaskRecord]:
        return self._select("run_id = ?", [run_id])

    def list_by_status(self, run_id: str, status: TaskStatus) -> list[TaskRecord]:
        return self._select("run_id = ? AND status = ?", [run_id, encode_enum(status)])

    def find_by_node(self, run_id: str, node_id: str) -> TaskRecord | None:
        found = self._select("run_id = ? AND node_id = ?", [run_id, node_id])
        return found[0] if found else None

    def _replace(self, db, record: TaskRecord) -> None:
        db.execute(
            """
            UPDATE task_executions
               SET status = ?, retry_at = ?, timeout_at = ?, data_json = ?
             WHERE task_id = ?
            """,
            (
                encode_enum(record.status),
                ts(record.retry_at),
                ts(record.timeout_at),
                json.dumps(task_to_doc(record), ensure_ascii=False),
                record.task_id,
            ),
        )

    def update(
        self,
        task_id: str,
        mutate: TaskMutation,
        expected: Iterable[TaskStatus] | None = None,
    ) -> TaskRecord | None:
        allowed = set(expected) if expected is not None else None
        with self._lock, immediate_tx(self._db) as db:
            row = db.execute(
                "SELECT data_json FROM task_executions WHERE task_id = ?", (task_id,)
            ).fetchone()
            if not row:
                return None
            rec = doc_to_task(json.loads(row[0]))
            if allowed is not None and rec.status not in allowed:
                return None
            updated = mutate(rec)
            self._replace(db, updated)
            return updated

    def update_where(
        self,
        run_id: str,
        mutate: TaskMutation,
        expected: Iterable[TaskStatus],
    ) -> list[TaskRecord]:
        statuses = sorted(encode_enum(s) for s in expected)
        out: list[TaskRecord] = []
        with self._lock, immediate_tx(self._db) as db:
            rows = db.execute(
                f"""
                SELECT data_json FROM task_executions
                 WHERE run_id = ? AND status IN ({', '.join('?' for _ in statuses)})
                 ORDER BY execution_order ASC
                """,
                [run_id, *statuses],
            ).fetchall()
            for (payload,) in rows:
                updated = mutate(doc_to_task(json.loads(payload)))
                self._replace(db, updated)
                out.append(updated)
        return out

    def find_due_retries(self, now: datetime) -> list[TaskRecord]:
        return self._select(
            "status = ? AND retry_at IS NOT NULL AND retry_at <= ?",
            [encode_enum(TaskStatus.pending), ts(now)],
        )

    def find_timed_out(self, now: datetime) -> list[TaskRecord]:
        return self._select(
            "status = ? AND timeout_at IS NOT NULL AND timeout_at <= ?",
            [encode_enum(TaskStatus.running), ts(now)],
        )
