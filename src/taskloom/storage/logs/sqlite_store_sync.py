from __future__ import annotations

from collections.abc import Iterable
import copy
import json
import threading
from typing import Any
from uuid import uuid4

from taskloom.core.runtime.run_types import LogEntry, LogLevel, LogStats
from taskloom.storage.codec import doc_to_log, encode_enum, log_to_doc
from taskloom.storage.sqlite.connection import immediate_tx, open_sqlite, ts

"""
This is not used directly; only used by the async wrapper SqliteLogStore.
"""


class SQLiteLogStoreSync:
    """
    Append-only execution log on SQLite.

    Each row:
      - log_id          TEXT PRIMARY KEY
      - run_id          TEXT
      - task_id         TEXT (nullable)
      - seq             INTEGER, per-run, UNIQUE with run_id
      - level/category  TEXT, for filtering and stats
      - message         TEXT
      - ts              REAL (seconds since epoch)
      - payload         TEXT (JSON, full entry)
    """

    def __init__(self, path: str):
        self._db = open_sqlite(path)
        self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                log_id    TEXT PRIMARY KEY,
                run_id    TEXT NOT NULL,
                task_id   TEXT,
                seq       INTEGER NOT NULL,
                level     TEXT NOT NULL,
                category  TEXT,
                message   TEXT NOT NULL,
                ts        REAL NOT NULL,
                payload   TEXT NOT NULL,
                UNIQUE (run_id, seq)
            )
            """
        )
        self._db.execute("CREATE INDEX IF NOT EXISTS idx_logs_task ON execution_logs(task_id)")
        self._lock = threading.RLock()

    def append(self, entry: LogEntry) -> LogEntry:
        row = copy.deepcopy(entry)
        row.log_id = row.log_id or f"log-{uuid4().hex[:12]}"
        with self._lock, immediate_tx(self._db) as db:
            (last,) = db.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM execution_logs WHERE run_id = ?",
                (row.run_id,),
            ).fetchone()
            row.sequence_number = int(last) + 1
            db.execute(
                """
                INSERT INTO execution_logs
                    (log_id, run_id, task_id, seq, level, category, message, ts, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row.log_id,
                    row.run_id,
                    row.task_id,
                    row.sequence_number,
                    encode_enum(row.level),
                    row.category,
                    row.message,
                    ts(row.timestamp),
                    json.dumps(log_to_doc(row), ensure_ascii=False),
                ),
            )
        return row

    def _select(self, sql: str, params: list[Any]) -> list[LogEntry]:
        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [doc_to_log(json.loads(r[0])) for r in rows]

    def stream(
        self,
        run_id: str,
        from_sequence: int = 0,
        levels: Iterable[LogLevel] | None = None,
        limit: int | None = None,
    ) -> list[LogEntry]:
        where = ["run_id = ?", "seq > ?"]
        params: list[Any] = [run_id, from_sequence]
        if levels is not None:
            lv = [encode_enum(x) for x in levels]
            if not lv:
                return []
            where.append(f"level IN ({', '.join('?' for _ in lv)})")
            params.extend(lv)
        sql = "SELECT payload FROM execution_logs WHERE " + " AND ".join(where) + " ORDER BY seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return self._select(sql, params)

    def tail(self, run_id: str, limit: int = 50) -> list[LogEntry]:
        rows = self._select(
            "SELECT payload FROM execution_logs WHERE run_id = ? ORDER BY seq DESC LIMIT ?",
            [run_id, limit],
        )
        rows.reverse()
        return rows

    def for_task(self, task_id: str, limit: int = 100) -> list[LogEntry]:
        return self._select(
            "SELECT payload FROM execution_logs WHERE task_id = ? ORDER BY seq ASC LIMIT ?",
            [task_id, limit],
        )

    def search(self, run_id: str, query: str) -> list[LogEntry]:
        # LIKE is case-insensitive for ASCII in SQLite; escape the wildcards of the query
        pattern = "%" + query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        return self._select(
            "SELECT payload FROM execution_logs WHERE run_id = ? AND message LIKE ? ESCAPE '\\' "
            "ORDER BY seq ASC",
            [run_id, pattern],
        )

    def stats(self, run_id: str, recent_errors: int = 10) -> LogStats:
        with self._lock:
            (total,) = self._db.execute(
                "SELECT COUNT(*) FROM execution_logs WHERE run_id = ?", (run_id,)
            ).fetchone()
            levels = self._db.execute(
                "SELECT level, COUNT(*) FROM execution_logs WHERE run_id = ? GROUP BY level",
                (run_id,),
            ).fetchall()
            categories = self._db.execute(
                "SELECT category, COUNT(*) FROM execution_logs "
                "WHERE run_id = ? AND category IS NOT NULL GROUP BY category",
                (run_id,),
            ).fetchall()
        errors = self._select(
            "SELECT payload FROM execution_logs WHERE run_id = ? AND level = ? "
            "ORDER BY seq DESC LIMIT ?",
            [run_id, encode_enum(LogLevel.error), recent_errors],
        )
        return LogStats(
            run_id=run_id,
            total=int(total),
            by_level={lvl: int(n) for lvl, n in levels},
            by_category={cat: int(n) for cat, n in categories},
            recent_errors=errors,
        )
