from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import sqlite3


def open_sqlite(path: str) -> sqlite3.Connection:
    """
    Open an autocommit connection shared across threads.

    Callers guard it with their own RLock and use `immediate_tx()` for multi-statement
    writes, so conditional updates stay atomic even across processes sharing the file.
    """
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    db = sqlite3.connect(
        path,
        check_same_thread=False,  # allow multi-thread access (guarded by RLock)
        isolation_level=None,  # autocommit; explicit BEGIN for transactions
        timeout=30.0,
    )
    if path != ":memory:":
        db.execute("PRAGMA journal_mode=WAL;")
    db.execute("PRAGMA synchronous=NORMAL;")
    return db


@contextmanager
def immediate_tx(db: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    # BEGIN IMMEDIATE takes the write lock up front, so read-check-write is serialized
    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.execute("ROLLBACK")
        raise
    else:
        db.execute("COMMIT")


def ts(dt: datetime | None) -> float | None:
    return dt.timestamp() if dt is not None else None
