from __future__ import annotations

from dataclasses import asdict, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from taskloom.core.runtime.run_types import (
    ExecutionMetrics,
    LogEntry,
    LogLevel,
    RunRecord,
    RunStatus,
    TaskRecord,
    TaskStatus,
)

# JSON-friendly encoding of the core records. Only the SQLite adapters use this; the domain
# works with typed fields throughout.

E = TypeVar("E", bound=Enum)


def encode_dt(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    # ISO-8601 string; JSON friendly
    return dt.isoformat()


def decode_dt(raw: Any) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    s = str(raw)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def encode_enum(value: Any) -> str:
    """
    Normalize an enum member to its plain value.

    - RunStatus.completed -> "COMPLETED"
    - "RunStatus.completed" -> "completed" (tolerated, then resolved by decode_enum)
    - "COMPLETED" -> "COMPLETED"
    """
    if isinstance(value, Enum):
        return value.value
    s = str(value)
    if "." in s and s.split(".", 1)[0].endswith(("Status", "Level")):
        return s.split(".", 1)[1]
    return s


def decode_enum(enum_cls: type[E], raw: Any) -> E:
    if isinstance(raw, enum_cls):
        return raw
    s = encode_enum(raw)
    try:
        return enum_cls(s)
    except ValueError:
        # member name form, e.g. "completed"
        return enum_cls[s]


def _encode_metrics(m: ExecutionMetrics | None) -> dict[str, Any] | None:
    return asdict(m) if m is not None else None


def _decode_metrics(raw: Any) -> ExecutionMetrics | None:
    if not raw:
        return None
    known = {f.name for f in fields(ExecutionMetrics)}
    return ExecutionMetrics(**{k: v for k, v in dict(raw).items() if k in known})


_RUN_DT_FIELDS = ("queued_at", "scheduled_for", "timeout_at", "started_at", "completed_at", "last_update_at")
_TASK_DT_FIELDS = ("queued_at", "retry_at", "timeout_at", "started_at", "completed_at", "last_update_at")


def run_to_doc(record: RunRecord) -> dict[str, Any]:
    d = asdict(record)
    d["status"] = encode_enum(record.status)
    d["metrics"] = _encode_metrics(record.metrics)
    for name in _RUN_DT_FIELDS:
        d[name] = encode_dt(getattr(record, name))
    return d


def doc_to_run(doc: dict[str, Any]) -> RunRecord:
    known = {f.name for f in fields(RunRecord)}
    data = {k: v for k, v in doc.items() if k in known}
    data["status"] = decode_enum(RunStatus, doc.get("status"))
    data["metrics"] = _decode_metrics(doc.get("metrics"))
    data["inputs"] = dict(doc.get("inputs") or {})
    data["configuration"] = dict(doc.get("configuration") or {})
    for name in _RUN_DT_FIELDS:
        data[name] = decode_dt(doc.get(name))
    return RunRecord(**data)


def task_to_doc(record: TaskRecord) -> dict[str, Any]:
    d = asdict(record)
    d["status"] = encode_enum(record.status)
    d["metrics"] = _encode_metrics(record.metrics)
    for name in _TASK_DT_FIELDS:
        d[name] = encode_dt(getattr(record, name))
    return d


def doc_to_task(doc: dict[str, Any]) -> TaskRecord:
    known = {f.name for f in fields(TaskRecord)}
    data = {k: v for k, v in doc.items() if k in known}
    data["status"] = decode_enum(TaskStatus, doc.get("status"))
    data["metrics"] = _decode_metrics(doc.get("metrics"))
    data["dependencies"] = list(doc.get("dependencies") or [])
    data["config"] = dict(doc.get("config") or {})
    for name in _TASK_DT_FIELDS:
        data[name] = decode_dt(doc.get(name))
    return TaskRecord(**data)


def log_to_doc(entry: LogEntry) -> dict[str, Any]:
    d = asdict(entry)
    d["level"] = encode_enum(entry.level)
    d["timestamp"] = encode_dt(entry.timestamp)
    return d


def doc_to_log(doc: dict[str, Any]) -> LogEntry:
    known = {f.name for f in fields(LogEntry)}
    data = {k: v for k, v in doc.items() if k in known}
    data["level"] = decode_enum(LogLevel, doc.get("level"))
    data["timestamp"] = decode_dt(doc.get("timestamp"))
    data["metadata"] = dict(doc.get("metadata") or {})
    return LogEntry(**data)
