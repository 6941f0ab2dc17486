from __future__ import annotations

import csv
import io
import json
from typing import Literal

from taskloom.contracts.storage.log_store import LogStore
from taskloom.core.runtime.run_types import LogEntry

ExportFormat = Literal["json", "csv", "text"]

_CSV_COLUMNS = (
    "sequence_number",
    "timestamp",
    "level",
    "category",
    "task_id",
    "error_code",
    "message",
)


def _as_json(entries: list[LogEntry]) -> str:
    return json.dumps(
        [
            {
                "log_id": e.log_id,
                "sequence_number": e.sequence_number,
                "timestamp": e.timestamp.isoformat(),
                "level": e.level.value,
                "category": e.category,
                "source": e.source,
                "task_id": e.task_id,
                "error_code": e.error_code,
                "message": e.message,
                "metadata": e.metadata,
            }
            for e in entries
        ],
        ensure_ascii=False,
        indent=2,
        default=str,
    )


def _as_csv(entries: list[LogEntry]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(_CSV_COLUMNS)
    for e in entries:
        writer.writerow(
            [
                e.sequence_number,
                e.timestamp.isoformat(),
                e.level.value,
                e.category or "",
                e.task_id or "",
                e.error_code or "",
                e.message,
            ]
        )
    return buf.getvalue()


def _as_text(entries: list[LogEntry]) -> str:
    lines = []
    for e in entries:
        task = f" [{e.task_id}]" if e.task_id else ""
        lines.append(f"{e.timestamp.isoformat()} {e.level.value:<5} #{e.sequence_number}{task} {e.message}")
    return "\n".join(lines)


_RENDERERS = {"json": _as_json, "csv": _as_csv, "text": _as_text}


async def export_logs(log_store: LogStore, run_id: str, format: ExportFormat = "json") -> str:
    """Render the full log of a run in sequence order."""
    render = _RENDERERS.get(format)
    if render is None:
        raise ValueError(f"Unsupported log export format: {format!r}")
    return render(await log_store.stream(run_id, 0))
