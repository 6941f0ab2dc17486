from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Any, Mapping, Optional, Protocol


@dataclass(frozen=True)
class LogContext:
    """Identifiers attached to every record emitted for a run or task."""

    run_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    task_id: Optional[str] = None
    node_id: Optional[str] = None
    executor_id: Optional[str] = None

    def as_extra(self) -> Mapping[str, Any]:
        # unset ids are left out so formatters can render their own placeholder
        return {k: v for k, v in asdict(self).items() if v is not None}


class LoggerService(Protocol):
    """What the coordinator needs from a logging backend."""

    def base(self) -> logging.Logger: ...
    def for_coordinator(self) -> logging.Logger: ...
    def for_run_ctx(
        self, *, run_id: str, pipeline_id: Optional[str] = None
    ) -> logging.Logger | logging.LoggerAdapter: ...
    def for_task_ctx(
        self, *, run_id: str, task_id: str, node_id: Optional[str] = None
    ) -> logging.Logger | logging.LoggerAdapter: ...
