from __future__ import annotations

from dataclasses import dataclass, field
import logging
import logging.handlers
import os
from pathlib import Path
import queue
from typing import Mapping, Optional

from taskloom.config.config import AppSettings

from .base import LogContext, LoggerService
from .formatters import ColorFormatter, JsonFormatter, SafeFormatter

_CONSOLE_PATTERN = "%(asctime)s %(levelname)s \t%(name)s    run=%(run_id)s    task=%(task_id)s - %(message)s"
_FILE_PATTERN = "%(asctime)s %(levelname)s %(name)s run=%(run_id)s task=%(task_id)s node=%(node_id)s %(message)s"


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


@dataclass(frozen=True)
class LoggingConfig:
    """
    Sinks and formats for the engine's Python logging.

    Attributes:
      root_ns: logger namespace everything hangs off (`taskloom`).
      level: level for the namespace and its handlers.
      log_dir: directory of the rotating `taskloom.log` when to_file is set.
      use_json: file records as one JSON object per line instead of text.
      enable_queue: write the file through a QueueHandler/QueueListener pair.
      namespace_levels: overrides such as {"taskloom.coordinator": "DEBUG"}.
    """

    root_ns: str = "taskloom"
    level: str = "INFO"
    log_dir: str = "./logs"
    to_file: bool = False
    use_json: bool = False
    enable_queue: bool = False
    namespace_levels: Mapping[str, str] = field(default_factory=dict)
    console_pattern: str = _CONSOLE_PATTERN
    file_pattern: str = _FILE_PATTERN
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @staticmethod
    def from_cfg(cfg: AppSettings, log_dir: Optional[str] = None) -> "LoggingConfig":
        lg = cfg.logging
        return LoggingConfig(
            level=lg.level,
            log_dir=log_dir or os.path.join(cfg.root, lg.log_dir),
            to_file=lg.to_file,
            use_json=lg.json_logs,
            # file IO stays off the event loop whenever a file sink exists
            enable_queue=lg.to_file,
            namespace_levels=dict(lg.namespace_levels),
        )


class _ContextAdapter(logging.LoggerAdapter):
    """Merges the bound LogContext with any per-call `extra`."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


class StdLoggerService(LoggerService):
    """
    LoggerService on top of the standard library.

    Coordinator records go to `<root_ns>.coordinator`; run and task helpers bind a
    LogContext so every line carries its run/task ids.
    """

    def __init__(
        self,
        base: logging.Logger,
        *,
        cfg: LoggingConfig,
        listener: Optional[logging.handlers.QueueListener] = None,
    ):
        self._base = base
        self._cfg = cfg
        self._listener = listener

    def base(self) -> logging.Logger:
        return self._base

    def for_coordinator(self) -> logging.Logger:
        return self._base.getChild("coordinator")

    def bind(self, logger: logging.Logger, ctx: LogContext) -> logging.LoggerAdapter:
        return _ContextAdapter(logger, dict(ctx.as_extra()))

    def for_run_ctx(self, *, run_id: str, pipeline_id: Optional[str] = None) -> logging.LoggerAdapter:
        return self.bind(self.for_coordinator(), LogContext(run_id=run_id, pipeline_id=pipeline_id))

    def for_task_ctx(
        self, *, run_id: str, task_id: str, node_id: Optional[str] = None
    ) -> logging.LoggerAdapter:
        return self.bind(
            self.for_coordinator(), LogContext(run_id=run_id, task_id=task_id, node_id=node_id)
        )

    def close(self) -> None:
        """Flush the queued file sink (if any) and detach every handler."""
        if self._listener is not None:
            self._listener.stop()
            for h in self._listener.handlers:
                h.close()
            self._listener = None
        for h in list(self._base.handlers):
            h.close()
            self._base.removeHandler(h)

    # --- builder ---

    @staticmethod
    def _file_handler(cfg: LoggingConfig, level: int) -> logging.Handler:
        log_dir = Path(cfg.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            log_dir / "taskloom.log",
            maxBytes=cfg.max_bytes,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(JsonFormatter() if cfg.use_json else SafeFormatter(cfg.file_pattern))
        return fh

    @staticmethod
    def build(cfg: Optional[LoggingConfig] = None) -> "StdLoggerService":
        cfg = cfg or LoggingConfig()
        level = _level(cfg.level)

        root = logging.getLogger(cfg.root_ns)
        # rebuilding replaces the previous sinks
        for h in list(root.handlers):
            root.removeHandler(h)
        root.setLevel(level)
        root.propagate = False

        for ns, lvl in cfg.namespace_levels.items():
            logging.getLogger(ns).setLevel(_level(lvl))

        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(ColorFormatter(cfg.console_pattern))
        root.addHandler(console)

        if not cfg.to_file:
            return StdLoggerService(root, cfg=cfg)

        fh = StdLoggerService._file_handler(cfg, level)
        if not cfg.enable_queue:
            root.addHandler(fh)
            return StdLoggerService(root, cfg=cfg)

        q: queue.Queue = queue.Queue(-1)
        root.addHandler(logging.handlers.QueueHandler(q))
        listener = logging.handlers.QueueListener(q, fh, respect_handler_level=True)
        listener.start()
        return StdLoggerService(root, cfg=cfg, listener=listener)
