# wiring helpers for an engine instance

from __future__ import annotations

from taskloom.config.config import AppSettings
from taskloom.config.runtime import get_settings
from taskloom.contracts.services.pipelines import PipelineSource
from taskloom.core.runtime.execution_coordinator import ExecutionCoordinator
from taskloom.services.logger.base import LoggerService
from taskloom.services.logger.std import LoggingConfig, StdLoggerService
from taskloom.storage.factory import build_execution_stores


def build_coordinator(
    settings: AppSettings | None = None,
    *,
    pipelines: PipelineSource,
    logger_service: LoggerService | None = None,
) -> ExecutionCoordinator:
    cfg = settings or get_settings()
    stores = build_execution_stores(cfg)
    logs = logger_service or StdLoggerService.build(LoggingConfig.from_cfg(cfg))
    return ExecutionCoordinator(
        run_store=stores.runs,
        task_store=stores.tasks,
        log_store=stores.logs,
        pipelines=pipelines,
        settings=cfg.engine,
        logger_service=logs,
    )


__all__ = ["build_coordinator"]
