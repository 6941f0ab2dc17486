import logging

import pytest

from taskloom.config.config import AppSettings
from taskloom.config.loader import load_settings
from taskloom.services.logger.base import LogContext
from taskloom.services.logger.std import LoggingConfig, StdLoggerService
from taskloom.storage.factory import build_execution_stores
from taskloom.storage.runs.inmem_store import InMemoryRunStore
from taskloom.storage.runs.sqlite_store import SqliteRunStore


def test_defaults():
    cfg = AppSettings()
    assert cfg.storage.backend == "sqlite"
    assert cfg.engine.task_max_retries == 3
    assert cfg.engine.recent_log_limit == 50
    assert "TIMEOUT" in cfg.engine.retryable_codes


def test_nested_env_overrides(monkeypatch):
    monkeypatch.setenv("TASKLOOM_STORAGE__BACKEND", "memory")
    monkeypatch.setenv("TASKLOOM_ENGINE__TASK_MAX_RETRIES", "5")
    monkeypatch.setenv("TASKLOOM_LOGGING__LEVEL", "DEBUG")

    cfg = AppSettings()
    assert cfg.storage.backend == "memory"
    assert cfg.engine.task_max_retries == 5
    assert cfg.engine.retry_policy().max_retries == 5
    assert cfg.logging.level == "DEBUG"


def test_load_settings_reads_env_files(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text("TASKLOOM_ENGINE__RECENT_LOG_LIMIT=10\n")
    (tmp_path / ".env.local").write_text("TASKLOOM_ENGINE__RECENT_LOG_LIMIT=20\n")

    assert load_settings().engine.recent_log_limit == 20


def test_load_settings_missing_explicit_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKLOOM_ENV_FILE", str(tmp_path / "nope.env"))
    with pytest.raises(FileNotFoundError):
        load_settings()


def test_store_factory(tmp_path):
    mem = build_execution_stores(AppSettings(root=str(tmp_path), storage={"backend": "memory"}))
    assert isinstance(mem.runs, InMemoryRunStore)

    durable = build_execution_stores(AppSettings(root=str(tmp_path)))
    assert isinstance(durable.runs, SqliteRunStore)
    assert (tmp_path / "execution" / "execution.db").exists()


def test_logger_service_injects_context(tmp_path):
    svc = StdLoggerService.build(
        LoggingConfig(root_ns="taskloom-test", log_dir=str(tmp_path), to_file=True, use_json=True, enable_queue=True)
    )
    log = svc.for_task_ctx(run_id="run-1", task_id="task-1", node_id="A")
    log.info("hello")

    assert isinstance(log, logging.LoggerAdapter)
    assert log.extra == LogContext(run_id="run-1", task_id="task-1", node_id="A").as_extra()
    svc.close()
    assert "hello" in (tmp_path / "taskloom.log").read_text()


def test_reload_settings(monkeypatch, tmp_path):
    from taskloom.config.runtime import get_settings, reload_settings

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKLOOM_ENGINE__RUN_MAX_RETRIES", "7")
    assert reload_settings().engine.run_max_retries == 7
    assert get_settings() is get_settings()

    monkeypatch.setenv("TASKLOOM_ENGINE__RUN_MAX_RETRIES", "2")
    assert reload_settings().engine.run_max_retries == 2
    get_settings.cache_clear()
