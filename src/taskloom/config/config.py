from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskloom.core.runtime.retry_policy import DEFAULT_RETRYABLE_CODES, RetryPolicy

from .storage import StorageSettings


class EngineSettings(BaseModel):
    # run-level retries (retry_execution)
    run_max_retries: int = 3

    # task-level retries (handle_task_failure)
    task_max_retries: int = 3
    task_retry_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_retry_delay_ms: int | None = None
    retryable_codes: list[str] = Field(default_factory=lambda: sorted(DEFAULT_RETRYABLE_CODES))

    # number of log entries attached to get_execution_status()
    recent_log_limit: int = 50

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.task_max_retries,
            base_delay_ms=self.task_retry_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_retry_delay_ms,
            retryable_codes=frozenset(self.retryable_codes),
        )


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_logs: bool = False
    log_dir: str = "logs"  # relative to AppSettings.root
    to_file: bool = False
    # e.g. {"taskloom.coordinator": "DEBUG"}
    namespace_levels: dict[str, str] = Field(default_factory=dict)


class AppSettings(BaseSettings):
    """
    Top-level settings.

    Environment variables use the TASKLOOM_ prefix and "__" for nesting, e.g.
    TASKLOOM_STORAGE__BACKEND=memory or TASKLOOM_ENGINE__TASK_MAX_RETRIES=5.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKLOOM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    root: str = "./taskloom_data"
    engine: EngineSettings = EngineSettings()
    storage: StorageSettings = StorageSettings()
    logging: LoggingSettings = LoggingSettings()
