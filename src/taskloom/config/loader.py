# taskloom/config/loader.py
import logging
import os
from pathlib import Path
from typing import Iterable

from .config import AppSettings


def _existing(paths: Iterable[Path]) -> list[Path]:
    return [p for p in paths if p.exists()]


def load_settings() -> AppSettings:
    cwd = Path.cwd()

    # allow an explicit path via env var
    explicit = Path(os.environ["TASKLOOM_ENV_FILE"]) if "TASKLOOM_ENV_FILE" in os.environ else None

    if explicit is not None and not explicit.exists():
        raise FileNotFoundError(f"Explicitly specified env file not found: {explicit}")

    candidates = _existing([
        cwd / ".env",
        cwd / ".env.local",
        *([explicit] if explicit is not None else []),
    ])

    if not candidates:
        log = logging.getLogger("taskloom.config.loader")
        log.debug("No env files found; using defaults and env vars only.")
        return AppSettings()

    # Later files override earlier ones
    return AppSettings(_env_file=[str(p) for p in candidates])
