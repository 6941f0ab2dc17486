from functools import lru_cache

from .config import AppSettings
from .loader import load_settings


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Settings for this process, read once from env files and TASKLOOM_* variables."""
    return load_settings()


def reload_settings() -> AppSettings:
    # drop the cached instance, e.g. after the environment changed
    get_settings.cache_clear()
    return get_settings()
