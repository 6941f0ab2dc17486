from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

DEFAULT_RETRYABLE_CODES = frozenset(
    {
        "NETWORK_ERROR",
        "TIMEOUT",
        "RATE_LIMIT",
        "TEMPORARY_FAILURE",
        "SERVICE_UNAVAILABLE",
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Task-level retry rules.

    - Only failures whose code is in `retryable_codes` are retried.
    - The n-th retry (0-based `retry_count`) becomes eligible after
      base_delay_ms * backoff_multiplier ** retry_count, optionally capped by max_delay_ms.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int | None = None
    retryable_codes: frozenset[str] = field(default_factory=lambda: DEFAULT_RETRYABLE_CODES)

    def is_retryable(self, code: str | None) -> bool:
        return code is not None and code in self.retryable_codes

    def should_retry(self, code: str | None, retry_count: int, max_retries: int | None = None) -> bool:
        limit = self.max_retries if max_retries is None else max_retries
        if retry_count >= limit:
            return False
        return self.is_retryable(code)

    def delay_ms(self, retry_count: int, base_delay_ms: int | None = None) -> int:
        base = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        delay = int(base * (self.backoff_multiplier**retry_count))
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay

    def next_attempt_at(
        self, now: datetime, retry_count: int, base_delay_ms: int | None = None
    ) -> datetime:
        return now + timedelta(milliseconds=self.delay_ms(retry_count, base_delay_ms))

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay_ms": self.max_delay_ms,
            "retryable_codes": sorted(self.retryable_codes),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RetryPolicy:
        data = dict(raw)
        if "retryable_codes" in data:
            data["retryable_codes"] = frozenset(data["retryable_codes"])
        return cls(**data)
