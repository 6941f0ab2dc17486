from datetime import datetime, timedelta, timezone

from taskloom.config.config import EngineSettings
from taskloom.core.runtime.retry_policy import DEFAULT_RETRYABLE_CODES, RetryPolicy


def test_retryable_codes():
    policy = RetryPolicy()
    for code in ("NETWORK_ERROR", "TIMEOUT", "RATE_LIMIT", "TEMPORARY_FAILURE", "SERVICE_UNAVAILABLE"):
        assert policy.is_retryable(code)
    assert not policy.is_retryable("VALIDATION_ERROR")
    assert not policy.is_retryable(None)


def test_budget_is_respected():
    policy = RetryPolicy(max_retries=2)
    assert policy.should_retry("TIMEOUT", 0)
    assert policy.should_retry("TIMEOUT", 1)
    assert not policy.should_retry("TIMEOUT", 2)
    # per-task budget overrides the policy default
    assert policy.should_retry("TIMEOUT", 2, max_retries=5)
    assert not policy.should_retry("PERMANENT_FAILURE", 0, max_retries=5)


def test_exponential_backoff():
    policy = RetryPolicy(base_delay_ms=500)
    assert [policy.delay_ms(n) for n in range(4)] == [500, 1000, 2000, 4000]
    assert policy.delay_ms(1, base_delay_ms=100) == 200

    capped = RetryPolicy(base_delay_ms=1000, max_delay_ms=3000)
    assert capped.delay_ms(5) == 3000

    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert policy.next_attempt_at(now, 2) == now + timedelta(milliseconds=2000)


def test_dict_round_trip_and_settings():
    policy = EngineSettings(task_max_retries=4, backoff_multiplier=3.0).retry_policy()
    assert policy.max_retries == 4
    assert policy.retryable_codes == DEFAULT_RETRYABLE_CODES

    restored = RetryPolicy.from_dict(policy.to_dict())
    assert restored == policy
