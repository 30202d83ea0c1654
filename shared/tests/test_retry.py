"""
Unit tests for the retry policy.
"""

import httpx
import pytest

from shared.retry import (
    RetryConfig,
    calculate_delay,
    is_retryable_exception,
    is_retryable_status,
    should_retry,
)
from shared.test_helpers import create_test_config


class TestRetryConfig:
    """Test cases for RetryConfig."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.backoff_strategy == "fixed"

    def test_at_least_one_attempt(self):
        assert RetryConfig(max_attempts=0).max_attempts == 1

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValueError):
            RetryConfig(backoff_strategy="random")

    def test_from_config_converts_milliseconds(self):
        config = create_test_config(max_retries=5, retry_delay_ms=250, retry_backoff="linear")
        retry = RetryConfig.from_config(config)
        assert retry.max_attempts == 5
        assert retry.base_delay == 0.25
        assert retry.backoff_strategy == "linear"


class TestCalculateDelay:
    """Delay between attempts."""

    def test_fixed(self):
        config = RetryConfig(base_delay=1.0)
        assert [calculate_delay(n, config) for n in (1, 2, 3)] == [1.0, 1.0, 1.0]

    def test_linear(self):
        config = RetryConfig(base_delay=0.5, backoff_strategy="linear")
        assert [calculate_delay(n, config) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_exponential_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, backoff_strategy="exponential")
        assert [config.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_ten_percent(self):
        config = RetryConfig(base_delay=1.0, jitter=True)
        for attempt in range(1, 20):
            assert 0.9 <= calculate_delay(attempt, config) <= 1.1


class TestRetryability:
    """Which failures may be retried."""

    @pytest.mark.parametrize("exc", [
        httpx.ConnectError("refused"),
        httpx.ConnectTimeout("connect timeout"),
        httpx.PoolTimeout("pool exhausted"),
    ])
    def test_pre_send_errors_retryable_for_any_method(self, exc):
        assert is_retryable_exception(exc, idempotent=True)
        assert is_retryable_exception(exc, idempotent=False)

    @pytest.mark.parametrize("exc", [
        httpx.ReadTimeout("read timeout"),
        httpx.RemoteProtocolError("server disconnected"),
        httpx.ReadError("connection reset"),
    ])
    def test_ambiguous_errors_only_retryable_when_idempotent(self, exc):
        assert is_retryable_exception(exc, idempotent=True)
        assert not is_retryable_exception(exc, idempotent=False)

    def test_status_codes(self):
        assert is_retryable_status(503, idempotent=True)
        assert not is_retryable_status(503, idempotent=False)
        assert not is_retryable_status(404, idempotent=True)

    def test_attempt_budget(self):
        config = RetryConfig(max_attempts=3)
        exc = httpx.ConnectError("refused")
        assert should_retry(1, config, exc=exc)
        assert should_retry(2, config, exc=exc)
        assert not should_retry(3, config, exc=exc)

    def test_nothing_to_retry(self):
        assert not should_retry(1, RetryConfig())
