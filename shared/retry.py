"""
Retry policy for outbound calls.

Which failures are retryable depends on whether the request is idempotent:
an idempotent request may be repeated after any transport failure, timeout
or 5xx response, while a non-idempotent request is only repeated when the
failure happened before the request could have reached the dependency.
"""

import random
from typing import Optional

import httpx

# Failures raised before any byte of the request was handed to the peer
PRE_SEND_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

BACKOFF_STRATEGIES = ("fixed", "linear", "exponential")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = False,
                 backoff_strategy: str = "fixed"):
        if backoff_strategy not in BACKOFF_STRATEGIES:
            raise ValueError(f"Unknown backoff strategy: {backoff_strategy}")
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy

    @classmethod
    def from_config(cls, config) -> "RetryConfig":
        """Build from a ``BaseConfig`` (millisecond settings)."""
        return cls(
            max_attempts=config.max_retries,
            base_delay=config.retry_delay_ms / 1000.0,
            backoff_strategy=config.retry_backoff,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return calculate_delay(attempt, self)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay between retry attempts."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def is_retryable_exception(exc: BaseException, idempotent: bool) -> bool:
    """Whether a transport-level exception may be retried."""
    if isinstance(exc, PRE_SEND_ERRORS):
        return True
    if not idempotent:
        return False
    return isinstance(exc, httpx.TransportError)


def is_retryable_status(status_code: int, idempotent: bool) -> bool:
    """Whether a response status may be retried."""
    return idempotent and status_code >= 500


def should_retry(attempt: int, config: RetryConfig, exc: Optional[BaseException] = None,
                 status_code: Optional[int] = None, idempotent: bool = True) -> bool:
    """Combine the attempt budget with the failure classification."""
    if attempt >= config.max_attempts:
        return False
    if exc is not None:
        return is_retryable_exception(exc, idempotent)
    if status_code is not None:
        return is_retryable_status(status_code, idempotent)
    return False
