"""
Circuit breaker pattern implementation for resilient service calls.

One ``CircuitBreaker`` guards one downstream dependency. Callers ask
``allow()`` before doing I/O and report the final outcome with
``record_success()`` / ``record_failure()``, passing ``probe=True`` when
``allow()`` admitted the call as the half-open probe. The breaker never
performs the call itself, so retry loops can decide what counts as a
single outcome.

All state lives behind a ``threading.Lock`` and no critical section awaits,
so a breaker can be shared by coroutines on an event loop and by worker
threads alike.
"""

import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import httpx

from shared.errors import DependencyTimeoutError, DownstreamRejectedError, TransportError
from shared.logging import get_logger

StateListener = Callable[[str, "CircuitBreakerState", "CircuitBreakerState"], None]


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


def is_circuit_failure(error: Optional[BaseException]) -> bool:
    """Whether an error says something about the dependency's health.

    Network failures, timeouts and 5xx responses count. 4xx responses are
    the caller's fault and do not.
    """
    if error is None:
        return True
    if isinstance(error, DownstreamRejectedError):
        return error.is_server_error
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, (
        TransportError,
        DependencyTimeoutError,
        httpx.TransportError,
        TimeoutError,
        ConnectionError,
    ))


class RollingWindow:
    """Success/failure counts over a sliding window split into buckets.

    Not synchronised; the owning breaker holds its lock around every call.
    """

    def __init__(self, window_seconds: float = 10.0, buckets: int = 10,
                 clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.buckets = max(1, buckets)
        self.bucket_width = window_seconds / self.buckets
        self._clock = clock
        # [bucket index, successes, failures]
        self._buckets: Deque[List[int]] = deque()

    def _index(self) -> int:
        return int(self._clock() // self.bucket_width)

    def _prune(self, index: int) -> None:
        oldest = index - self.buckets + 1
        while self._buckets and self._buckets[0][0] < oldest:
            self._buckets.popleft()

    def _current(self) -> List[int]:
        index = self._index()
        self._prune(index)
        if not self._buckets or self._buckets[-1][0] != index:
            self._buckets.append([index, 0, 0])
        return self._buckets[-1]

    def record_success(self) -> None:
        self._current()[1] += 1

    def record_failure(self) -> None:
        self._current()[2] += 1

    def counts(self) -> Tuple[int, int]:
        """Return (successes, failures) inside the window."""
        self._prune(self._index())
        successes = sum(bucket[1] for bucket in self._buckets)
        failures = sum(bucket[2] for bucket in self._buckets)
        return successes, failures

    def error_rate(self) -> float:
        """Failure percentage inside the window (0 when empty)."""
        successes, failures = self.counts()
        total = successes + failures
        if total == 0:
            return 0.0
        return failures * 100.0 / total

    def reset(self) -> None:
        self._buckets.clear()


class CircuitBreaker:
    """Circuit breaker for a single dependency."""

    def __init__(self,
                 name: str = "default",
                 failure_threshold: int = 3,
                 recovery_timeout: float = 30.0,
                 error_threshold_percentage: float = 50.0,
                 volume_threshold: int = 10,
                 rolling_window: float = 10.0,
                 rolling_buckets: int = 10,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.volume_threshold = volume_threshold
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: List[StateListener] = []
        self._window = RollingWindow(rolling_window, rolling_buckets, clock)

        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._failure_count = 0
        self._success_count = 0
        self._rejection_count = 0
        self._last_failure_time: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._open_reason: Optional[str] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked as ``listener(name, old, new)`` after each transition."""
        self._listeners.append(listener)

    def allow(self) -> Tuple[bool, str]:
        """Decide whether a call may proceed.

        Returns ``(allowed, reason)``. Moving from open to half-open admits
        exactly the caller that observed the expiry; until that probe
        reports back, everyone else is rejected.
        """
        transitions = []
        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return True, "closed"

            if self._state == CircuitBreakerState.OPEN:
                if self._clock() - self._opened_at >= self.recovery_timeout:
                    transitions.append(self._transition(CircuitBreakerState.HALF_OPEN))
                    self._probe_in_flight = True
                    allowed, reason = True, "half_open_probe"
                else:
                    self._rejection_count += 1
                    allowed, reason = False, "open"
            elif self._probe_in_flight:
                self._rejection_count += 1
                allowed, reason = False, "probe_in_flight"
            else:
                self._probe_in_flight = True
                allowed, reason = True, "half_open_probe"

        self._notify(transitions)
        return allowed, reason

    def record_success(self, probe: bool = False) -> None:
        """Record a successful round trip.

        While half-open only the admitted probe (``probe=True``) closes the
        circuit; calls admitted before the circuit opened are only counted.
        """
        transitions = []
        with self._lock:
            self._success_count += 1
            self._consecutive_failures = 0
            self._window.record_success()

            if self._state == CircuitBreakerState.HALF_OPEN and probe:
                transitions.append(self._transition(CircuitBreakerState.CLOSED))
                self._probe_in_flight = False
                self._opened_at = None
                self._open_reason = None
                self._window.reset()

        self._notify(transitions)

    def record_failure(self, error: Optional[BaseException] = None, probe: bool = False) -> None:
        """Record a failed call.

        Errors that do not indicate dependency trouble (4xx responses) are
        recorded as successful round trips instead.
        """
        if not is_circuit_failure(error):
            self.record_success(probe=probe)
            return

        transitions = []
        reason = None
        with self._lock:
            now = self._clock()
            self._failure_count += 1
            self._consecutive_failures += 1
            self._last_failure_time = now
            self._window.record_failure()
            consecutive_failures = self._consecutive_failures

            if self._state == CircuitBreakerState.HALF_OPEN and probe:
                reason = "probe_failed"
            elif self._state == CircuitBreakerState.CLOSED:
                reason = self._trip_reason()

            if reason is not None:
                transitions.append(self._transition(CircuitBreakerState.OPEN))
                self._opened_at = now
                self._open_reason = reason
                self._probe_in_flight = False
                error_rate = self._window.error_rate()

        if reason is not None:
            self.logger.warning(
                "Circuit breaker opened",
                reason=reason,
                consecutive_failures=consecutive_failures,
                threshold=self.failure_threshold,
                error_rate=round(error_rate, 2),
                error=str(error) if error is not None else None
            )
        self._notify(transitions)

    def release(self, probe: bool = False) -> None:
        """Give back a half-open probe slot without reporting an outcome."""
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN and probe:
                self._probe_in_flight = False

    def reset(self) -> None:
        """Force the circuit closed and zero every counter."""
        transitions = []
        with self._lock:
            if self._state != CircuitBreakerState.CLOSED:
                transitions.append(self._transition(CircuitBreakerState.CLOSED))
            self._consecutive_failures = 0
            self._failure_count = 0
            self._success_count = 0
            self._rejection_count = 0
            self._last_failure_time = None
            self._opened_at = None
            self._open_reason = None
            self._probe_in_flight = False
            self._window.reset()

        self.logger.info("Circuit breaker reset")
        self._notify(transitions)

    def retry_after(self) -> Optional[float]:
        """Seconds until an open circuit admits a probe."""
        with self._lock:
            return self._retry_after()

    def status(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            window_successes, window_failures = self._window.counts()
            return {
                "name": self.name,
                "status": self._state.value,
                "failures": self._failure_count,
                "successes": self._success_count,
                "total_requests": self._failure_count + self._success_count,
                "rejections": self._rejection_count,
                "consecutive_failures": self._consecutive_failures,
                "error_rate": round(self._window.error_rate(), 2),
                "window": {
                    "successes": window_successes,
                    "failures": window_failures,
                    "seconds": self._window.window_seconds,
                },
                "last_failure_time": self._last_failure_time,
                "opened_at": self._opened_at,
                "open_reason": self._open_reason,
                "retry_after": self._retry_after(),
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
                "error_threshold_percentage": self.error_threshold_percentage,
            }

    def _trip_reason(self) -> Optional[str]:
        if self._consecutive_failures >= self.failure_threshold:
            return "consecutive_failures"
        successes, failures = self._window.counts()
        if successes + failures < self.volume_threshold:
            return None
        if self._window.error_rate() > self.error_threshold_percentage:
            return "error_rate"
        return None

    def _retry_after(self) -> Optional[float]:
        if self._state != CircuitBreakerState.OPEN or self._opened_at is None:
            return None
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _transition(self, new_state: CircuitBreakerState) -> Tuple[CircuitBreakerState, CircuitBreakerState]:
        old_state = self._state
        self._state = new_state
        return old_state, new_state

    def _notify(self, transitions) -> None:
        for old_state, new_state in transitions:
            self.logger.info(
                "Circuit breaker state change",
                from_state=old_state.value,
                to_state=new_state.value
            )
            for listener in self._listeners:
                listener(self.name, old_state, new_state)


class CircuitBreakerRegistry:
    """One circuit breaker per dependency name, created on first use."""

    def __init__(self,
                 failure_threshold: int = 3,
                 recovery_timeout: float = 30.0,
                 error_threshold_percentage: float = 50.0,
                 volume_threshold: int = 10,
                 rolling_window: float = 10.0,
                 rolling_buckets: int = 10,
                 clock: Callable[[], float] = time.monotonic,
                 metrics=None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.volume_threshold = volume_threshold
        self.rolling_window = rolling_window
        self.rolling_buckets = rolling_buckets
        self.metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._listeners: List[StateListener] = []
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("circuit_breaker_registry")

    @classmethod
    def from_config(cls, config, metrics=None, clock: Callable[[], float] = time.monotonic) -> "CircuitBreakerRegistry":
        """Build from a ``BaseConfig`` (millisecond settings)."""
        return cls(
            failure_threshold=config.circuit_breaker_threshold,
            recovery_timeout=config.reset_timeout_ms / 1000.0,
            error_threshold_percentage=config.error_threshold_percentage,
            volume_threshold=config.volume_threshold,
            rolling_window=config.rolling_window_ms / 1000.0,
            rolling_buckets=config.rolling_window_buckets,
            clock=clock,
            metrics=metrics,
        )

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for a dependency."""
        breaker = self.circuit_breakers.get(name)
        if breaker is not None:
            return breaker

        with self._lock:
            breaker = self.circuit_breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name=name,
                    failure_threshold=self.failure_threshold,
                    recovery_timeout=self.recovery_timeout,
                    error_threshold_percentage=self.error_threshold_percentage,
                    volume_threshold=self.volume_threshold,
                    rolling_window=self.rolling_window,
                    rolling_buckets=self.rolling_buckets,
                    clock=self._clock,
                )
                if self.metrics is not None:
                    breaker.add_listener(self._record_transition)
                    self.metrics.set_circuit_state(name, breaker.state.value)
                for listener in self._listeners:
                    breaker.add_listener(listener)
                self.circuit_breakers[name] = breaker
                self.logger.info("Created circuit breaker", name=name)
        return breaker

    def add_listener(self, listener: StateListener) -> None:
        """Subscribe to transitions of every current and future breaker."""
        with self._lock:
            self._listeners.append(listener)
            breakers = list(self.circuit_breakers.values())
        for breaker in breakers:
            breaker.add_listener(listener)

    def allow(self, name: str) -> Tuple[bool, str]:
        allowed, reason = self.get(name).allow()
        if not allowed and self.metrics is not None:
            self.metrics.record_circuit_rejection(name)
        return allowed, reason

    def record_success(self, name: str, probe: bool = False) -> None:
        self.get(name).record_success(probe=probe)

    def record_failure(self, name: str, error: Optional[BaseException] = None, probe: bool = False) -> None:
        self.get(name).record_failure(error, probe=probe)

    def release(self, name: str, probe: bool = False) -> None:
        self.get(name).release(probe=probe)

    def retry_after(self, name: str) -> Optional[float]:
        return self.get(name).retry_after()

    def status(self, name: str) -> Dict[str, Any]:
        return self.get(name).status()

    def reset(self, name: str) -> None:
        self.get(name).reset()

    def names(self) -> List[str]:
        return sorted(self.circuit_breakers)

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: breaker.status()
            for name, breaker in list(self.circuit_breakers.items())
        }

    def _record_transition(self, name: str, old_state: CircuitBreakerState, new_state: CircuitBreakerState) -> None:
        self.metrics.record_circuit_transition(name, old_state.value, new_state.value)
