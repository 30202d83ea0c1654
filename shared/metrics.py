"""
Shared metrics configuration for the assessment platform services.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

# Gauge encoding of circuit states
CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry unless one is passed in, so several
    collectors (one per test, one per service) can coexist in a process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._setup_resilience_metrics()
        self._setup_credential_metrics()

    def _setup_resilience_metrics(self):
        """Set up circuit breaker and outbound client metrics."""
        self._metrics["circuit_breaker_state"] = Gauge(
            "circuit_breaker_state",
            "Circuit state per dependency (0=closed, 1=half_open, 2=open)",
            ["dependency"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_transitions_total"] = Counter(
            "circuit_breaker_transitions_total",
            "Total circuit breaker state transitions",
            ["dependency", "from_state", "to_state"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_rejections_total"] = Counter(
            "circuit_breaker_rejections_total",
            "Calls rejected without I/O because the circuit was open",
            ["dependency"],
            registry=self.registry
        )

        self._metrics["outbound_requests_total"] = Counter(
            "outbound_requests_total",
            "Outbound calls by final outcome",
            ["dependency", "method", "outcome"],
            registry=self.registry
        )

        self._metrics["outbound_request_duration_seconds"] = Histogram(
            "outbound_request_duration_seconds",
            "Outbound call duration including retries",
            ["dependency"],
            registry=self.registry
        )

        self._metrics["outbound_retries_total"] = Counter(
            "outbound_retries_total",
            "Outbound call retries",
            ["dependency"],
            registry=self.registry
        )

    def _setup_credential_metrics(self):
        """Set up credential cache and validation metrics."""
        self._metrics["credential_cache_lookups_total"] = Counter(
            "credential_cache_lookups_total",
            "Credential cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["credential_cache_evictions_total"] = Counter(
            "credential_cache_evictions_total",
            "Credential cache entries evicted after expiry",
            registry=self.registry
        )

        self._metrics["credential_cache_entries"] = Gauge(
            "credential_cache_entries",
            "Credential cache entries currently held",
            registry=self.registry
        )

        self._metrics["credential_validations_total"] = Counter(
            "credential_validations_total",
            "Credential validations by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["credential_validations_coalesced_total"] = Counter(
            "credential_validations_coalesced_total",
            "Validations that joined an in-flight validation instead of calling downstream",
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_circuit_transition(self, dependency: str, from_state: str, to_state: str):
        """Record a state change and update the state gauge."""
        self._metrics["circuit_breaker_transitions_total"].labels(
            dependency=dependency,
            from_state=from_state,
            to_state=to_state
        ).inc()
        self.set_circuit_state(dependency, to_state)

    def set_circuit_state(self, dependency: str, state: str):
        self._metrics["circuit_breaker_state"].labels(dependency=dependency).set(
            CIRCUIT_STATE_VALUES.get(state, 0)
        )

    def record_circuit_rejection(self, dependency: str):
        self._metrics["circuit_breaker_rejections_total"].labels(dependency=dependency).inc()

    def record_outbound_request(self, dependency: str, method: str, outcome: str, duration: float):
        """Record the final outcome of an outbound call."""
        self._metrics["outbound_requests_total"].labels(
            dependency=dependency,
            method=method.upper(),
            outcome=outcome
        ).inc()
        self._metrics["outbound_request_duration_seconds"].labels(dependency=dependency).observe(duration)

    def record_retry(self, dependency: str):
        self._metrics["outbound_retries_total"].labels(dependency=dependency).inc()

    def record_cache_lookup(self, result: str):
        self._metrics["credential_cache_lookups_total"].labels(result=result).inc()

    def record_cache_evictions(self, count: int, size: int):
        if count:
            self._metrics["credential_cache_evictions_total"].inc(count)
        self._metrics["credential_cache_entries"].set(size)

    def set_cache_size(self, size: int):
        self._metrics["credential_cache_entries"].set(size)

    def record_validation(self, outcome: str):
        self._metrics["credential_validations_total"].labels(outcome=outcome).inc()

    def record_coalesced_validation(self):
        self._metrics["credential_validations_coalesced_total"].inc()


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service.

    Without an explicit registry the collector is memoised per service name.
    """
    if registry is not None:
        return MetricsCollector(service_name, registry)

    with _collectors_lock:
        collector = _collectors.get(service_name)
        if collector is None:
            collector = MetricsCollector(service_name)
            _collectors[service_name] = collector
        return collector
