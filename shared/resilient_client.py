"""
Resilient HTTP client for service-to-service calls.

Every outbound call in the platform goes through ``ResilientClient.call``:
the dependency's circuit breaker is consulted first, the request is sent
with a per-attempt timeout over a pooled keep-alive connection, transient
failures are retried according to the request's idempotency, and only the
final outcome is reported back to the breaker.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreakerRegistry
from shared.errors import (
    CircuitOpenError,
    ClientError,
    DependencyTimeoutError,
    DownstreamRejectedError,
    TransportError,
)
from shared.logging import bind_dependency, get_logger
from shared.retry import RetryConfig, should_retry

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE", "TRACE"})


@dataclass(frozen=True)
class RequestSpec:
    """Description of one outbound request, relative to a dependency's base URL."""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    content: Optional[bytes] = None
    timeout: Optional[float] = None
    # None means "decide from the HTTP method"
    idempotent: Optional[bool] = None

    @property
    def is_idempotent(self) -> bool:
        if self.idempotent is not None:
            return self.idempotent
        return self.method.upper() in IDEMPOTENT_METHODS


class ResilientClient:
    """Client for calling named downstream services."""

    def __init__(self,
                 dependencies: Dict[str, str],
                 breakers: Optional[CircuitBreakerRegistry] = None,
                 retry_config: Optional[RetryConfig] = None,
                 timeout: float = 5.0,
                 keep_alive_timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 metrics=None):
        self.dependencies = {name: url.rstrip("/") for name, url in dependencies.items()}
        self.breakers = breakers or CircuitBreakerRegistry(metrics=metrics)
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.keep_alive_timeout = keep_alive_timeout
        self.metrics = metrics
        self.logger = get_logger("resilience.client")

        self._transport = transport
        self._sleep = sleep
        self._clients: Dict[str, httpx.AsyncClient] = {}

    @classmethod
    def from_config(cls, config, breakers: Optional[CircuitBreakerRegistry] = None,
                    metrics=None, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ResilientClient":
        """Build from a ``BaseConfig`` (millisecond settings)."""
        return cls(
            dependencies=config.dependency_urls(),
            breakers=breakers or CircuitBreakerRegistry.from_config(config, metrics=metrics),
            retry_config=RetryConfig.from_config(config),
            timeout=config.connection_timeout_ms / 1000.0,
            keep_alive_timeout=config.keep_alive_timeout_ms / 1000.0,
            transport=transport,
            metrics=metrics,
        )

    def register(self, name: str, base_url: str) -> None:
        """Add or replace a dependency's base URL."""
        self.dependencies[name] = base_url.rstrip("/")
        self._clients.pop(name, None)

    def _get_client(self, dependency: str) -> httpx.AsyncClient:
        """Return the pooled client for a dependency, creating it on first use."""
        client = self._clients.get(dependency)
        if client is not None:
            return client

        base_url = self.dependencies.get(dependency)
        if base_url is None:
            raise ValueError(f"Unknown dependency: {dependency}")

        client = httpx.AsyncClient(
            base_url=base_url,
            timeout=self.timeout,
            limits=httpx.Limits(keepalive_expiry=self.keep_alive_timeout),
            headers={"Connection": "keep-alive"},
            transport=self._transport,
        )
        self._clients[dependency] = client
        return client

    async def aclose(self) -> None:
        """Close every pooled connection."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()

    async def call(self, dependency: str, spec: RequestSpec) -> httpx.Response:
        """Perform ``spec`` against ``dependency``.

        Returns the response for any status below 400. Raises
        ``CircuitOpenError`` without I/O when the breaker denies the call,
        ``DownstreamRejectedError`` for 4xx and final 5xx responses,
        ``DependencyTimeoutError`` / ``TransportError`` once retries are
        exhausted.
        """
        with bind_dependency(dependency):
            return await self._call(dependency, spec)

    async def _call(self, dependency: str, spec: RequestSpec) -> httpx.Response:
        client = self._get_client(dependency)

        allowed, reason = self.breakers.allow(dependency)
        if not allowed:
            self.logger.warning("Call rejected by circuit breaker", dependency=dependency, reason=reason)
            self._record(dependency, spec, "circuit_open", 0.0)
            raise CircuitOpenError(dependency, reason, self.breakers.retry_after(dependency))

        probe = reason == "half_open_probe"
        idempotent = spec.is_idempotent
        timeout = spec.timeout if spec.timeout is not None else self.timeout
        started = time.monotonic()
        reported = False
        attempt = 0

        try:
            while True:
                attempt += 1
                try:
                    response = await client.request(
                        spec.method.upper(),
                        spec.path,
                        headers=spec.headers,
                        params=spec.params,
                        json=spec.json,
                        content=spec.content,
                        timeout=timeout,
                    )
                except httpx.TransportError as exc:
                    error = self._wrap_transport_error(dependency, exc, timeout, attempt)
                    if should_retry(attempt, self.retry_config, exc=exc, idempotent=idempotent):
                        await self._backoff(dependency, spec, attempt, error)
                        continue

                    self._log_final_failure(dependency, spec, attempt, error, idempotent)
                    reported = True
                    self.breakers.record_failure(dependency, error, probe=probe)
                    self._record(dependency, spec, self._outcome(error), time.monotonic() - started)
                    raise error from exc

                if response.status_code >= 500:
                    error = DownstreamRejectedError(dependency, response.status_code, self._body(response))
                    if should_retry(attempt, self.retry_config, status_code=response.status_code,
                                    idempotent=idempotent):
                        await self._backoff(dependency, spec, attempt, error)
                        continue

                    self._log_final_failure(dependency, spec, attempt, error, idempotent)
                    reported = True
                    self.breakers.record_failure(dependency, error, probe=probe)
                    self._record(dependency, spec, "server_error", time.monotonic() - started)
                    raise error

                # Any answer below 500 means the dependency is up
                reported = True
                self.breakers.record_success(dependency, probe=probe)

                if response.status_code >= 400:
                    self._record(dependency, spec, "client_error", time.monotonic() - started)
                    raise DownstreamRejectedError(dependency, response.status_code, self._body(response))

                if attempt > 1:
                    self.logger.info("Retry succeeded", dependency=dependency, attempt=attempt, path=spec.path)
                self._record(dependency, spec, "success", time.monotonic() - started)
                return response
        finally:
            if not reported:
                # Cancelled or failed unexpectedly: free a half-open probe slot
                self.breakers.release(dependency, probe=probe)

    async def get(self, dependency: str, path: str, **kwargs) -> httpx.Response:
        return await self.call(dependency, RequestSpec("GET", path, **kwargs))

    async def post(self, dependency: str, path: str, json: Any = None, **kwargs) -> httpx.Response:
        return await self.call(dependency, RequestSpec("POST", path, json=json, **kwargs))

    async def put(self, dependency: str, path: str, json: Any = None, **kwargs) -> httpx.Response:
        return await self.call(dependency, RequestSpec("PUT", path, json=json, **kwargs))

    async def delete(self, dependency: str, path: str, **kwargs) -> httpx.Response:
        return await self.call(dependency, RequestSpec("DELETE", path, **kwargs))

    async def check_health(self, dependency: str, path: str = "/health", timeout: float = 2.0) -> bool:
        """Probe a dependency's health endpoint directly, bypassing its breaker."""
        client = self._get_client(dependency)
        try:
            response = await client.get(path, timeout=timeout)
        except httpx.HTTPError as exc:
            self.logger.warning("Health check failed", dependency=dependency, error=str(exc))
            return False
        healthy = response.status_code < 400
        if not healthy:
            self.logger.warning("Health check failed", dependency=dependency, status_code=response.status_code)
        return healthy

    async def reset_if_healthy(self, dependency: str, path: str = "/health") -> bool:
        """Close the dependency's circuit if its health endpoint answers."""
        healthy = await self.check_health(dependency, path)
        if healthy and self.breakers.status(dependency)["status"] != "closed":
            self.breakers.reset(dependency)
            self.logger.info("Circuit reset after successful health check", dependency=dependency)
        return healthy

    async def _backoff(self, dependency: str, spec: RequestSpec, attempt: int, error: ClientError) -> None:
        delay = self.retry_config.delay_for(attempt)
        self.logger.warning(
            "Retry attempt failed, waiting before next attempt",
            dependency=dependency,
            method=spec.method.upper(),
            path=spec.path,
            attempt=attempt,
            max_attempts=self.retry_config.max_attempts,
            delay=delay,
            error=error.message
        )
        if self.metrics is not None:
            self.metrics.record_retry(dependency)
        await self._sleep(delay)

    def _log_final_failure(self, dependency: str, spec: RequestSpec, attempt: int,
                           error: ClientError, idempotent: bool) -> None:
        if attempt >= self.retry_config.max_attempts:
            self.logger.error(
                "All retry attempts exhausted",
                dependency=dependency,
                path=spec.path,
                attempt=attempt,
                error=error.message
            )
        else:
            self.logger.error(
                "Outbound call failed without retry",
                dependency=dependency,
                method=spec.method.upper(),
                path=spec.path,
                attempt=attempt,
                idempotent=idempotent,
                error=error.message
            )

    def _record(self, dependency: str, spec: RequestSpec, outcome: str, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.record_outbound_request(dependency, spec.method, outcome, duration)

    @staticmethod
    def _wrap_transport_error(dependency: str, exc: httpx.TransportError, timeout: float,
                              attempt: int) -> ClientError:
        details = {"attempt": attempt, "error_type": type(exc).__name__}
        if isinstance(exc, httpx.TimeoutException):
            return DependencyTimeoutError(dependency, timeout, details)
        return TransportError(dependency, str(exc) or type(exc).__name__, details)

    @staticmethod
    def _outcome(error: ClientError) -> str:
        if isinstance(error, DependencyTimeoutError):
            return "timeout"
        return "transport_error"

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text
