"""
API Gateway service for the assessment platform.
"""

import time
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import HTTPException, Request

from shared.auth_middleware import AuthMiddleware
from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerRegistry
from shared.config import ServiceConfig
from shared.credential_cache import CredentialCache
from shared.credential_validator import CredentialValidator
from shared.metrics import MetricsCollector
from shared.resilient_client import ResilientClient
from shared.single_flight import SingleFlight


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic,
                 metrics: Optional[MetricsCollector] = None):
        port = config.port if config is not None else 8000
        super().__init__("gateway", port, config=config, metrics=metrics)

        self.breakers = CircuitBreakerRegistry.from_config(self.config, metrics=self.metrics, clock=clock)
        self.client = ResilientClient.from_config(
            self.config,
            breakers=self.breakers,
            metrics=self.metrics,
            transport=transport,
        )
        self.credential_cache = CredentialCache.from_config(self.config, metrics=self.metrics, clock=clock)
        self.validation_gate = SingleFlight("credential_validation")
        self.validator = CredentialValidator.from_config(
            self.config,
            self.client,
            self.credential_cache,
            gate=self.validation_gate,
            metrics=self.metrics,
        )
        self.auth_middleware = AuthMiddleware(self.validator)

        @self.app.on_event("startup")
        async def _startup():
            self.credential_cache.start_sweeper(self.config.cache_sweep_interval_ms / 1000.0)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.credential_cache.stop_sweeper()
            await self.client.aclose()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _check_dependencies(self) -> Dict[str, Dict[str, Any]]:
        """Summarise the circuit of every configured dependency."""
        dependencies = {}
        for name in self.client.dependencies:
            status = self.breakers.status(name)
            dependencies[name] = {
                "status": status["status"],
                "consecutive_failures": status["consecutive_failures"],
                "error_rate": status["error_rate"],
                "retry_after": status["retry_after"],
            }
        return dependencies

    def _require_known_dependency(self, dependency: str) -> None:
        if dependency not in self.client.dependencies and dependency not in self.breakers.names():
            raise HTTPException(
                status_code=404,
                detail={"code": "UNKNOWN_DEPENDENCY", "message": f"Unknown dependency: {dependency}"}
            )

    def _setup_gateway_routes(self):
        """Set up gateway routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "gateway",
                "message": "Assessment Platform - API Gateway",
                "version": "1.0.0"
            }

        @self.app.get("/api/v1/me")
        async def get_current_identity(request: Request):
            """Return the authenticated caller."""
            identity = await self.auth_middleware.authenticate_request(request)
            return {"user": identity.to_dict()}

        @self.app.get("/api/v1/circuit-breakers")
        async def get_circuit_breakers():
            """Get circuit breaker status."""
            circuit_breaker_states = self.breakers.get_all_states()
            return {
                "circuit_breakers": circuit_breaker_states,
                "count": len(circuit_breaker_states)
            }

        @self.app.get("/api/v1/circuit-breakers/{dependency}")
        async def get_circuit_breaker(dependency: str):
            """Get one dependency's circuit."""
            self._require_known_dependency(dependency)
            return self.breakers.status(dependency)

        @self.app.post("/api/v1/circuit-breakers/reset-healthy")
        async def reset_healthy_circuit_breakers():
            """Reset open circuits whose dependency passes a health check."""
            reset, unhealthy = [], []
            for name, state in self.breakers.get_all_states().items():
                if state["status"] == "closed":
                    continue
                if name not in self.client.dependencies:
                    continue
                if await self.client.reset_if_healthy(name):
                    reset.append(name)
                else:
                    unhealthy.append(name)

            self.logger.info("Healthy circuit reset completed", reset=reset, unhealthy=unhealthy)
            return {"reset": reset, "unhealthy": unhealthy}

        @self.app.post("/api/v1/circuit-breakers/{dependency}/reset")
        async def reset_circuit_breaker(dependency: str):
            """Force a dependency's circuit closed."""
            self._require_known_dependency(dependency)
            self.breakers.reset(dependency)
            self.logger.info("Circuit breaker reset by operator", dependency=dependency)
            return self.breakers.status(dependency)

        @self.app.get("/api/v1/auth/cache")
        async def get_auth_cache_stats():
            """Credential cache statistics."""
            stats = self.credential_cache.stats()
            stats["pending_validations"] = self.validation_gate.in_flight()
            return stats

        @self.app.delete("/api/v1/auth/cache")
        async def clear_auth_cache():
            """Drop every cached credential."""
            return {"cleared": self.credential_cache.clear()}


def create_app(config: Optional[ServiceConfig] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create FastAPI application."""
    service = GatewayService(config=config, transport=transport)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
