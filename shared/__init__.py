"""
Shared utilities for the assessment platform services.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry policy for outbound calls
- circuit_breaker: Per-dependency circuit breakers
- resilient_client: Outbound HTTP calls with retries and circuit breaking
- credential_cache / single_flight / credential_validator: credential
  validation with caching and per-credential coalescing
- auth_middleware: HTTP authentication boundary
- base_service: FastAPI service skeleton

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service packages into shared/.
"""
