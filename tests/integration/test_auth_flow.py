"""
Integration tests for the credential validation flow.

Components are wired from configuration exactly as the gateway wires them,
with the identity service replaced by an in-process mock transport.
"""

import asyncio

import httpx
import pytest

from shared.circuit_breaker import CircuitBreakerRegistry
from shared.credential_cache import CredentialCache
from shared.credential_validator import CredentialValidator
from shared.errors import AuthenticationUnavailableError, CircuitOpenError, TransportError
from shared.metrics import MetricsCollector
from shared.resilient_client import RequestSpec, ResilientClient
from shared.single_flight import SingleFlight
from shared.test_helpers import FakeClock, MockIdentityService, create_mock_user, create_test_config


class TestAuthFlow:
    """Integration tests for complete auth flow."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("integration")

    @pytest.fixture
    def identity_service(self):
        return MockIdentityService(users={"abc": create_mock_user(user_id="user-abc")})

    @pytest.fixture
    def build(self, clock, metrics, identity_service):
        def factory(**overrides):
            config = create_test_config(**overrides)
            breakers = CircuitBreakerRegistry.from_config(config, metrics=metrics, clock=clock)
            client = ResilientClient.from_config(
                config,
                breakers=breakers,
                metrics=metrics,
                transport=identity_service.transport(),
            )
            cache = CredentialCache.from_config(config, metrics=metrics, clock=clock)
            validator = CredentialValidator.from_config(config, client, cache, gate=SingleFlight(), metrics=metrics)
            return validator

        return factory

    @pytest.mark.asyncio
    async def test_circuit_opens_at_threshold_and_recovers(self, build, clock, identity_service):
        """Three failing calls open the circuit; after the reset timeout a probe closes it."""
        validator = build(circuit_breaker_threshold=3, reset_timeout_ms=30000, max_retries=1)
        client = validator.client
        client.register("identity", "http://identity.test/api")
        identity_service.fail_next(*[httpx.ConnectError("refused")] * 3)
        spec = RequestSpec("GET", "/users/user-abc", headers={"Authorization": "Bearer abc"})

        for attempt in range(3):
            with pytest.raises(TransportError):
                await client.call("identity", spec)
            expected = "open" if attempt == 2 else "closed"
            assert client.breakers.status("identity")["status"] == expected

        calls_before = identity_service.call_count
        with pytest.raises(CircuitOpenError):
            await client.call("identity", spec)
        assert identity_service.call_count == calls_before

        clock.advance(30.0)
        response = await client.call("identity", spec)

        assert response.status_code == 200
        status = client.breakers.status("identity")
        assert status["status"] == "closed"
        assert status["consecutive_failures"] == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cached_credential_serves_burst_without_downstream_calls(self, build, clock, identity_service):
        """A credential cached with a 5s TTL serves ten concurrent requests one second later."""
        validator = build(cache_ttl_ms=5000)

        first = await validator.validate("abc")
        assert identity_service.call_count == 1

        clock.advance(1.0)
        results = await asyncio.gather(*[validator.validate("abc") for _ in range(10)])

        assert identity_service.call_count == 1
        assert all(result == first for result in results)
        await validator.client.aclose()

    @pytest.mark.asyncio
    async def test_outage_then_recovery(self, build, clock, identity_service, metrics):
        """Validation fails fast during an outage and resumes after the circuit recovers."""
        validator = build(circuit_breaker_threshold=3, max_retries=3)
        identity_service.fail_next(*[httpx.ConnectError("refused")] * 9)

        for _ in range(3):
            with pytest.raises(AuthenticationUnavailableError):
                await validator.validate("abc")
        assert identity_service.call_count == 9

        with pytest.raises(AuthenticationUnavailableError) as exc_info:
            await validator.validate("abc")
        assert isinstance(exc_info.value.cause, CircuitOpenError)
        assert identity_service.call_count == 9

        clock.advance(30.0)
        identity = await validator.validate("abc")

        assert identity.id == "user-abc"
        assert validator.client.breakers.status("auth")["status"] == "closed"
        assert metrics.registry.get_sample_value(
            "circuit_breaker_transitions_total",
            {"dependency": "auth", "from_state": "half_open", "to_state": "closed"},
        ) == 1
        await validator.client.aclose()

    @pytest.mark.asyncio
    async def test_burst_on_cold_cache_coalesces(self, build, identity_service, metrics):
        """Concurrent first-time validations share one downstream call."""
        validator = build()
        release = identity_service.hold()

        tasks = [asyncio.create_task(validator.validate("Bearer abc")) for _ in range(25)]
        await asyncio.sleep(0)
        assert validator.gate.in_flight() == 1
        release.set()
        results = await asyncio.gather(*tasks)

        assert identity_service.call_count == 1
        assert {result.id for result in results} == {"user-abc"}
        assert metrics.registry.get_sample_value(
            "credential_validations_total", {"outcome": "valid"}
        ) == 1
        await validator.client.aclose()
