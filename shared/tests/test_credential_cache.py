"""
Unit tests for CredentialCache.
"""

import asyncio

import pytest

from shared.credential_cache import CredentialCache, Identity, credential_key
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeClock, create_test_config


class TestIdentity:
    """Test cases for Identity."""

    def test_as_stale_copies(self):
        identity = Identity(id="42", email="a@example.com", role="USER")
        stale = identity.as_stale()

        assert stale.stale is True
        assert identity.stale is False
        assert stale.id == "42"

    def test_to_dict(self):
        identity = Identity(id="42", email="a@example.com", role="ADMIN", claims={"firstName": "Ada"})
        assert identity.to_dict() == {
            "id": "42",
            "email": "a@example.com",
            "role": "ADMIN",
            "claims": {"firstName": "Ada"},
            "stale": False,
        }


class TestCredentialCache:
    """Test cases for CredentialCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("test")

    @pytest.fixture
    def cache(self, clock, metrics):
        return CredentialCache(ttl=300.0, clock=clock, metrics=metrics)

    @pytest.fixture
    def identity(self):
        return Identity(id="user-1", email="user@example.com", role="USER")

    def test_keys_are_digests(self, cache, identity):
        cache.put("secret-token", identity)

        assert "secret-token" not in cache._entries
        assert credential_key("secret-token") in cache._entries
        assert len(credential_key("secret-token")) == 64

    def test_fresh_until_ttl(self, cache, clock, identity):
        cache.put("abc", identity)

        clock.advance(300.0 - 0.001)
        assert cache.get_fresh("abc") == identity

        clock.advance(0.002)
        assert cache.get_fresh("abc") is None

    def test_entry_at_exact_ttl_is_expired(self, cache, clock, identity):
        cache.put("abc", identity)
        clock.advance(300.0)
        assert cache.get_fresh("abc") is None

    def test_expired_entry_evicted_on_lookup(self, cache, clock, identity):
        cache.put("abc", identity)
        clock.advance(301.0)

        assert cache.get_fresh("abc") is None
        assert len(cache) == 0
        assert cache.stats()["evictions"] == 1

    def test_last_writer_wins(self, cache, identity):
        cache.put("abc", identity)
        replacement = Identity(id="user-2")
        cache.put("abc", replacement)

        assert cache.get_fresh("abc") == replacement
        assert len(cache) == 1

    def test_stale_identities_are_not_stored(self, cache, identity):
        with pytest.raises(ValueError):
            cache.put("abc", identity.as_stale())

    def test_stale_lookup_within_retention(self, clock, identity):
        cache = CredentialCache(ttl=300.0, stale_retention=300.0, clock=clock)
        cache.put("abc", identity)
        clock.advance(400.0)

        assert cache.get_fresh("abc") is None
        assert len(cache) == 1  # retained for fallback

        stale = cache.get_stale("abc")
        assert stale is not None
        assert stale.stale is True
        assert stale.id == identity.id

    def test_stale_lookup_past_retention(self, clock, identity):
        cache = CredentialCache(ttl=300.0, stale_retention=300.0, clock=clock)
        cache.put("abc", identity)
        clock.advance(600.0)

        assert cache.get_stale("abc") is None
        assert cache.get_fresh("abc") is None
        assert len(cache) == 0

    def test_stale_lookup_respects_shorter_grace(self, clock, identity):
        cache = CredentialCache(ttl=300.0, stale_retention=300.0, clock=clock)
        cache.put("abc", identity)
        clock.advance(400.0)

        assert cache.get_stale("abc", grace_period=60.0) is None
        assert cache.get_stale("abc", grace_period=120.0) is not None

    def test_stale_lookup_without_retention(self, cache, clock, identity):
        cache.put("abc", identity)
        clock.advance(301.0)
        assert cache.get_stale("abc") is None

    def test_stale_lookup_returns_fresh_entry_unchanged(self, clock, identity):
        cache = CredentialCache(ttl=300.0, stale_retention=300.0, clock=clock)
        cache.put("abc", identity)

        assert cache.get_stale("abc") == identity

    def test_sweep_removes_expired_only(self, cache, clock, identity):
        cache.put("old", identity)
        clock.advance(200.0)
        cache.put("new", identity)
        clock.advance(150.0)

        evicted = cache.sweep()

        assert evicted == 1
        assert cache.get_fresh("old") is None
        assert cache.get_fresh("new") == identity

    def test_invalidate_and_clear(self, cache, identity):
        cache.put("a", identity)
        cache.put("b", identity)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.clear() == 1
        assert len(cache) == 0

    def test_lookup_metrics(self, cache, metrics, identity):
        cache.get_fresh("abc")
        cache.put("abc", identity)
        cache.get_fresh("abc")

        assert metrics.registry.get_sample_value("credential_cache_lookups_total", {"result": "miss"}) == 1
        assert metrics.registry.get_sample_value("credential_cache_lookups_total", {"result": "hit"}) == 1
        assert metrics.registry.get_sample_value("credential_cache_entries") == 1

    def test_stats(self, cache, identity):
        cache.get_fresh("abc")
        cache.put("abc", identity)
        cache.get_fresh("abc")

        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["ttl_seconds"] == 300.0
        assert stats["sweeper_running"] is False

    def test_from_config(self, clock):
        config = create_test_config(cache_ttl_ms=5000, allow_stale_on_circuit_open=True,
                                    stale_grace_period_ms=2000)
        cache = CredentialCache.from_config(config, clock=clock)

        assert cache.ttl == 5.0
        assert cache.stale_retention == 2.0

    def test_from_config_without_stale_serving(self, clock):
        config = create_test_config(stale_grace_period_ms=2000)
        assert CredentialCache.from_config(config, clock=clock).stale_retention == 0.0

    def test_extend_stale_retention_only_grows(self, clock, identity):
        cache = CredentialCache(ttl=1.0, clock=clock)
        cache.put("abc", identity)

        cache.extend_stale_retention(10.0)
        cache.extend_stale_retention(5.0)
        clock.advance(5.0)

        assert cache.stale_retention == 10.0
        assert cache.get_fresh("abc") is None
        assert cache.get_stale("abc").stale is True

    @pytest.mark.asyncio
    async def test_sweeper_runs_periodically(self, clock, identity):
        cache = CredentialCache(ttl=1.0, clock=clock)
        cache.put("abc", identity)
        clock.advance(2.0)

        cache.start_sweeper(interval=0.01)
        assert cache.stats()["sweeper_running"] is True
        for _ in range(100):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)

        assert len(cache) == 0
        await cache.stop_sweeper()
        assert cache.stats()["sweeper_running"] is False

    @pytest.mark.asyncio
    async def test_start_sweeper_is_idempotent(self, cache):
        first = cache.start_sweeper(interval=60.0)
        assert cache.start_sweeper(interval=60.0) is first
        await cache.stop_sweeper()
        assert first.cancelled()
