"""
In-process cache of validated credentials.

Entries are keyed by the SHA-256 digest of the credential so raw tokens are
never held as keys. An entry is fresh while ``now - cached_at < ttl``. When a
stale retention period is configured, expired entries are kept that much
longer so callers can fall back to them while the identity service is
unreachable; after that they are evicted, lazily on lookup or by the
periodic sweeper.
"""

import asyncio
import hashlib
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger


def credential_key(credential: str) -> str:
    """Cache key for a credential."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Identity:
    """The authenticated principal behind a credential."""

    id: str
    email: Optional[str] = None
    role: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    stale: bool = False

    def as_stale(self) -> "Identity":
        return replace(self, stale=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "claims": dict(self.claims),
            "stale": self.stale,
        }


@dataclass
class CacheEntry:
    identity: Identity
    cached_at: float


class CredentialCache:
    """TTL cache of credential -> Identity."""

    def __init__(self,
                 ttl: float = 300.0,
                 stale_retention: float = 0.0,
                 clock: Callable[[], float] = time.monotonic,
                 metrics=None):
        self.ttl = ttl
        self.stale_retention = max(0.0, stale_retention)
        self.metrics = metrics
        self.logger = get_logger("auth.credential_cache")

        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config, metrics=None, clock: Callable[[], float] = time.monotonic) -> "CredentialCache":
        """Build from a ``BaseConfig`` (millisecond settings)."""
        retention = config.stale_grace_period_ms / 1000.0 if config.allow_stale_on_circuit_open else 0.0
        return cls(
            ttl=config.cache_ttl_ms / 1000.0,
            stale_retention=retention,
            clock=clock,
            metrics=metrics,
        )

    def extend_stale_retention(self, seconds: float) -> None:
        """Keep expired entries for at least ``seconds`` past their TTL."""
        with self._lock:
            if seconds <= self.stale_retention:
                return
            previous, self.stale_retention = self.stale_retention, seconds
        self.logger.info("Stale retention extended", previous_seconds=previous, retention_seconds=seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_fresh(self, credential: str) -> Optional[Identity]:
        """Return the cached identity if its entry has not expired."""
        key = credential_key(credential)
        evicted = 0
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            identity = None
            if entry is not None:
                age = now - entry.cached_at
                if age < self.ttl:
                    identity = entry.identity
                elif age >= self.ttl + self.stale_retention:
                    del self._entries[key]
                    evicted = 1
                    self._evictions += 1

            if identity is not None:
                self._hits += 1
            else:
                self._misses += 1
            size = len(self._entries)

        if self.metrics is not None:
            self.metrics.record_cache_lookup("hit" if identity is not None else "miss")
            if evicted:
                self.metrics.record_cache_evictions(evicted, size)
        return identity

    def get_stale(self, credential: str, grace_period: Optional[float] = None) -> Optional[Identity]:
        """Return an expired identity still within the grace period, marked stale.

        A still-fresh entry is returned unchanged.
        """
        grace = self.stale_retention if grace_period is None else min(grace_period, self.stale_retention)
        key = credential_key(credential)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            age = self._clock() - entry.cached_at

        if age < self.ttl:
            return entry.identity
        if age - self.ttl < grace:
            if self.metrics is not None:
                self.metrics.record_cache_lookup("stale")
            return entry.identity.as_stale()
        return None

    def put(self, credential: str, identity: Identity) -> None:
        """Insert or replace the entry for a credential."""
        if identity.stale:
            raise ValueError("Stale identities cannot be cached")
        key = credential_key(credential)
        with self._lock:
            self._entries[key] = CacheEntry(identity=identity, cached_at=self._clock())
            size = len(self._entries)
        if self.metrics is not None:
            self.metrics.set_cache_size(size)

    def invalidate(self, credential: str) -> bool:
        """Drop a credential's entry, e.g. after logout."""
        with self._lock:
            removed = self._entries.pop(credential_key(credential), None) is not None
            size = len(self._entries)
        if self.metrics is not None:
            self.metrics.set_cache_size(size)
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if self.metrics is not None:
            self.metrics.set_cache_size(0)
        self.logger.info("Credential cache cleared", entries=count)
        return count

    def sweep(self) -> int:
        """Evict every entry past its TTL and stale retention. Returns the count."""
        with self._lock:
            cutoff = self._clock() - (self.ttl + self.stale_retention)
            expired = [key for key, entry in self._entries.items() if entry.cached_at <= cutoff]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
            size = len(self._entries)

        if self.metrics is not None:
            self.metrics.record_cache_evictions(len(expired), size)
        if expired:
            self.logger.info("Expired credentials evicted", evicted=len(expired), remaining=size)
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "ttl_seconds": self.ttl,
                "stale_retention_seconds": self.stale_retention,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "sweeper_running": self._sweeper is not None and not self._sweeper.done(),
            }

    def start_sweeper(self, interval: float = 900.0) -> asyncio.Task:
        """Start periodic eviction on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        self.logger.info("Credential cache sweeper started", interval_seconds=interval)
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("Credential cache sweeper stopped")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()
