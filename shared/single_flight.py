"""
Per-key single-flight gate.

At most one computation runs per key. The first caller starts it as a
separate task, later callers join the same flight, and every caller gets
the outcome (result or exception) in the order it joined. The gate belongs
to the event loop that uses it.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional

from shared.logging import get_logger


class _Flight:
    """One in-flight computation and the callers waiting on it."""

    __slots__ = ("task", "waiters")

    def __init__(self):
        self.task: Optional[asyncio.Task] = None
        self.waiters: List[asyncio.Future] = []


class SingleFlight:
    """Coalesces concurrent calls for the same key into one computation."""

    def __init__(self, name: str = "single_flight"):
        self.name = name
        self.logger = get_logger(f"concurrency.{name}")
        self._flights: Dict[Hashable, _Flight] = {}

    def is_pending(self, key: Hashable) -> bool:
        return key in self._flights

    def waiter_count(self, key: Hashable) -> int:
        flight = self._flights.get(key)
        return len(flight.waiters) if flight is not None else 0

    def in_flight(self) -> int:
        """Number of keys with a computation running."""
        return len(self._flights)

    async def do(self, key: Hashable, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``func`` for ``key`` unless a run is already in flight, and return its outcome.

        A caller cancelled while waiting leaves the queue. When the last
        caller leaves, the computation itself is cancelled.
        """
        loop = asyncio.get_running_loop()

        flight = self._flights.get(key)
        if flight is None:
            flight = _Flight()
            self._flights[key] = flight
            flight.task = loop.create_task(self._run(key, flight, func))

        waiter = loop.create_future()
        flight.waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            self._leave(key, flight, waiter)
            raise

    async def _run(self, key: Hashable, flight: _Flight, func: Callable[[], Awaitable[Any]]) -> None:
        try:
            result = await func()
        except asyncio.CancelledError:
            self._discard(key, flight)
            for waiter in flight.waiters:
                waiter.cancel()
            flight.waiters = []
            raise
        except Exception as exc:
            self._publish(key, flight, exc=exc)
        else:
            self._publish(key, flight, result=result)

    def _publish(self, key: Hashable, flight: _Flight, result: Any = None,
                 exc: Optional[BaseException] = None) -> None:
        self._discard(key, flight)
        waiters, flight.waiters = flight.waiters, []
        # FIFO: futures resolve in join order
        for waiter in waiters:
            if waiter.done():
                continue
            if exc is not None:
                waiter.set_exception(exc)
            else:
                waiter.set_result(result)

    def _leave(self, key: Hashable, flight: _Flight, waiter: asyncio.Future) -> None:
        if waiter in flight.waiters:
            flight.waiters.remove(waiter)
        if flight.waiters or flight.task is None or flight.task.done():
            return
        self._discard(key, flight)
        flight.task.cancel()
        self.logger.info("Computation abandoned by all callers", gate=self.name)

    def _discard(self, key: Hashable, flight: _Flight) -> None:
        if self._flights.get(key) is flight:
            del self._flights[key]
