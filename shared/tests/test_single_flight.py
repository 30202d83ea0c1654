"""
Unit tests for the single-flight gate.
"""

import asyncio

import pytest

from shared.single_flight import SingleFlight


class TestSingleFlight:
    """Test cases for SingleFlight."""

    @pytest.fixture
    def gate(self):
        return SingleFlight("test")

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self, gate):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"id": "user-1"}

        tasks = [asyncio.create_task(gate.do("abc", compute)) for _ in range(10)]
        await asyncio.sleep(0)
        assert gate.is_pending("abc")
        assert gate.waiter_count("abc") == 10

        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(result is results[0] for result in results)
        assert not gate.is_pending("abc")
        assert gate.in_flight() == 0

    @pytest.mark.asyncio
    async def test_failure_broadcast_to_all_waiters(self, gate):
        calls = 0
        release = asyncio.Event()

        async def compute():
            nonlocal calls
            calls += 1
            await release.wait()
            raise RuntimeError("identity service down")

        tasks = [asyncio.create_task(gate.do("abc", compute)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert calls == 1
        assert all(isinstance(result, RuntimeError) for result in results)
        assert not gate.is_pending("abc")

    @pytest.mark.asyncio
    async def test_waiters_resume_in_join_order(self, gate):
        release = asyncio.Event()
        order = []

        async def compute():
            await release.wait()
            return "ok"

        async def caller(index):
            await gate.do("abc", compute)
            order.append(index)

        tasks = []
        for index in range(5):
            tasks.append(asyncio.create_task(caller(index)))
            await asyncio.sleep(0)

        release.set()
        await asyncio.gather(*tasks)

        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_distinct_keys_run_independently(self, gate):
        calls = []

        async def compute(key):
            calls.append(key)
            await asyncio.sleep(0)
            return key

        results = await asyncio.gather(
            gate.do("a", lambda: compute("a")),
            gate.do("b", lambda: compute("b")),
        )

        assert results == ["a", "b"]
        assert sorted(calls) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_new_flight_after_completion(self, gate):
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            return calls

        assert await gate.do("abc", compute) == 1
        assert await gate.do("abc", compute) == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_computation_running_for_others(self, gate):
        release = asyncio.Event()
        cancelled = False

        async def compute():
            nonlocal cancelled
            try:
                await release.wait()
            except asyncio.CancelledError:
                cancelled = True
                raise
            return "ok"

        first = asyncio.create_task(gate.do("abc", compute))
        second = asyncio.create_task(gate.do("abc", compute))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        assert gate.waiter_count("abc") == 1
        release.set()
        assert await second == "ok"
        assert cancelled is False

    @pytest.mark.asyncio
    async def test_last_waiter_cancelled_aborts_computation(self, gate):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def compute():
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        caller = asyncio.create_task(gate.do("abc", compute))
        await started.wait()

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert not gate.is_pending("abc")
        await asyncio.wait_for(cancelled.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_caller_after_abort_starts_fresh(self, gate):
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.Event().wait()

        async def succeed():
            return "fresh"

        caller = asyncio.create_task(gate.do("abc", hang))
        await started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        assert await gate.do("abc", succeed) == "fresh"
