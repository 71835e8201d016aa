"""Tests for the execution scheduler."""

import asyncio

import pytest

from conftest import make_order
from htlc_resolver.execution.scheduler import ExecutionScheduler
from htlc_resolver.models import ExecutableOrder, ExecutionResult, ProfitabilityAnalysis


def item(order_hash: str, priority: int) -> ExecutableOrder:
    analysis = ProfitabilityAnalysis(order_hash=order_hash, is_profitable=True, priority=priority)
    return ExecutableOrder(make_order(order_hash=order_hash), analysis, priority)


async def succeed(executable: ExecutableOrder) -> ExecutionResult:
    return ExecutionResult(order_hash=executable.order_hash, success=True)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestQueue:
    """Tests for queue bookkeeping."""

    def test_requires_a_slot(self):
        with pytest.raises(ValueError):
            ExecutionScheduler(succeed, max_in_flight=0)

    @pytest.mark.asyncio
    async def test_enqueue_deduplicates(self):
        scheduler = ExecutionScheduler(succeed)
        assert await scheduler.enqueue(item("0x01", 5))
        assert not await scheduler.enqueue(item("0x01", 9))
        assert scheduler.queue_length == 1

    @pytest.mark.asyncio
    async def test_drop(self):
        scheduler = ExecutionScheduler(succeed)
        await scheduler.enqueue(item("0x01", 5))
        assert await scheduler.drop("0x01")
        assert not await scheduler.drop("0x01")
        assert scheduler.queue_length == 0

    @pytest.mark.asyncio
    async def test_highest_priority_first(self):
        executed = []

        async def record(executable):
            executed.append(executable.order_hash)
            return ExecutionResult(order_hash=executable.order_hash, success=True)

        scheduler = ExecutionScheduler(record, max_in_flight=1)
        for order_hash, priority in (("0x01", 3), ("0x02", 9), ("0x03", 6)):
            await scheduler.enqueue(item(order_hash, priority))
        assert [i.order_hash for i in scheduler.queued()] == ["0x02", "0x03", "0x01"]

        for _ in range(3):
            await (await scheduler.run_once())

        assert executed == ["0x02", "0x03", "0x01"]

    @pytest.mark.asyncio
    async def test_empty_queue_frees_slot(self):
        scheduler = ExecutionScheduler(succeed, max_in_flight=1)
        assert await scheduler.run_once() is None
        assert await scheduler.run_once() is None


class TestConcurrency:
    """Tests for bounded concurrency and shutdown."""

    @pytest.mark.asyncio
    async def test_never_more_than_max_in_flight(self):
        active = 0
        peak = 0

        async def slow(executable):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return ExecutionResult(order_hash=executable.order_hash, success=True)

        scheduler = ExecutionScheduler(slow, loop_interval=0.001, max_in_flight=2)
        for i in range(6):
            await scheduler.enqueue(item(f"0x{i:02x}", i))

        scheduler.start()
        await wait_until(lambda: scheduler.get_status()["executed"] == 6)
        await scheduler.stop()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_in_flight_order_not_requeued(self):
        release = asyncio.Event()

        async def blocked(executable):
            await release.wait()
            return ExecutionResult(order_hash=executable.order_hash, success=True)

        scheduler = ExecutionScheduler(blocked)
        await scheduler.enqueue(item("0x01", 5))
        task = await scheduler.run_once()

        assert scheduler.in_flight == ["0x01"]
        assert not await scheduler.enqueue(item("0x01", 5))

        release.set()
        await task
        assert scheduler.in_flight == []

    @pytest.mark.asyncio
    async def test_failing_execution_releases_slot(self):
        async def explode(executable):
            raise RuntimeError("boom")

        scheduler = ExecutionScheduler(explode, max_in_flight=1)
        await scheduler.enqueue(item("0x01", 5))
        await scheduler.enqueue(item("0x02", 4))

        assert await (await scheduler.run_once()) is None
        assert await (await scheduler.run_once()) is None
        assert scheduler.in_flight == []

    @pytest.mark.asyncio
    async def test_stop_never_cancels_after_grace_period(self):
        """A post-reveal claim outliving the grace period still runs to the end."""
        finished = []

        async def long_claim(executable):
            await asyncio.sleep(0.1)
            finished.append(executable.order_hash)
            return ExecutionResult(order_hash=executable.order_hash, success=True)

        scheduler = ExecutionScheduler(long_claim, loop_interval=0.001, grace_period=0.01)
        await scheduler.enqueue(item("0x01", 5))
        scheduler.start()
        await wait_until(lambda: scheduler.in_flight == ["0x01"])

        overran = await scheduler.stop()

        assert overran == ["0x01"]
        assert finished == ["0x01"]
        assert scheduler.get_status()["executed"] == 1
        assert scheduler.in_flight == []
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_waits_for_quick_executions(self):
        async def quick(executable):
            await asyncio.sleep(0.02)
            return ExecutionResult(order_hash=executable.order_hash, success=True)

        scheduler = ExecutionScheduler(quick, loop_interval=0.001, grace_period=1.0)
        await scheduler.enqueue(item("0x01", 5))
        scheduler.start()
        await wait_until(lambda: scheduler.in_flight == ["0x01"])

        assert await scheduler.stop() == []
        assert scheduler.get_status()["executed"] == 1
