"""Priority execution queue with bounded concurrency."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from htlc_resolver.models import ExecutableOrder, ExecutionResult

logger = logging.getLogger(__name__)

ExecuteFn = Callable[[ExecutableOrder], Awaitable[ExecutionResult]]


class ExecutionScheduler:
    """Runs queued orders highest priority first, at most max_in_flight at a time.

    The queue is written by the monitor callbacks and read by the loop,
    so every access holds ``_lock``.
    """

    def __init__(
        self,
        execute: ExecuteFn,
        loop_interval: float = 10.0,
        max_in_flight: int = 3,
        grace_period: float = 120.0,
    ):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._execute = execute
        self.loop_interval = loop_interval
        self.max_in_flight = max_in_flight
        self.grace_period = grace_period

        self._queue: list[ExecutableOrder] = []
        self._lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(max_in_flight)
        self._in_flight: dict[str, asyncio.Task] = {}
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._executed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> list[str]:
        return list(self._in_flight)

    def queued(self) -> list[ExecutableOrder]:
        return sorted(self._queue, key=lambda item: item.priority, reverse=True)

    async def enqueue(self, item: ExecutableOrder) -> bool:
        """Queue an order. Returns False if it is already queued or running."""
        async with self._lock:
            if item.order_hash in self._in_flight or any(
                queued.order_hash == item.order_hash for queued in self._queue
            ):
                logger.debug(f"Order {item.order_hash} already queued")
                return False
            self._queue.append(item)
        logger.info(f"Queued {item.order_hash} with priority {item.priority}")
        return True

    async def drop(self, order_hash: str) -> bool:
        """Remove a queued order without executing it."""
        async with self._lock:
            before = len(self._queue)
            self._queue = [item for item in self._queue if item.order_hash != order_hash]
            dropped = len(self._queue) < before
        if dropped:
            logger.info(f"Dropped {order_hash} from execution queue")
        return dropped

    async def _pop_next(self) -> Optional[ExecutableOrder]:
        async with self._lock:
            if not self._queue:
                return None
            self._queue.sort(key=lambda item: item.priority, reverse=True)
            return self._queue.pop(0)

    async def run_once(self) -> Optional[asyncio.Task]:
        """Wait for a free slot, then start the highest priority order."""
        await self._slots.acquire()
        item = await self._pop_next()
        if item is None:
            self._slots.release()
            return None

        logger.info(f"Processing order {item.order_hash} (priority {item.priority})")
        task = asyncio.create_task(self._run(item))
        self._in_flight[item.order_hash] = task
        return task

    async def _run(self, item: ExecutableOrder) -> Optional[ExecutionResult]:
        try:
            result = await self._execute(item)
            self._executed += 1
            if result.success:
                logger.info(f"Executed {item.order_hash} in {result.execution_time:.1f}s")
            else:
                logger.error(
                    f"Execution of {item.order_hash} failed at {result.state.value}: {result.error}"
                )
            return result
        except asyncio.CancelledError:
            logger.warning(f"Execution of {item.order_hash} cancelled")
            raise
        except Exception as e:
            logger.error(f"Execution error for {item.order_hash}: {e}", exc_info=True)
            return None
        finally:
            self._in_flight.pop(item.order_hash, None)
            self._slots.release()

    async def _loop(self) -> None:
        logger.info(
            f"Execution loop started (interval {self.loop_interval}s, "
            f"max in flight {self.max_in_flight})"
        )
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in execution loop: {e}", exc_info=True)
            await asyncio.sleep(self.loop_interval)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> list[str]:
        """Stop dequeuing and wait for in-flight executions.

        Executions are never cancelled: a task cut off mid-broadcast cannot
        tell a lost transaction from a sent one. The executor's own stop
        request ends them at their next safe point; anything still running
        after the grace period (a broadcast under way, a post-reveal source
        claim) is logged and awaited to completion.

        Returns:
            Order hashes still executing when the grace period ran out
        """
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._in_flight.items())
        if not tasks:
            return []

        logger.info(f"Waiting up to {self.grace_period}s for {len(tasks)} execution(s)")
        _, pending = await asyncio.wait([t for _, t in tasks], timeout=self.grace_period)

        overran = [order_hash for order_hash, task in tasks if task in pending]
        if overran:
            logger.warning(
                f"Still executing after {self.grace_period}s, waiting for a safe point: "
                f"{', '.join(overran)}"
            )
            await asyncio.gather(*pending, return_exceptions=True)
        return overran

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "queue_length": len(self._queue),
            "in_flight": self.in_flight,
            "max_in_flight": self.max_in_flight,
            "executed": self._executed,
        }
