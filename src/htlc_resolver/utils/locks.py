"""Per-order mutual exclusion.

Execution, refund and resume all act on the same escrows. Only the
holder of an order's lock may broadcast for that order.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# order_hash -> asyncio.Lock, present only while someone holds or waits for it
_order_locks: dict[str, asyncio.Lock] = {}
# order_hash -> number of holders plus waiters
_lock_users: dict[str, int] = {}


class LockTimeoutError(Exception):
    """The order stayed locked longer than the caller was willing to wait."""


def _checkout(order_hash: str) -> asyncio.Lock:
    # No await between lookup and insert, so this is atomic on the event loop
    lock = _order_locks.get(order_hash)
    if lock is None:
        lock = _order_locks[order_hash] = asyncio.Lock()
    _lock_users[order_hash] = _lock_users.get(order_hash, 0) + 1
    return lock


def _checkin(order_hash: str) -> None:
    remaining = _lock_users.get(order_hash, 1) - 1
    if remaining > 0:
        _lock_users[order_hash] = remaining
        return
    _lock_users.pop(order_hash, None)
    _order_locks.pop(order_hash, None)


def is_order_locked(order_hash: str) -> bool:
    """True while some task holds the order's lock."""
    lock = _order_locks.get(order_hash)
    return bool(lock and lock.locked())


def tracked_order_locks() -> int:
    """Orders that currently have a holder or a waiter."""
    return len(_order_locks)


def clear_order_locks() -> None:
    """Forget every lock. Locks bind to an event loop, so tests call this between loops."""
    _order_locks.clear()
    _lock_users.clear()


class OrderLock:
    """Async context manager holding one order's lock.

    Example:
        async with OrderLock(order_hash, operation="refund"):
            record = await repo.get(order_hash)
            ...

    ``timeout`` of None waits indefinitely; otherwise LockTimeoutError is
    raised when the lock is not free in time.
    """

    def __init__(self, order_hash: str, timeout: Optional[float] = 30.0, operation: str = "settlement"):
        self.order_hash = order_hash
        self.timeout = timeout
        self.operation = operation
        self._held: Optional[asyncio.Lock] = None

    async def __aenter__(self) -> "OrderLock":
        lock = _checkout(self.order_hash)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            _checkin(self.order_hash)
            logger.warning(
                f"{self.operation} on {self.order_hash} gave up waiting after {self.timeout}s"
            )
            raise LockTimeoutError(
                f"Order {self.order_hash} still locked after {self.timeout}s ({self.operation})"
            )
        except asyncio.CancelledError:
            _checkin(self.order_hash)
            raise

        self._held = lock
        logger.debug(f"{self.operation} holds {self.order_hash}")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if self._held is not None:
            self._held.release()
            self._held = None
            _checkin(self.order_hash)
            logger.debug(f"{self.operation} released {self.order_hash}")
        return False
