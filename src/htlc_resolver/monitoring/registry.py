"""In-memory registry of orders the monitor is tracking.

The monitor's live feed and its reconciliation tick both write here, so
every mutation goes through one asyncio.Lock.
"""

import asyncio
import logging
from typing import Optional

from htlc_resolver.models import OrderStatus, SwapOrder

logger = logging.getLogger(__name__)

# Finished hashes are kept this long past their expiry to absorb late replays
FINISHED_RETENTION = 86400


class OrderRegistry:
    """Known and matched orders, plus the hashes of orders already finished."""

    def __init__(self, finished_retention: int = FINISHED_RETENTION):
        self._lock = asyncio.Lock()
        self._orders: dict[str, SwapOrder] = {}
        self._finished: dict[str, int] = {}  # order_hash -> expiry
        self.finished_retention = finished_retention

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_hash: str) -> bool:
        return order_hash in self._orders

    def seen(self, order_hash: str) -> bool:
        """True for active orders and for ones that already reached a terminal status."""
        return order_hash in self._orders or order_hash in self._finished

    def get(self, order_hash: str) -> Optional[SwapOrder]:
        return self._orders.get(order_hash)

    def active(self) -> list[SwapOrder]:
        return list(self._orders.values())

    async def add(self, order: SwapOrder) -> bool:
        """Track an order. Returns False if it was already seen."""
        async with self._lock:
            if self.seen(order.order_hash):
                return False
            if order.status.is_terminal:
                self._finished[order.order_hash] = order.expiry
            else:
                self._orders[order.order_hash] = order
            return True

    async def update_status(self, order_hash: str, status: OrderStatus, **fields) -> Optional[SwapOrder]:
        """Move an active order to a new status.

        Returns the order if the status changed, None if the order is unknown
        or already had that status. Terminal orders leave active memory.
        """
        async with self._lock:
            order = self._orders.get(order_hash)
            if order is None or order.status == status:
                return None

            order.status = status
            for name, value in fields.items():
                setattr(order, name, value)

            if status.is_terminal:
                del self._orders[order_hash]
                self._finished[order_hash] = order.expiry
            return order

    @property
    def finished_count(self) -> int:
        return len(self._finished)

    async def expire(self, now: int) -> list[SwapOrder]:
        """Mark every active order whose expiry has passed as expired.

        Finished hashes older than the retention window are forgotten.
        """
        async with self._lock:
            expired = [o for o in self._orders.values() if o.expiry <= now]
            for order in expired:
                order.status = OrderStatus.EXPIRED
                del self._orders[order.order_hash]
                self._finished[order.order_hash] = order.expiry

            cutoff = now - self.finished_retention
            stale = [h for h, expiry in self._finished.items() if expiry <= cutoff]
            for order_hash in stale:
                del self._finished[order_hash]
        if stale:
            logger.debug(f"Forgot {len(stale)} finished order(s)")
        for order in expired:
            logger.info(f"Order {order.order_hash} expired at {order.expiry}")
        return expired

    async def clear(self) -> None:
        async with self._lock:
            self._orders.clear()
            self._finished.clear()
