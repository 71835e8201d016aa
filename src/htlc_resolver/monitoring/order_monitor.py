"""Source chain order monitor.

Live factory events and a periodic replay of the event log both feed one
idempotent handler, so a dropped subscription only delays detection.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from htlc_resolver.models import OrderStatus, SwapOrder
from htlc_resolver.monitoring.registry import OrderRegistry
from htlc_resolver.source.base import EscrowFactory, FactoryEvent, FactoryEventType

logger = logging.getLogger(__name__)

NewOrderCallback = Callable[[SwapOrder], Awaitable[None]]
OrderUpdateCallback = Callable[[str, dict], Awaitable[None]]


class OrderMonitor:
    """Tracks order lifecycle on the source factory."""

    def __init__(
        self,
        factory: EscrowFactory,
        registry: Optional[OrderRegistry] = None,
        reconcile_interval: float = 30.0,
        on_new_order: Optional[NewOrderCallback] = None,
        on_order_update: Optional[OrderUpdateCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.factory = factory
        self.registry = registry or OrderRegistry()
        self.reconcile_interval = reconcile_interval
        self.on_new_order = on_new_order
        self.on_order_update = on_order_update
        self._clock = clock
        self._running = False
        self._last_block: Optional[int] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._events_processed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_block(self) -> Optional[int]:
        return self._last_block

    async def start(self) -> None:
        if self._running:
            return

        self._last_block = await self.factory.get_block_number()
        await self.factory.subscribe(self.handle_event)
        self._running = True
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.info(f"Order monitor started at block {self._last_block}")

    async def stop(self) -> None:
        """Unsubscribe, stop reconciling and forget tracked orders."""
        if not self._running and self._reconcile_task is None:
            return

        self._running = False
        try:
            await self.factory.unsubscribe()
        except Exception as e:
            logger.warning(f"Unsubscribe failed: {e}")

        if self._reconcile_task:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None

        await self.registry.clear()
        logger.info("Order monitor stopped")

    async def handle_event(self, event: FactoryEvent) -> None:
        """Apply one factory event. Errors are logged, never raised."""
        try:
            if event.event_type == FactoryEventType.ORDER_CREATED:
                await self._on_created(event)
            elif event.event_type == FactoryEventType.ORDER_MATCHED:
                await self._update(
                    event,
                    OrderStatus.MATCHED,
                    resolver=event.data.get("resolver"),
                    safety_deposit=event.data.get("safety_deposit"),
                )
            elif event.event_type == FactoryEventType.ORDER_COMPLETED:
                await self._update(event, OrderStatus.COMPLETED, secret=event.data.get("secret"))
            elif event.event_type == FactoryEventType.ORDER_CANCELLED:
                await self._update(event, OrderStatus.CANCELLED, reason=event.data.get("reason"))
            self._events_processed += 1
        except Exception as e:
            logger.error(
                f"Failed to process {event.event_type.value} for {event.order_hash}: {e}",
                exc_info=True,
            )

    async def _on_created(self, event: FactoryEvent) -> None:
        if self.registry.seen(event.order_hash):
            logger.debug(f"Ignoring duplicate creation of {event.order_hash}")
            return

        order = await self.factory.get_order(event.order_hash)
        if order is None:
            logger.warning(f"Order {event.order_hash} not found on factory, skipping")
            return

        order.block_number = order.block_number or event.block_number
        order.transaction_hash = order.transaction_hash or event.transaction_hash

        if not await self.registry.add(order):
            return
        if order.status.is_terminal:
            logger.debug(f"Order {order.order_hash} already {order.status.value}")
            return

        logger.info(
            f"New order {order.order_hash}: {order.source_amount} -> chain "
            f"{order.destination_chain_id}, expiry {order.expiry}"
        )
        if self.on_new_order:
            await self.on_new_order(order)

    async def _update(self, event: FactoryEvent, status: OrderStatus, **details) -> None:
        fields = {}
        if status == OrderStatus.MATCHED:
            fields = {k: v for k, v in details.items() if v is not None}

        order = await self.registry.update_status(event.order_hash, status, **fields)
        if order is None:
            logger.debug(f"No status change for {event.order_hash} ({status.value})")
            return

        logger.info(f"Order {event.order_hash} -> {status.value} at block {event.block_number}")
        await self._emit_update(
            event.order_hash,
            {"status": status, "block_number": event.block_number, **details},
        )

    async def _emit_update(self, order_hash: str, update: dict) -> None:
        if self.on_order_update:
            await self.on_order_update(order_hash, update)

    async def reconcile(self) -> int:
        """Replay events since the last processed block, then expire stale orders.

        Returns:
            Number of replayed events
        """
        current = await self.factory.get_block_number()
        replayed = 0
        if self._last_block is None:
            self._last_block = current
        elif current > self._last_block:
            events = await self.factory.get_events(self._last_block + 1, current)
            for event in events:
                await self.handle_event(event)
            replayed = len(events)
            self._last_block = current
            if replayed:
                logger.info(f"Reconciled {replayed} event(s) up to block {current}")

        for order in await self.registry.expire(int(self._clock())):
            await self._emit_update(
                order.order_hash, {"status": OrderStatus.EXPIRED, "expiry": order.expiry}
            )
        return replayed

    async def _reconcile_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.reconcile_interval)
            try:
                await self.reconcile()
            except Exception as e:
                logger.error(f"Reconciliation failed: {e}")

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "last_block": self._last_block,
            "tracked_orders": len(self.registry),
            "events_processed": self._events_processed,
        }
