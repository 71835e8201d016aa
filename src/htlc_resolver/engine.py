"""Resolver engine: wires monitor, analyzer, scheduler, executor and refund sweep.

Three independent tasks run on one event loop: the order monitor
(subscription plus reconciliation), the execution loop and the refund
sweep. Operators and the status API observe the engine through named
events: new_order, order_update, execution_complete, execution_failed,
refund_outcome.
"""

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from htlc_resolver.analysis.profitability import ProfitabilityAnalyzer
from htlc_resolver.chains.base import AdapterRegistry
from htlc_resolver.config import Settings
from htlc_resolver.execution.executor import CrossChainExecutor
from htlc_resolver.execution.scheduler import ExecutionScheduler
from htlc_resolver.execution.secret_provider import InMemorySecretProvider
from htlc_resolver.ledger.database import SessionScope, get_db
from htlc_resolver.ledger.repository import SettlementRepository
from htlc_resolver.models import (
    ExecutableOrder,
    ExecutionResult,
    OrderStatus,
    ProfitabilityAnalysis,
    RefundOutcome,
    RefundResult,
    SettlementState,
    SwapOrder,
)
from htlc_resolver.monitoring.order_monitor import OrderMonitor
from htlc_resolver.monitoring.registry import OrderRegistry
from htlc_resolver.notifications.telegram import TelegramNotifier
from htlc_resolver.refund.manager import RefundManager
from htlc_resolver.source.base import EscrowFactory

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Awaitable[None]]

RESUME_PRIORITY = 10
RESUMABLE_STATES = (
    SettlementState.ANALYZED,
    SettlementState.SOURCE_LOCKED,
    SettlementState.DESTINATION_FUNDED,
    SettlementState.SECRET_REVEALED,
    SettlementState.SOURCE_CLAIMED,
)


class EventEmitter:
    """Named async events. A failing handler is logged and skipped."""

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(*args)
            except Exception as e:
                logger.error(f"Handler for {event} failed: {e}")


class ResolverEngine:
    """One resolver instance."""

    def __init__(
        self,
        settings: Settings,
        factory: EscrowFactory,
        adapters: AdapterRegistry,
        secrets: Optional[InMemorySecretProvider] = None,
        session_scope: SessionScope = get_db,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.settings = settings
        self.factory = factory
        self.adapters = adapters
        self.secrets = secrets or InMemorySecretProvider()
        self.session_scope = session_scope
        self.notifier = notifier
        self.events = EventEmitter()
        self._running = False

        self.registry = OrderRegistry()
        self.monitor = OrderMonitor(
            factory,
            registry=self.registry,
            reconcile_interval=settings.reconcile_interval,
            on_new_order=self._handle_new_order,
            on_order_update=self._handle_order_update,
        )
        self.analyzer = ProfitabilityAnalyzer(
            factory,
            min_profit_wei=settings.min_profit_wei,
            min_profit_margin=settings.min_profit_margin,
            capital_cost_rate=settings.capital_cost_rate,
        )
        self.executor = CrossChainExecutor(
            factory,
            adapters,
            self.secrets,
            session_scope=session_scope,
            secret_wait_timeout=settings.secret_wait_timeout,
            source_claim_retry_delay=settings.source_claim_retry_delay,
            source_claim_margin=settings.source_claim_margin,
            min_timelock_segment=settings.min_timelock_segment,
            on_complete=self._handle_execution_complete,
            on_failed=self._handle_execution_failed,
        )
        self.scheduler = ExecutionScheduler(
            self.executor.execute_atomic_swap,
            loop_interval=settings.loop_interval,
            max_in_flight=settings.max_concurrent_executions,
            grace_period=settings.shutdown_grace_period,
        )
        self.refunds = RefundManager(
            adapters,
            session_scope=session_scope,
            refund_address=settings.btc_refund_address,
            pacing_delay=settings.refund_pacing_delay,
            sweep_interval=settings.refund_sweep_interval,
            on_outcome=self._handle_refund_outcome,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._running:
            return
        logger.info("Starting resolver engine")

        try:
            supported = await self.factory.get_supported_chains()
            self.analyzer.supported_chains = set(supported)
            logger.info(f"Factory supports destination chains {sorted(supported)}")
        except Exception as e:
            logger.warning(f"Could not load supported chains: {e}")

        await self.resume_unfinished()
        await self.monitor.start()
        self.scheduler.start()
        self.refunds.start()
        self._running = True
        logger.info("Resolver engine started")

    async def stop(self) -> None:
        """Stop taking events, let executions reach a safe point, then stop sweeping."""
        if not self._running:
            return
        logger.info("Stopping resolver engine")
        self._running = False

        await self.monitor.stop()
        self.executor.request_stop()
        overran = await self.scheduler.stop()
        if overran:
            logger.info(f"{len(overran)} execution(s) finished after the grace period")
        await self.refunds.stop()
        logger.info("Resolver engine stopped")

    async def close(self) -> None:
        await self.factory.close()
        await self.adapters.close()
        if self.notifier:
            await self.notifier.close()

    # ---- monitor callbacks ----

    async def _handle_new_order(self, order: SwapOrder) -> None:
        await self.events.emit("new_order", order)

        if not self.adapters.supports(order.destination_chain_id):
            logger.info(
                f"Order {order.order_hash} targets chain {order.destination_chain_id} "
                f"with no adapter, skipping"
            )
            return

        analysis = await self.analyzer.analyze(order)
        if not analysis.is_profitable:
            logger.info(f"Order {order.order_hash} not profitable, skipping")
            for reason in analysis.reasoning:
                logger.debug(f"  {reason}")
            return

        await self.scheduler.enqueue(ExecutableOrder(order, analysis, analysis.priority))

    async def _handle_order_update(self, order_hash: str, update: dict) -> None:
        await self.events.emit("order_update", order_hash, update)

        status = update.get("status")
        if isinstance(status, OrderStatus) and status.is_terminal:
            await self.scheduler.drop(order_hash)
        elif status == OrderStatus.MATCHED:
            ours = self.factory.resolver_address
            resolver = update.get("resolver")
            if ours and resolver and resolver.lower() != ours.lower():
                logger.info(f"Order {order_hash} matched by {resolver}")
                await self.scheduler.drop(order_hash)

    # ---- executor / refund callbacks ----

    async def _handle_execution_complete(self, result: ExecutionResult) -> None:
        self.secrets.forget(result.order_hash)
        await self.events.emit("execution_complete", result)
        if self.notifier:
            await self.notifier.notify_execution_complete(result)

    async def _handle_execution_failed(self, result: ExecutionResult) -> None:
        await self.events.emit("execution_failed", result)
        if self.notifier:
            await self.notifier.notify_execution_failed(result)

    async def _handle_refund_outcome(self, result: RefundResult) -> None:
        await self.events.emit("refund_outcome", result)
        if self.notifier:
            await self.notifier.notify_refund(result)
        if result.outcome == RefundOutcome.ALREADY_CLAIMED and result.revealed_secret is not None:
            # Recovered secret: finish with the source claim
            await self.resume(result.order_hash)

    # ---- resume / secrets ----

    async def resume(self, order_hash: str, state: Optional[SettlementState] = None) -> bool:
        """Queue an order that has a settlement record for another execution pass.

        The order is tracked by the registry so that later cancellation or
        completion events drop it from the queue. An order that already
        ended on the source before we locked it is not queued.
        """
        try:
            order = await self.factory.get_order(order_hash)
        except Exception as e:
            logger.warning(f"Cannot resume {order_hash}: order lookup failed: {e}")
            return False
        if order is None:
            logger.warning(f"Cannot resume {order_hash}: factory does not know it")
            return False

        await self.registry.add(order)
        if order.status.is_terminal and state == SettlementState.ANALYZED:
            logger.info(f"Not resuming {order_hash}: order already {order.status.value}")
            return False

        analysis = ProfitabilityAnalysis(
            order_hash=order_hash,
            is_profitable=True,
            priority=RESUME_PRIORITY,
            reasoning=["Resumed from settlement ledger"],
        )
        return await self.scheduler.enqueue(ExecutableOrder(order, analysis, RESUME_PRIORITY))

    async def resume_unfinished(self) -> int:
        async with self.session_scope() as session:
            records = await SettlementRepository(session).list_by_state(RESUMABLE_STATES)

        resumed = 0
        for record in records:
            if await self.resume(record.order_hash, SettlementState(record.state)):
                resumed += 1
        if resumed:
            logger.info(f"Resumed {resumed} unfinished settlement(s)")
        return resumed

    async def submit_secret(self, order_hash: str, secret: bytes) -> bool:
        """Accept the maker's secret for an order.

        Returns True if the order was queued to continue with it.

        Raises:
            KeyError: No settlement exists for the order
            ResolverValidationError: The secret does not open the order's hashlock
        """
        async with self.session_scope() as session:
            record = await SettlementRepository(session).get(order_hash)
        if record is None:
            raise KeyError(order_hash)

        self.secrets.register(order_hash, secret, bytes.fromhex(record.hashlock))
        if (
            record.state == SettlementState.DESTINATION_FUNDED.value
            and order_hash not in self.scheduler.in_flight
        ):
            return await self.resume(order_hash)
        return False

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "monitor": self.monitor.get_status(),
            "scheduler": self.scheduler.get_status(),
            "refunds": self.refunds.get_status(),
            "analyzer": self.analyzer.get_status(),
            "notifications": bool(self.notifier and self.notifier.enabled),
        }
