"""Cross-chain atomic settlement of one order.

States advance Analyzed -> SourceLocked -> DestinationFunded ->
SecretRevealed -> SourceClaimed -> Settled. Every step is written to the
settlement ledger before the next one starts, and a re-run first checks
chain state for progress the ledger missed, so resuming never pays twice.

A failure before the secret is revealed leaves the destination escrow to
the refund sweep. The secret is only revealed while the source claim
window still has `source_claim_margin` seconds left. After the reveal the
secret is public, so the source claim is retried until the source
cancellation stage.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from htlc_resolver.chains.base import AdapterRegistry, DestinationAdapter
from htlc_resolver.errors import (
    AlreadyMatched,
    ExecutionInterrupted,
    InvalidSchedule,
    InvariantViolation,
    RaceLostError,
    TransactionReverted,
)
from htlc_resolver.execution.secret_provider import SecretProvider
from htlc_resolver.ledger.database import SessionScope, get_db
from htlc_resolver.ledger.models import SettlementRecord
from htlc_resolver.ledger.repository import SettlementRepository, escrow_from_record
from htlc_resolver.models import (
    ChainFamily,
    EscrowRecord,
    ExecutableOrder,
    ExecutionResult,
    OrderStatus,
    SettlementState,
    SwapOrder,
)
from htlc_resolver.source.base import EscrowFactory
from htlc_resolver.timelock import (
    TimelockSchedule,
    TimelockStage,
    derive_timelock_schedule,
    validate_schedule,
)
from htlc_resolver.utils.locks import LockTimeoutError, OrderLock

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ExecutionResult], Awaitable[None]]

MAX_CLAIM_RETRY_DELAY = 300.0


class CrossChainExecutor:
    """Drives one order through atomic settlement."""

    def __init__(
        self,
        factory: EscrowFactory,
        adapters: AdapterRegistry,
        secrets: SecretProvider,
        session_scope: SessionScope = get_db,
        secret_wait_timeout: float = 900.0,
        source_claim_retry_delay: float = 15.0,
        source_claim_margin: float = 600.0,
        min_timelock_segment: int = 600,
        lock_timeout: Optional[float] = 30.0,
        on_complete: Optional[ResultCallback] = None,
        on_failed: Optional[ResultCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.factory = factory
        self.adapters = adapters
        self.secrets = secrets
        self._session_scope = session_scope
        self.secret_wait_timeout = secret_wait_timeout
        self.source_claim_retry_delay = source_claim_retry_delay
        self.source_claim_margin = source_claim_margin
        self.min_timelock_segment = min_timelock_segment
        self.lock_timeout = lock_timeout
        self.on_complete = on_complete
        self.on_failed = on_failed
        self._clock = clock
        self._stop_requested = asyncio.Event()

    def request_stop(self) -> None:
        """Stop at the next step boundary.

        Confirmation and secret waits end at once. Broadcasts already under
        way complete, and post-reveal source claims keep going.
        """
        self._stop_requested.set()

    def _check_stop(self, step: str) -> None:
        if self._stop_requested.is_set():
            raise ExecutionInterrupted(f"Shutdown before {step}")

    async def _until_stopped(self, awaitable: Awaitable[Any], step: str) -> Any:
        """Await a read-only wait, abandoning it when a stop is requested.

        Only for waits that broadcast nothing.

        Raises:
            ExecutionInterrupted: Stop requested before the wait finished
        """
        waiter = asyncio.ensure_future(awaitable)
        stop = asyncio.create_task(self._stop_requested.wait())
        try:
            await asyncio.wait({waiter, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            waiter.cancel()
            raise
        finally:
            stop.cancel()

        if not waiter.done():
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            raise ExecutionInterrupted(f"Shutdown during {step}")
        return waiter.result()

    def _require_claim_window(self, order: SwapOrder, schedule: TimelockSchedule) -> None:
        """Raise unless the source can still be claimed after a reveal now.

        Raises:
            InvariantViolation: Less than source_claim_margin left before source cancellation
        """
        deadline = schedule[TimelockStage.SRC_CANCELLATION]
        now = self._clock()
        if now + self.source_claim_margin >= deadline:
            raise InvariantViolation(
                f"Refusing to reveal secret for {order.order_hash}: source cancellation at "
                f"{deadline}, now {int(now)}, margin {self.source_claim_margin:.0f}s"
            )

    # ---- ledger ----

    async def _load(self, order_hash: str) -> Optional[SettlementRecord]:
        async with self._session_scope() as session:
            return await SettlementRepository(session).get(order_hash)

    async def _save(self, order_hash: str, **fields) -> None:
        async with self._session_scope() as session:
            await SettlementRepository(session).update(order_hash, **fields)

    async def _save_escrow(self, escrow: EscrowRecord) -> None:
        async with self._session_scope() as session:
            await SettlementRepository(session).record_escrow(escrow)

    def _schedule_for(self, order: SwapOrder) -> TimelockSchedule:
        """Timelock schedule for a first attempt.

        Raises:
            InvalidSchedule: Stages out of order, in the past, or too close together
        """
        now = int(self._clock())
        if order.timelocks is None:
            return derive_timelock_schedule(order.expiry, now, self.min_timelock_segment)
        if not validate_schedule(order.timelocks.stages, now, self.min_timelock_segment):
            raise InvalidSchedule(f"Order {order.order_hash} carries an invalid timelock schedule")
        return order.timelocks

    async def _load_or_create(self, order: SwapOrder, family: ChainFamily) -> SettlementRecord:
        record = await self._load(order.order_hash)
        if record is not None:
            return record
        schedule = self._schedule_for(order)
        async with self._session_scope() as session:
            return await SettlementRepository(session).create(order, family, schedule)

    # ---- entry point ----

    async def execute_atomic_swap(self, item: ExecutableOrder) -> ExecutionResult:
        """Run or resume settlement of one order. Never raises."""
        started = time.monotonic()
        result = ExecutionResult(order_hash=item.order_hash)

        try:
            async with OrderLock(item.order_hash, timeout=self.lock_timeout, operation="execute"):
                await self._execute(item, result)
        except LockTimeoutError as e:
            result.error = str(e)
        except Exception as e:
            logger.error(f"Execution of {item.order_hash} crashed: {e}", exc_info=True)
            result.error = result.error or str(e)

        result.execution_time = time.monotonic() - started
        if result.success:
            logger.info(
                f"Settled {item.order_hash} in {result.execution_time:.1f}s, "
                f"profit {result.actual_profit} wei"
            )
            callback = self.on_complete
        else:
            logger.error(
                f"Execution of {item.order_hash} stopped at {result.state.value}: {result.error}"
            )
            callback = self.on_failed

        if callback:
            try:
                await callback(result)
            except Exception as e:
                logger.error(f"Execution callback failed for {item.order_hash}: {e}")
        return result

    async def _execute(self, item: ExecutableOrder, result: ExecutionResult) -> None:
        order = item.order
        adapter = self.adapters.for_chain(order.destination_chain_id)
        record = await self._load_or_create(order, adapter.family)

        state = SettlementState(record.state)
        schedule = TimelockSchedule(tuple(record.timelocks))
        escrow = escrow_from_record(record) if record.destination_address else None
        secret = bytes.fromhex(record.secret) if record.secret else None
        for txid in (record.source_match_tx, record.source_claim_tx):
            result.add_tx("source", txid)
        for txid in (record.funding_txid, record.destination_claim_tx):
            result.add_tx("destination", txid)
        result.state = state

        if state in (SettlementState.SETTLED, SettlementState.REFUNDED):
            result.success = state == SettlementState.SETTLED
            return
        if state in (SettlementState.REFUND_PENDING, SettlementState.FAILED):
            result.error = f"Settlement already {state.value}"
            return
        if state != SettlementState.ANALYZED:
            logger.info(f"Resuming {order.order_hash} from {state.value}")

        try:
            if state == SettlementState.ANALYZED:
                self._check_stop("source lock")
                await self._lock_source(order, result)
                state = result.state = SettlementState.SOURCE_LOCKED

            if state == SettlementState.SOURCE_LOCKED:
                if escrow is None:
                    escrow = await adapter.prepare_escrow(order, order.hashlock, schedule)
                    # Recorded before funding so a crash mid-broadcast is found on resume
                    await self._save_escrow(escrow)
                escrow = await self._fund_destination(order, adapter, escrow, result)
                state = result.state = SettlementState.DESTINATION_FUNDED

            if state == SettlementState.DESTINATION_FUNDED:
                self._check_stop("secret reveal")
                secret = await self._reveal_secret(order, adapter, escrow, schedule, result)
                if secret is None:
                    result.error = "Secret not available; escrow left to the refund sweep"
                    return
                state = result.state = SettlementState.SECRET_REVEALED

        except ExecutionInterrupted as e:
            logger.warning(f"{order.order_hash}: {e}, state kept at {state.value}")
            result.error = str(e)
            await adapter.release(order.order_hash)
            return
        except RaceLostError as e:
            result.race_lost = True
            await self._fail_before_reveal(order, adapter, escrow, result, e)
            return
        except Exception as e:
            await self._fail_before_reveal(order, adapter, escrow, result, e)
            return

        if state == SettlementState.SECRET_REVEALED:
            if not await self._claim_source(order, secret, schedule, result):
                return
            state = result.state = SettlementState.SOURCE_CLAIMED

        if state == SettlementState.SOURCE_CLAIMED:
            await self._save(order.order_hash, state=SettlementState.SETTLED, error=None)
            result.state = SettlementState.SETTLED
            result.success = True
            result.actual_profit = item.analysis.estimated_profit

    # ---- steps ----

    async def _lock_source(self, order: SwapOrder, result: ExecutionResult) -> None:
        """Match the order on the source factory unless our match already exists.

        Raises:
            AlreadyMatched: Another resolver matched first
        """
        existing = await self.factory.get_source_escrow(order.order_hash)
        if existing:
            await self._ensure_ours(order.order_hash)
            logger.info(f"Source escrow for {order.order_hash} already at {existing}")
            await self._save(
                order.order_hash, state=SettlementState.SOURCE_LOCKED, source_escrow=existing
            )
            return

        deposit = await self.factory.calculate_min_safety_deposit(
            order.destination_chain_id, order.source_amount
        )
        try:
            tx_hash = await self.factory.match_order(order.order_hash, deposit)
        except TransactionReverted:
            if await self.factory.get_source_escrow(order.order_hash):
                await self._ensure_ours(order.order_hash)
            raise

        result.add_tx("source", tx_hash)
        escrow_address = await self.factory.get_source_escrow(order.order_hash)
        await self._save(
            order.order_hash,
            state=SettlementState.SOURCE_LOCKED,
            source_match_tx=tx_hash,
            source_escrow=escrow_address,
        )
        logger.info(f"Matched {order.order_hash} with deposit {deposit} wei: {tx_hash}")

    async def _ensure_ours(self, order_hash: str) -> None:
        ours = self.factory.resolver_address
        current = await self.factory.get_order(order_hash)
        if ours and current and current.resolver and current.resolver.lower() != ours.lower():
            raise AlreadyMatched(f"Order {order_hash} matched by {current.resolver}")

    async def _fund_destination(
        self,
        order: SwapOrder,
        adapter: DestinationAdapter,
        escrow: EscrowRecord,
        result: ExecutionResult,
    ) -> EscrowRecord:
        existing = await adapter.find_existing_funding(escrow)
        if existing is not None:
            escrow = existing
            logger.info(f"Destination escrow for {order.order_hash} already funded")
        else:
            self._check_stop("destination funding")
            escrow = await adapter.fund(escrow, order)

        await self._save_escrow(escrow)
        result.add_tx("destination", escrow.funding_txid)

        if not await self._until_stopped(adapter.wait_funded(escrow), "funding confirmation"):
            raise TimeoutError(f"Destination funding {escrow.funding_txid} not confirmed in time")

        await self._save(order.order_hash, state=SettlementState.DESTINATION_FUNDED)
        return escrow

    async def _reveal_secret(
        self,
        order: SwapOrder,
        adapter: DestinationAdapter,
        escrow: EscrowRecord,
        schedule: TimelockSchedule,
        result: ExecutionResult,
    ) -> Optional[bytes]:
        """Claim the destination escrow, which publishes the secret.

        Returns None when the secret never arrived.

        Raises:
            InvariantViolation: The source claim window is closing
        """
        revealed = await adapter.find_revealed_secret(escrow)
        if revealed is not None:
            logger.info(f"Secret for {order.order_hash} already revealed on destination")
            await self._save(
                order.order_hash, state=SettlementState.SECRET_REVEALED, secret=revealed.hex()
            )
            return revealed

        self._require_claim_window(order, schedule)
        latest = schedule[TimelockStage.SRC_CANCELLATION] - self.source_claim_margin
        timeout = min(self.secret_wait_timeout, max(0.0, latest - self._clock()))
        secret = await self._until_stopped(
            self.secrets.wait_for_secret(order.order_hash, order.hashlock, timeout),
            "secret wait",
        )
        if secret is None:
            return None

        self._check_stop("secret reveal")
        self._require_claim_window(order, schedule)
        await self._save(order.order_hash, secret=secret.hex())
        tx_ref = await adapter.claim(escrow, secret, order)
        result.add_tx("destination", tx_ref)
        await self._save(
            order.order_hash,
            state=SettlementState.SECRET_REVEALED,
            destination_claim_tx=tx_ref,
        )
        logger.info(f"Revealed secret for {order.order_hash} via {tx_ref}")
        return secret

    async def _claim_source(
        self,
        order: SwapOrder,
        secret: bytes,
        schedule: TimelockSchedule,
        result: ExecutionResult,
    ) -> bool:
        """Complete the source order, retrying with backoff until source cancellation opens."""
        deadline = schedule[TimelockStage.SRC_CANCELLATION]
        attempt = 0
        while True:
            attempt += 1
            try:
                tx_hash = await self.factory.complete_order(order.order_hash, secret)
                result.add_tx("source", tx_hash)
                await self._save(
                    order.order_hash,
                    state=SettlementState.SOURCE_CLAIMED,
                    source_claim_tx=tx_hash,
                    error=None,
                )
                logger.info(f"Claimed source escrow for {order.order_hash}: {tx_hash}")
                return True
            except Exception as e:
                error = e
                if isinstance(e, TransactionReverted):
                    current = await self._safe_get_order(order.order_hash)
                    if current is not None and current.status == OrderStatus.COMPLETED:
                        logger.info(f"Source order {order.order_hash} already completed")
                        await self._save(order.order_hash, state=SettlementState.SOURCE_CLAIMED)
                        return True

            now = self._clock()
            if now >= deadline:
                result.error = f"Source claim window closed after {attempt} attempt(s): {error}"
                logger.critical(f"{order.order_hash}: {result.error}")
                await self._save(order.order_hash, error=result.error)
                return False

            delay = min(
                self.source_claim_retry_delay * 2 ** (attempt - 1),
                MAX_CLAIM_RETRY_DELAY,
                deadline - now,
            )
            logger.warning(
                f"Source claim attempt {attempt} for {order.order_hash} failed: {error}; "
                f"retrying in {delay:.0f}s"
            )
            await self._save(order.order_hash, error=str(error), attempts=attempt)
            await asyncio.sleep(delay)

    async def _safe_get_order(self, order_hash: str) -> Optional[SwapOrder]:
        try:
            return await self.factory.get_order(order_hash)
        except Exception as e:
            logger.warning(f"Order lookup for {order_hash} failed: {e}")
            return None

    async def _fail_before_reveal(
        self,
        order: SwapOrder,
        adapter: DestinationAdapter,
        escrow: Optional[EscrowRecord],
        result: ExecutionResult,
        error: Exception,
    ) -> None:
        """Hand a funded escrow to the refund sweep, or close out an unfunded attempt."""
        await adapter.release(order.order_hash)
        reached = result.state
        result.error = f"{type(error).__name__} at {reached.value}: {error}"

        if escrow is None:
            try:
                record = await self._load(order.order_hash)
            except Exception as e:
                logger.error(f"Could not reload settlement of {order.order_hash}: {e}")
                record = None
            if record is not None and record.destination_address:
                escrow = escrow_from_record(record)

        if escrow is not None and not escrow.address:
            # Contract escrows get their address from the funding call itself
            try:
                found = await adapter.find_existing_funding(escrow)
            except Exception as e:
                logger.critical(
                    f"Cannot tell whether {order.order_hash} was funded ({e}); "
                    f"leaving it at {reached.value} for the next resume"
                )
                await self._record_error(order.order_hash, result.error)
                return
            if found is not None and found.address:
                escrow = found
                try:
                    await self._save_escrow(escrow)
                except Exception as e:
                    logger.error(f"Could not record escrow of {order.order_hash}: {e}")

        if escrow is not None and escrow.address:
            new_state = SettlementState.REFUND_PENDING
        else:
            new_state = SettlementState.FAILED
        logger.error(f"Order {order.order_hash} failed at {reached.value}: {error}")

        try:
            await self._save(order.order_hash, state=new_state, error=result.error)
        except Exception as e:
            logger.error(f"Could not record failure of {order.order_hash}: {e}")
        result.state = new_state

    async def _record_error(self, order_hash: str, error: str) -> None:
        try:
            await self._save(order_hash, error=error)
        except Exception as e:
            logger.error(f"Could not record failure of {order_hash}: {e}")
