"""Refund sweep for destination escrows that were funded but never claimed.

The refund branch is the protocol's safety net, so every eligibility
check and every outcome is logged.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from htlc_resolver.chains.base import AdapterRegistry
from htlc_resolver.ledger.database import SessionScope, get_db
from htlc_resolver.ledger.models import SettlementRecord
from htlc_resolver.ledger.repository import SettlementRepository, escrow_from_record
from htlc_resolver.models import EscrowRecord, RefundOutcome, RefundResult, SettlementState
from htlc_resolver.utils.locks import LockTimeoutError, OrderLock, is_order_locked

logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[RefundResult], Awaitable[None]]


def refund_order_key(record: SettlementRecord) -> tuple:
    """Soonest expiry first; UTXO escrows then by timelock height."""
    return (record.expiry, record.timelock_height or 0, record.order_hash)


class RefundManager:
    """Reclaims destination funds once an escrow's timelock has passed."""

    def __init__(
        self,
        adapters: AdapterRegistry,
        session_scope: SessionScope = get_db,
        refund_address: Optional[str] = None,
        key_id: Optional[str] = None,
        pacing_delay: float = 2.0,
        sweep_interval: float = 300.0,
        on_outcome: Optional[OutcomeCallback] = None,
    ):
        self.adapters = adapters
        self._session_scope = session_scope
        self.refund_address = refund_address
        self.key_id = key_id
        self.pacing_delay = pacing_delay
        self.sweep_interval = sweep_interval
        self.on_outcome = on_outcome
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._stopping = False
        self._stats = {outcome.value: 0 for outcome in RefundOutcome}

    async def can_refund(self, escrow: EscrowRecord) -> bool:
        """True once the escrow's timelock has passed on its chain."""
        adapter = self.adapters.for_family(escrow.family)
        return await adapter.can_refund(escrow)

    async def refund_expired(
        self,
        escrow: EscrowRecord,
        refund_address: Optional[str] = None,
        key_id: Optional[str] = None,
    ) -> RefundResult:
        """Broadcast a refund-path spend of the escrow. Never raises."""
        adapter = self.adapters.for_family(escrow.family)
        try:
            result = await adapter.refund(
                escrow, refund_address or self.refund_address, key_id or self.key_id
            )
        except Exception as e:
            logger.error(f"Refund of {escrow.order_hash} failed: {e}", exc_info=True)
            result = RefundResult(
                order_hash=escrow.order_hash, outcome=RefundOutcome.FAILED, error=str(e)
            )

        self._stats[result.outcome.value] += 1
        if result.outcome == RefundOutcome.REFUNDED:
            logger.info(f"Refund outcome {escrow.order_hash}: refunded ({result.txid})")
        elif result.outcome == RefundOutcome.ALREADY_CLAIMED:
            logger.warning(
                f"Refund outcome {escrow.order_hash}: already claimed by {result.spending_txid}"
            )
        elif result.outcome == RefundOutcome.NOT_YET_REFUNDABLE:
            logger.info(f"Refund outcome {escrow.order_hash}: timelock not reached")
        else:
            logger.error(f"Refund outcome {escrow.order_hash}: failed: {result.error}")
        return result

    async def _load_candidates(self) -> list[SettlementRecord]:
        async with self._session_scope() as session:
            return await SettlementRepository(session).get_refund_candidates()

    async def _record(self, order_hash: str, **fields) -> None:
        async with self._session_scope() as session:
            await SettlementRepository(session).update(order_hash, **fields)

    async def monitor_and_refund(
        self, records: Optional[list[SettlementRecord]] = None
    ) -> list[RefundResult]:
        """Try to refund every funded, unclaimed escrow, soonest expiry first.

        Orders held by a running execution are skipped this round.
        """
        if records is None:
            records = await self._load_candidates()
        records = sorted(records, key=refund_order_key)

        results = []
        broadcast_pending = False
        for record in records:
            if self._stopping:
                break
            if is_order_locked(record.order_hash):
                logger.debug(f"Skipping refund check for {record.order_hash}: execution in progress")
                continue

            if broadcast_pending and self.pacing_delay > 0:
                await asyncio.sleep(self.pacing_delay)
                broadcast_pending = False

            try:
                async with OrderLock(record.order_hash, timeout=1.0, operation="refund"):
                    result = await self._process(record)
            except LockTimeoutError:
                continue
            except Exception as e:
                logger.error(f"Refund check for {record.order_hash} failed: {e}", exc_info=True)
                continue

            if result is None:
                continue
            results.append(result)
            if result.txid:
                broadcast_pending = True
            if self.on_outcome and result.outcome != RefundOutcome.NOT_YET_REFUNDABLE:
                try:
                    await self.on_outcome(result)
                except Exception as e:
                    logger.error(f"Refund outcome callback failed for {record.order_hash}: {e}")

        if results:
            refunded = sum(1 for r in results if r.outcome == RefundOutcome.REFUNDED)
            logger.info(f"Refund sweep: {refunded}/{len(results)} refunded")
        return results

    async def _process(self, record: SettlementRecord) -> Optional[RefundResult]:
        escrow = escrow_from_record(record)
        adapter = self.adapters.for_family(escrow.family)

        funded = await adapter.find_existing_funding(escrow)
        if funded is None:
            if await adapter.can_refund(escrow):
                logger.warning(
                    f"Destination escrow for {record.order_hash} was never funded; nothing to refund"
                )
                await self._record(
                    record.order_hash,
                    state=SettlementState.FAILED,
                    error="Destination escrow never funded",
                )
            return None
        escrow = funded

        if not await adapter.can_refund(escrow):
            return RefundResult(order_hash=record.order_hash, outcome=RefundOutcome.NOT_YET_REFUNDABLE)

        result = await self.refund_expired(escrow)
        if result.outcome == RefundOutcome.REFUNDED:
            await self._record(
                record.order_hash, state=SettlementState.REFUNDED, refund_tx=result.txid, error=None
            )
        elif result.outcome == RefundOutcome.ALREADY_CLAIMED:
            if result.revealed_secret is not None:
                # Secret is public now; the source claim must follow
                await self._record(
                    record.order_hash,
                    state=SettlementState.SECRET_REVEALED,
                    secret=result.revealed_secret.hex(),
                    destination_claim_tx=result.spending_txid,
                )
            else:
                await self._record(
                    record.order_hash,
                    state=SettlementState.FAILED,
                    error=f"Escrow spent by {result.spending_txid}",
                )
        elif result.outcome == RefundOutcome.FAILED:
            await self._record(record.order_hash, error=result.error)
        return result

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.monitor_and_refund()
            except Exception as e:
                logger.error(f"Refund sweep failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Refund sweep started (every {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Let a sweep in progress finish its current broadcasts, then stop."""
        self._running = False
        self._stopping = True
        if self._task:
            self._stop_event.set()
            await self._task
            self._task = None

    def get_status(self) -> dict:
        return {"running": self._running, "outcomes": dict(self._stats)}
