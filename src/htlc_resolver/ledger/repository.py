"""Repository for settlement ledger operations."""

from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from htlc_resolver.ledger.models import SettlementRecord
from htlc_resolver.models import (
    ChainFamily,
    EscrowRecord,
    EscrowSide,
    SettlementState,
    SwapOrder,
)
from htlc_resolver.timelock import TimelockSchedule

# Destination funded (or possibly funded) and the secret not yet used
REFUNDABLE_STATES = (
    SettlementState.DESTINATION_FUNDED,
    SettlementState.REFUND_PENDING,
)


def escrow_from_record(record: SettlementRecord) -> EscrowRecord:
    """Rebuild the destination escrow described by a ledger row."""
    return EscrowRecord(
        order_hash=record.order_hash,
        side=EscrowSide.DESTINATION,
        family=ChainFamily(record.destination_family),
        hashlock=bytes.fromhex(record.hashlock),
        maker=record.destination_recipient or record.maker,
        taker="",
        asset="",
        amount=int(record.destination_amount),
        safety_deposit=0,
        timelocks=TimelockSchedule(tuple(record.timelocks)),
        address=record.destination_address,
        witness_script=bytes.fromhex(record.witness_script) if record.witness_script else None,
        funding_txid=record.funding_txid,
        funding_vout=record.funding_vout,
        timelock_height=record.timelock_height,
    )


class SettlementRepository:
    """Reads and writes SettlementRecord rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_hash: str) -> Optional[SettlementRecord]:
        stmt = select(SettlementRecord).where(SettlementRecord.order_hash == order_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        order: SwapOrder,
        family: ChainFamily,
        schedule: TimelockSchedule,
    ) -> SettlementRecord:
        record = SettlementRecord(
            order_hash=order.order_hash,
            state=SettlementState.ANALYZED.value,
            maker=order.maker,
            destination_chain_id=order.destination_chain_id,
            destination_family=family.value,
            destination_amount=str(order.destination_amount),
            expiry=order.expiry,
            hashlock=order.hashlock.hex(),
            timelocks=schedule.to_list(),
            attempts=0,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_or_create(
        self,
        order: SwapOrder,
        family: ChainFamily,
        schedule: TimelockSchedule,
    ) -> SettlementRecord:
        record = await self.get(order.order_hash)
        if record is None:
            record = await self.create(order, family, schedule)
        return record

    async def update(self, order_hash: str, **fields) -> SettlementRecord:
        """Set columns on an existing record.

        Raises:
            KeyError: If no record exists for order_hash
        """
        record = await self.get(order_hash)
        if record is None:
            raise KeyError(f"No settlement record for {order_hash}")
        for name, value in fields.items():
            if isinstance(value, SettlementState):
                value = value.value
            setattr(record, name, value)
        await self.session.flush()
        return record

    async def set_state(
        self, order_hash: str, state: SettlementState, error: Optional[str] = None
    ) -> SettlementRecord:
        return await self.update(order_hash, state=state.value, error=error)

    async def record_escrow(self, escrow: EscrowRecord) -> SettlementRecord:
        """Store the destination escrow details."""
        return await self.update(
            escrow.order_hash,
            destination_address=escrow.address,
            destination_recipient=escrow.maker,
            witness_script=escrow.witness_script.hex() if escrow.witness_script else None,
            funding_txid=escrow.funding_txid,
            funding_vout=escrow.funding_vout,
            timelock_height=escrow.timelock_height,
        )

    async def list_by_state(self, states: Iterable[SettlementState]) -> list[SettlementRecord]:
        values = [s.value for s in states]
        stmt = (
            select(SettlementRecord)
            .where(SettlementRecord.state.in_(values))
            .order_by(SettlementRecord.expiry)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_refund_candidates(self) -> list[SettlementRecord]:
        """Funded, unclaimed destination escrows, soonest expiry first."""
        stmt = (
            select(SettlementRecord)
            .where(
                SettlementRecord.state.in_([s.value for s in REFUNDABLE_STATES]),
                SettlementRecord.destination_address.is_not(None),
            )
            .order_by(SettlementRecord.expiry, SettlementRecord.timelock_height)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_unfinished(self) -> list[SettlementRecord]:
        """Records that still need the executor or the refund sweep."""
        done = [
            SettlementState.SETTLED.value,
            SettlementState.REFUNDED.value,
            SettlementState.FAILED.value,
        ]
        stmt = (
            select(SettlementRecord)
            .where(SettlementRecord.state.not_in(done))
            .order_by(SettlementRecord.expiry)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_state(self) -> dict[str, int]:
        stmt = select(SettlementRecord.state, func.count()).group_by(SettlementRecord.state)
        result = await self.session.execute(stmt)
        return {state: count for state, count in result.all()}

    async def get_recent(self, limit: int = 50) -> list[SettlementRecord]:
        stmt = select(SettlementRecord).order_by(SettlementRecord.updated_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
