"""Account-based destination adapter (NEAR-style and CosmWasm contracts).

Escrow contracts on these chains enforce the hashlock and the deadline
themselves; this adapter drives them through an injected client and
compares chain time against the escrow deadline. The deadline is the
source public withdrawal stage, so a secret revealed on the destination
always leaves a full stage to claim the source before it can be cancelled.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from htlc_resolver.errors import InvariantViolation
from htlc_resolver.models import (
    ChainFamily,
    EscrowRecord,
    EscrowSide,
    EscrowState,
    RefundOutcome,
    RefundResult,
    SwapOrder,
)
from htlc_resolver.chains.base import DestinationAdapter
from htlc_resolver.timelock import TimelockSchedule, TimelockStage

logger = logging.getLogger(__name__)

ESCROW_DEADLINE_STAGE = TimelockStage.SRC_PUBLIC_WITHDRAWAL


@dataclass
class ContractEscrow:
    """Escrow state as reported by the destination contract."""

    escrow_id: str
    state: EscrowState
    secret: Optional[bytes] = None


class AccountChainClient(ABC):
    """Contract calls on an account-based destination chain."""

    @abstractmethod
    async def find_escrow(self, order_hash: str) -> Optional[str]:
        """Escrow id already created for an order, if any."""
        pass

    @abstractmethod
    async def create_escrow(
        self,
        order_hash: str,
        hashlock: bytes,
        recipient: str,
        amount: int,
        deadline: int,
        params: bytes,
    ) -> tuple[str, str]:
        """Create and fund an escrow. Returns (escrow id, tx reference)."""
        pass

    @abstractmethod
    async def get_escrow(self, escrow_id: str) -> Optional[ContractEscrow]:
        pass

    @abstractmethod
    async def claim(self, escrow_id: str, secret: bytes) -> str:
        pass

    @abstractmethod
    async def refund(self, escrow_id: str) -> str:
        pass

    @abstractmethod
    async def get_chain_time(self) -> int:
        """Latest block timestamp (unix seconds)."""
        pass

    async def close(self) -> None:
        return None


class AccountEscrowAdapter(DestinationAdapter):
    """Destination escrows held by a contract on an account-based chain."""

    def __init__(self, client: AccountChainClient, family: ChainFamily = ChainFamily.ACCOUNT):
        self.client = client
        self.family = family

    def encode_execution_params(self, params: bytes) -> bytes:
        return bytes(params)

    def decode_execution_params(self, data: bytes) -> bytes:
        # Contract-specific encoding is owned by the destination contract
        return bytes(data)

    async def prepare_escrow(
        self, order: SwapOrder, hashlock: bytes, schedule: TimelockSchedule
    ) -> EscrowRecord:
        return EscrowRecord(
            order_hash=order.order_hash,
            side=EscrowSide.DESTINATION,
            family=self.family,
            hashlock=hashlock,
            maker=order.maker,
            taker=order.resolver or "",
            asset=order.destination_token,
            amount=order.destination_amount,
            safety_deposit=0,
            timelocks=schedule,
        )

    async def fund(self, record: EscrowRecord, order: SwapOrder) -> EscrowRecord:
        escrow_id, tx_ref = await self.client.create_escrow(
            order.order_hash,
            record.hashlock,
            order.maker,
            record.amount,
            record.timelocks[ESCROW_DEADLINE_STAGE],
            order.execution_params,
        )
        record.address = escrow_id
        record.funding_txid = tx_ref
        logger.info(f"Created {self.family.value} escrow {escrow_id} for {order.order_hash}: {tx_ref}")
        return record

    async def find_existing_funding(self, record: EscrowRecord) -> Optional[EscrowRecord]:
        escrow_id = record.address or await self.client.find_escrow(record.order_hash)
        if not escrow_id:
            return None
        escrow = await self.client.get_escrow(escrow_id)
        if escrow is None:
            return None
        record.address = escrow_id
        return record

    async def wait_funded(self, record: EscrowRecord) -> bool:
        # Contract calls are final once the funding transaction is included
        if not record.address:
            return False
        return await self.client.get_escrow(record.address) is not None

    async def claim(self, record: EscrowRecord, secret: bytes, order: SwapOrder) -> str:
        now = await self.client.get_chain_time()
        deadline = record.timelocks[ESCROW_DEADLINE_STAGE]
        if now >= deadline:
            raise InvariantViolation(
                f"Refusing to reveal secret for {record.order_hash}: chain time {now} "
                f"past escrow deadline {deadline}"
            )
        tx_ref = await self.client.claim(record.address, secret)
        logger.info(f"Claimed {self.family.value} escrow {record.address}: {tx_ref}")
        return tx_ref

    async def find_revealed_secret(self, record: EscrowRecord) -> Optional[bytes]:
        if not record.address:
            return None
        escrow = await self.client.get_escrow(record.address)
        if escrow and escrow.state == EscrowState.WITHDRAWN:
            return escrow.secret
        return None

    async def can_refund(self, record: EscrowRecord) -> bool:
        now = await self.client.get_chain_time()
        deadline = record.timelocks[ESCROW_DEADLINE_STAGE]
        eligible = now >= deadline
        logger.info(
            f"Refund check {record.order_hash}: chain time {now}, deadline {deadline}, "
            f"eligible={eligible}"
        )
        return eligible

    async def refund(
        self, record: EscrowRecord, refund_address: Optional[str] = None, key_id: Optional[str] = None
    ) -> RefundResult:
        if not record.address:
            return RefundResult(
                order_hash=record.order_hash, outcome=RefundOutcome.FAILED, error="No escrow recorded"
            )

        escrow = await self.client.get_escrow(record.address)
        if escrow is not None and escrow.state == EscrowState.WITHDRAWN:
            return RefundResult(
                order_hash=record.order_hash,
                outcome=RefundOutcome.ALREADY_CLAIMED,
                revealed_secret=escrow.secret,
            )
        if escrow is not None and escrow.state == EscrowState.CANCELLED:
            return RefundResult(order_hash=record.order_hash, outcome=RefundOutcome.REFUNDED)

        if not await self.can_refund(record):
            return RefundResult(order_hash=record.order_hash, outcome=RefundOutcome.NOT_YET_REFUNDABLE)

        tx_ref = await self.client.refund(record.address)
        logger.info(f"Refunded {self.family.value} escrow {record.address}: {tx_ref}")
        return RefundResult(order_hash=record.order_hash, outcome=RefundOutcome.REFUNDED, txid=tx_ref)

    async def close(self) -> None:
        await self.client.close()
