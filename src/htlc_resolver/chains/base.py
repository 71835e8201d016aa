"""Destination escrow capabilities.

Every destination family offers the same two capabilities over its own
escrow mechanics: claim with the secret, and refund once the timelock
has passed. The executor and refund manager only talk to this interface.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from htlc_resolver.errors import ResolverValidationError
from htlc_resolver.models import ChainFamily, EscrowRecord, RefundResult, SwapOrder
from htlc_resolver.timelock import TimelockSchedule

logger = logging.getLogger(__name__)

NEAR_CHAIN_IDS = range(40001, 40003)
UTXO_CHAIN_IDS = range(40003, 40008)
COSMOS_CHAIN_IDS = (7001, 7002, *range(30001, 30009))


def chain_family(chain_id: int) -> ChainFamily:
    """Family of a destination chain id."""
    if chain_id in UTXO_CHAIN_IDS:
        return ChainFamily.UTXO
    if chain_id in NEAR_CHAIN_IDS:
        return ChainFamily.ACCOUNT
    if chain_id in COSMOS_CHAIN_IDS:
        return ChainFamily.COSMOS
    return ChainFamily.EVM


class DestinationAdapter(ABC):
    """Escrow lifecycle on one destination chain family."""

    family: ChainFamily = ChainFamily.EVM
    supports_claim_with_secret: bool = True
    supports_refund_after_timelock: bool = True

    @abstractmethod
    def encode_execution_params(self, params: Any) -> bytes:
        pass

    @abstractmethod
    def decode_execution_params(self, data: bytes) -> Any:
        """Decode the order's chain-specific params.

        Raises:
            InvalidExecutionParams: If the bytes cannot be decoded or validated
        """
        pass

    @abstractmethod
    async def prepare_escrow(
        self, order: SwapOrder, hashlock: bytes, schedule: TimelockSchedule
    ) -> EscrowRecord:
        """Describe the destination escrow (address, script, deadlines) without funding it."""
        pass

    @abstractmethod
    async def fund(self, record: EscrowRecord, order: SwapOrder) -> EscrowRecord:
        """Fund a prepared escrow. Returns the record with its funding reference."""
        pass

    @abstractmethod
    async def find_existing_funding(self, record: EscrowRecord) -> Optional[EscrowRecord]:
        """Record updated with on-chain funding already present, or None."""
        pass

    @abstractmethod
    async def wait_funded(self, record: EscrowRecord) -> bool:
        """Wait (bounded) until funding is final enough to reveal the secret."""
        pass

    @abstractmethod
    async def claim(self, record: EscrowRecord, secret: bytes, order: SwapOrder) -> str:
        """Claim the escrow with the secret, revealing it. Returns tx reference."""
        pass

    @abstractmethod
    async def find_revealed_secret(self, record: EscrowRecord) -> Optional[bytes]:
        """Secret exposed on-chain by a claim of this escrow, if any."""
        pass

    @abstractmethod
    async def can_refund(self, record: EscrowRecord) -> bool:
        pass

    @abstractmethod
    async def refund(
        self, record: EscrowRecord, refund_address: Optional[str] = None, key_id: Optional[str] = None
    ) -> RefundResult:
        pass

    async def release(self, order_hash: str) -> None:
        """Drop any local resources held for an order that never broadcast."""
        return None

    async def close(self) -> None:
        return None


class AdapterRegistry:
    """Destination adapters keyed by chain family."""

    def __init__(self):
        self._adapters: dict[ChainFamily, DestinationAdapter] = {}

    def register(self, adapter: DestinationAdapter) -> None:
        self._adapters[adapter.family] = adapter
        logger.info(f"Registered {adapter.family.value} destination adapter")

    def for_chain(self, chain_id: int) -> DestinationAdapter:
        """Adapter for a destination chain id.

        Raises:
            ResolverValidationError: If no adapter handles that family
        """
        family = chain_family(chain_id)
        adapter = self._adapters.get(family)
        if adapter is None:
            raise ResolverValidationError(
                f"No {family.value} adapter registered for chain {chain_id}"
            )
        return adapter

    def for_family(self, family: ChainFamily) -> DestinationAdapter:
        adapter = self._adapters.get(family)
        if adapter is None:
            raise ResolverValidationError(f"No {family.value} adapter registered")
        return adapter

    def supports(self, chain_id: int) -> bool:
        return chain_family(chain_id) in self._adapters

    @property
    def adapters(self) -> list[DestinationAdapter]:
        return list(self._adapters.values())

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
