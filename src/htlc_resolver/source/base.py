"""Source chain escrow factory interface.

The factory contract enforces the hashlock/timelock rules on the source
chain. The resolver only observes its events, queries it and submits
match/complete/cancel transactions.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from htlc_resolver.models import SwapOrder

logger = logging.getLogger(__name__)


class FactoryEventType(str, Enum):
    ORDER_CREATED = "OrderCreated"
    ORDER_MATCHED = "OrderMatched"
    ORDER_COMPLETED = "OrderCompleted"
    ORDER_CANCELLED = "OrderCancelled"


@dataclass
class FactoryEvent:
    """One factory event with its block reference.

    ``data`` holds the event-specific fields: maker/source_amount/
    destination_chain_id for creation, resolver/safety_deposit for a
    match, secret for completion, reason for cancellation.
    """

    event_type: FactoryEventType
    order_hash: str
    block_number: int
    transaction_hash: Optional[str] = None
    log_index: int = 0
    data: dict = field(default_factory=dict)


EventCallback = Callable[[FactoryEvent], Awaitable[None]]


class EscrowFactory(ABC):
    """Abstract base class for the source chain escrow factory."""

    @property
    def resolver_address(self) -> Optional[str]:
        """Address this resolver matches orders from, if known."""
        return None

    # ---- queries ----

    @abstractmethod
    async def get_order(self, order_hash: str) -> Optional[SwapOrder]:
        """Full order by hash, or None if the factory does not know it."""
        pass

    @abstractmethod
    async def get_supported_chains(self) -> list[int]:
        pass

    @abstractmethod
    async def calculate_min_safety_deposit(self, chain_id: int, amount: int) -> int:
        """Minimum safety deposit (wei) for matching an order."""
        pass

    @abstractmethod
    async def estimate_execution_cost(self, chain_id: int, params: bytes, amount: int) -> int:
        """Destination execution cost for an order, in source wei."""
        pass

    @abstractmethod
    async def get_source_escrow(self, order_hash: str) -> Optional[str]:
        """Source escrow address if the order was already matched."""
        pass

    @abstractmethod
    async def get_block_number(self) -> int:
        pass

    @abstractmethod
    async def get_gas_price(self) -> int:
        pass

    @abstractmethod
    async def get_events(self, from_block: int, to_block: int) -> list[FactoryEvent]:
        """All factory events in the inclusive block range, in chain order."""
        pass

    # ---- transactions ----

    @abstractmethod
    async def match_order(self, order_hash: str, safety_deposit: int) -> str:
        """Match an order, posting the safety deposit. Returns tx hash."""
        pass

    @abstractmethod
    async def complete_order(self, order_hash: str, secret: bytes) -> str:
        """Claim the source escrow with the secret. Returns tx hash."""
        pass

    @abstractmethod
    async def cancel_order(self, order_hash: str) -> str:
        pass

    # ---- live feed ----

    @abstractmethod
    async def subscribe(self, callback: EventCallback) -> None:
        """Deliver live events to callback until unsubscribe()."""
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivering events. Safe to call when not subscribed."""
        pass

    async def close(self) -> None:
        await self.unsubscribe()
