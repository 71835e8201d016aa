"""Source chain escrow factory: interface and web3 implementation."""

from htlc_resolver.source.base import (
    EscrowFactory,
    EventCallback,
    FactoryEvent,
    FactoryEventType,
)

from htlc_resolver.source.web3_factory import Web3EscrowFactory

__all__ = [
    "EscrowFactory",
    "EventCallback",
    "FactoryEvent",
    "FactoryEventType",
    "Web3EscrowFactory",
]
