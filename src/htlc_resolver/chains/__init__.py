"""Destination chain escrow adapters."""

from htlc_resolver.chains.account import AccountChainClient, AccountEscrowAdapter, ContractEscrow
from htlc_resolver.chains.base import AdapterRegistry, DestinationAdapter, chain_family
from htlc_resolver.chains.bitcoin import (
    BitcoinEscrowAdapter,
    BitcoinExecutionParams,
    decode_bitcoin_params,
    encode_bitcoin_params,
)

__all__ = [
    "AccountChainClient",
    "AccountEscrowAdapter",
    "AdapterRegistry",
    "BitcoinEscrowAdapter",
    "BitcoinExecutionParams",
    "ContractEscrow",
    "DestinationAdapter",
    "chain_family",
    "decode_bitcoin_params",
    "encode_bitcoin_params",
]
