"""UTXO-chain HTLC mechanics: scripts, transactions, coin selection and fees."""

from htlc_resolver.utxo.coin_selection import CoinSelection, UTXOCoinSelector, select_inputs
from htlc_resolver.utxo.esplora import EsploraClient
from htlc_resolver.utxo.fees import FeeOracle, FeeSource, default_fee_sources

__all__ = [
    "CoinSelection",
    "EsploraClient",
    "FeeOracle",
    "FeeSource",
    "UTXOCoinSelector",
    "default_fee_sources",
    "select_inputs",
]
