"""Resolver execution engine for HTLC cross-chain swaps."""

__version__ = "0.1.0"
