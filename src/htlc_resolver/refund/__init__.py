"""Timelock refunds."""

from htlc_resolver.refund.manager import RefundManager

__all__ = ["RefundManager"]
