"""Coin selection and in-memory UTXO reservation.

Reservation keeps two concurrent executions from choosing the same
output before either has broadcast. It lives in process memory only;
after a restart the chain's own view of unspent outputs is authoritative.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from htlc_resolver.errors import InsufficientFunds
from htlc_resolver.models import UTXO

logger = logging.getLogger(__name__)

# Linear vbyte model: version/locktime/counts, per input, per output
TX_OVERHEAD_VBYTES = 10
INPUT_VBYTES = 58
OUTPUT_VBYTES = 31
OUTPUT_COUNT = 2  # payment + change


def estimate_vsize(input_count: int, output_count: int = OUTPUT_COUNT) -> int:
    return TX_OVERHEAD_VBYTES + INPUT_VBYTES * input_count + OUTPUT_VBYTES * output_count


def estimate_fee(input_count: int, fee_rate: float, output_count: int = OUTPUT_COUNT) -> int:
    """Fee in sats for a transaction of the modelled size."""
    return math.ceil(estimate_vsize(input_count, output_count) * fee_rate)


@dataclass
class CoinSelection:
    """Chosen inputs and the resulting fee and change (sats)."""

    inputs: list[UTXO]
    target: int
    fee: int
    fee_rate: float

    @property
    def total(self) -> int:
        return sum(u.value for u in self.inputs)

    @property
    def change(self) -> int:
        return self.total - self.target - self.fee

    @property
    def outpoints(self) -> list[str]:
        return [u.outpoint for u in self.inputs]


def select_inputs(
    available: Iterable[UTXO],
    target_amount: int,
    fee_rate: float,
    exclude: Optional[set[str]] = None,
) -> CoinSelection:
    """Largest-first greedy selection.

    Args:
        available: Candidate outputs
        target_amount: Amount to pay (sats)
        fee_rate: sat/vB
        exclude: Outpoints ("txid:vout") that must not be chosen

    Returns:
        CoinSelection whose total covers target plus fee

    Raises:
        InsufficientFunds: If every candidate together still falls short
    """
    if target_amount <= 0:
        raise ValueError(f"Target amount must be positive, got {target_amount}")

    exclude = exclude or set()
    candidates = sorted(
        (u for u in available if u.outpoint not in exclude),
        key=lambda u: u.value,
        reverse=True,
    )

    selected: list[UTXO] = []
    total = 0
    for utxo in candidates:
        selected.append(utxo)
        total += utxo.value
        fee = estimate_fee(len(selected), fee_rate)
        if total >= target_amount + fee:
            return CoinSelection(inputs=selected, target=target_amount, fee=fee, fee_rate=fee_rate)

    required = target_amount + estimate_fee(max(1, len(selected)), fee_rate)
    raise InsufficientFunds(available=total, required=required)


class UTXOCoinSelector:
    """Tracks reserved and consumed outputs across concurrent executions."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._reserved: dict[str, str] = {}  # outpoint -> owner
        self._consumed: set[str] = set()

    @property
    def reserved(self) -> set[str]:
        return set(self._reserved)

    def is_available(self, utxo: UTXO) -> bool:
        return utxo.outpoint not in self._reserved and utxo.outpoint not in self._consumed

    def select_inputs(
        self, available: Iterable[UTXO], target_amount: int, fee_rate: float
    ) -> CoinSelection:
        """Select without reserving. Reserved and consumed outputs are skipped."""
        return select_inputs(
            available, target_amount, fee_rate, exclude=set(self._reserved) | self._consumed
        )

    async def mark_reserved(self, outpoints: Iterable[str], owner: str) -> None:
        async with self._lock:
            for outpoint in outpoints:
                self._reserved[outpoint] = owner
            logger.debug(f"Reserved outputs for {owner}")

    async def release(self, outpoints: Iterable[str]) -> None:
        """Return outputs to the pool after a spend that never broadcast."""
        async with self._lock:
            for outpoint in outpoints:
                self._reserved.pop(outpoint, None)

    async def release_owner(self, owner: str) -> list[str]:
        """Release everything reserved by one execution."""
        async with self._lock:
            released = [op for op, o in self._reserved.items() if o == owner]
            for outpoint in released:
                del self._reserved[outpoint]
        if released:
            logger.info(f"Released {len(released)} reserved output(s) held by {owner}")
        return released

    async def consume(self, outpoints: Iterable[str]) -> None:
        """Mark outputs permanently spent."""
        async with self._lock:
            for outpoint in outpoints:
                self._reserved.pop(outpoint, None)
                self._consumed.add(outpoint)

    async def select_and_reserve(
        self,
        available: Iterable[UTXO],
        target_amount: int,
        fee_rate: float,
        owner: str,
    ) -> CoinSelection:
        """Select and reserve in one step, so no two callers get the same output."""
        async with self._lock:
            selection = select_inputs(
                available,
                target_amount,
                fee_rate,
                exclude=set(self._reserved) | self._consumed,
            )
            for outpoint in selection.outpoints:
                self._reserved[outpoint] = owner

        logger.info(
            f"Selected {len(selection.inputs)} input(s) for {owner}: "
            f"total={selection.total} fee={selection.fee} change={selection.change}"
        )
        return selection
