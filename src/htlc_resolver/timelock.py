"""Hashlock and timelock primitives shared by both legs of a swap.

The hashlock is SHA-256 because the UTXO leg verifies it with OP_SHA256.

A swap carries seven stage deadlines (unix seconds):

    SrcWithdrawal < SrcPublicWithdrawal < SrcCancellation < SrcPublicCancellation
        < DstWithdrawal < DstPublicWithdrawal < DstCancellation == expiry

Everything in this module is pure: no I/O, no clocks read implicitly.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Sequence

from htlc_resolver.errors import InvalidSchedule

SECRET_SIZE = 32
STAGE_COUNT = 7
_STAGE_BITS = 32
_STAGE_MASK = (1 << _STAGE_BITS) - 1


class TimelockStage(IntEnum):
    """Index of each deadline inside a schedule."""

    SRC_WITHDRAWAL = 0
    SRC_PUBLIC_WITHDRAWAL = 1
    SRC_CANCELLATION = 2
    SRC_PUBLIC_CANCELLATION = 3
    DST_WITHDRAWAL = 4
    DST_PUBLIC_WITHDRAWAL = 5
    DST_CANCELLATION = 6


@dataclass(frozen=True)
class TimelockSchedule:
    """Seven strictly increasing stage deadlines."""

    stages: tuple[int, ...]

    def __getitem__(self, stage: TimelockStage) -> int:
        return self.stages[int(stage)]

    @property
    def expiry(self) -> int:
        return self.stages[TimelockStage.DST_CANCELLATION]

    def stage_at(self, timestamp: int) -> Optional[TimelockStage]:
        """Latest stage whose deadline has passed, or None before the first."""
        reached = None
        for stage in TimelockStage:
            if timestamp >= self.stages[stage]:
                reached = stage
        return reached

    def to_list(self) -> list[int]:
        return list(self.stages)


def generate_secret() -> bytes:
    """Generate a fresh single-use 32-byte secret."""
    return secrets.token_bytes(SECRET_SIZE)


def compute_hashlock(secret: bytes) -> bytes:
    """Compute the hashlock (SHA-256) for a secret.

    Raises:
        ValueError: If the secret is not exactly 32 bytes
    """
    if len(secret) != SECRET_SIZE:
        raise ValueError(f"Secret must be {SECRET_SIZE} bytes, got {len(secret)}")
    return hashlib.sha256(secret).digest()


def verify_preimage(secret: bytes, hashlock: bytes) -> bool:
    """Check that secret hashes to hashlock."""
    if len(secret) != SECRET_SIZE:
        return False
    return hmac.compare_digest(hashlib.sha256(secret).digest(), hashlock)


def derive_timelock_schedule(expiry: int, now: int, min_segment: int = 1) -> TimelockSchedule:
    """Split [now, expiry] into seven equal segments.

    The last stage is exactly ``expiry``; earlier stages sit on integer
    segment boundaries.

    Args:
        expiry: Order expiry (unix seconds)
        now: Current time (unix seconds)
        min_segment: Smallest acceptable gap between consecutive stages

    Returns:
        TimelockSchedule

    Raises:
        InvalidSchedule: If expiry is not in the future, or the interval
            is too short for the required stage spacing
    """
    if expiry <= now:
        raise InvalidSchedule(f"Expiry {expiry} is not after now {now}")

    segment = (expiry - now) // STAGE_COUNT
    if segment < max(1, min_segment):
        raise InvalidSchedule(
            f"Interval of {expiry - now}s too short for {STAGE_COUNT} stages "
            f"at least {max(1, min_segment)}s apart"
        )

    stages = [now + segment * (i + 1) for i in range(STAGE_COUNT - 1)]
    stages.append(expiry)
    return TimelockSchedule(tuple(stages))


def validate_schedule(stages: Sequence[int], now: int, min_segment: int = 1) -> bool:
    """True iff there are seven stages, strictly increasing, all in the future."""
    if len(stages) != STAGE_COUNT:
        return False
    if stages[0] <= now:
        return False
    gap = max(1, min_segment)
    for previous, current in zip(stages, stages[1:]):
        if current - previous < gap:
            return False
    return True


def pack_timelocks(schedule: TimelockSchedule) -> int:
    """Pack stages into one 256-bit word, 32 bits per stage, stage 0 lowest."""
    packed = 0
    for i, stage in enumerate(schedule.stages):
        if stage < 0 or stage > _STAGE_MASK:
            raise InvalidSchedule(f"Stage {i} value {stage} does not fit in 32 bits")
        packed |= stage << (i * _STAGE_BITS)
    return packed


def unpack_timelocks(packed: int) -> TimelockSchedule:
    """Inverse of pack_timelocks."""
    return TimelockSchedule(
        tuple((packed >> (i * _STAGE_BITS)) & _STAGE_MASK for i in range(STAGE_COUNT))
    )
