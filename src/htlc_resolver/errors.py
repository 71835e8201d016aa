"""Exception taxonomy shared by all resolver components.

- TransientError: infrastructure hiccups (RPC timeout, fee API down).
  Retried, or served from cache/default. Never fatal.
- ResolverValidationError: bad input surfaced to the immediate caller.
- RaceLostError: another actor got there first. Not a failure of ours.
- InvariantViolation: a money-safety invariant would be broken.
- BroadcastRejected, TransactionReverted: a chain refused our transaction.
- ExecutionInterrupted: shutdown reached a settlement between steps.
"""

from typing import Optional


class ResolverError(Exception):
    """Base class for resolver errors."""

    pass


class TransientError(ResolverError):
    """Raised when an external dependency is temporarily unavailable."""

    pass


class ResolverValidationError(ResolverError):
    """Raised when input data fails validation."""

    pass


class InvalidSchedule(ResolverValidationError):
    """Raised when a timelock schedule cannot be derived or is malformed."""

    pass


class ScriptError(ResolverValidationError):
    """Raised when an HTLC script cannot be built from the given parts."""

    pass


class InvalidExecutionParams(ResolverValidationError):
    """Raised when chain-specific execution params cannot be decoded."""

    pass


class InsufficientFunds(ResolverValidationError):
    """Raised when available outputs cannot cover target plus fee."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        self.shortfall = required - available
        super().__init__(
            f"Insufficient funds: have {available} sats, need {required} sats "
            f"(short {self.shortfall})"
        )


class RaceLostError(ResolverError):
    """Raised when another actor already acted on the same order or output."""

    pass


class AlreadyClaimed(RaceLostError):
    """Raised when an HTLC output was already spent by someone else."""

    def __init__(self, txid: str, vout: int, spending_txid: Optional[str] = None):
        self.txid = txid
        self.vout = vout
        self.spending_txid = spending_txid
        super().__init__(f"Output {txid}:{vout} already spent by {spending_txid or 'unknown tx'}")


class AlreadyMatched(RaceLostError):
    """Raised when an order was matched by a different resolver."""

    pass


class InvariantViolation(ResolverError):
    """Raised before any funds move when a safety invariant would break."""

    pass


class BroadcastRejected(ResolverError):
    """Raised when a node rejects a transaction outright."""

    def __init__(self, message: str, reason: str = ""):
        self.reason = reason
        super().__init__(message)

    @property
    def inputs_spent(self) -> bool:
        """True when rejection means an input was spent by someone else."""
        text = self.reason.lower()
        return "missingorspent" in text or "mempool-conflict" in text or "already spent" in text


class TransactionReverted(ResolverError):
    """Raised when a source chain transaction or call reverts."""

    pass


class ExecutionInterrupted(ResolverError):
    """Raised at a step boundary when the engine is shutting down."""

    pass
