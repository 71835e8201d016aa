"""Core data types passed between resolver components."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from htlc_resolver.timelock import TimelockSchedule


class OrderStatus(str, Enum):
    """Lifecycle status of a swap order on the source chain."""

    CREATED = "created"
    MATCHED = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.EXPIRED)


class ChainFamily(str, Enum):
    """Destination chain families with distinct escrow mechanics."""

    EVM = "evm"
    UTXO = "utxo"
    ACCOUNT = "account"  # NEAR-style account-based contracts
    COSMOS = "cosmos"


class EscrowSide(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"


class EscrowState(str, Enum):
    """Escrow state. Every transition out of INITIALIZED is terminal."""

    INITIALIZED = "initialized"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class SettlementState(str, Enum):
    """Progress of one order through atomic settlement."""

    ANALYZED = "analyzed"
    SOURCE_LOCKED = "source_locked"
    DESTINATION_FUNDED = "destination_funded"
    SECRET_REVEALED = "secret_revealed"
    SOURCE_CLAIMED = "source_claimed"
    SETTLED = "settled"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_pre_reveal(self) -> bool:
        return self in (
            SettlementState.ANALYZED,
            SettlementState.SOURCE_LOCKED,
            SettlementState.DESTINATION_FUNDED,
        )

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementState.SETTLED, SettlementState.REFUNDED)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class SwapOrder:
    """An order observed on the source chain.

    Amounts are integers in the smallest unit of their chain (wei, sats).
    """

    order_hash: str
    maker: str
    source_token: str
    source_amount: int
    destination_chain_id: int
    destination_token: str
    destination_amount: int
    resolver_fee: int
    expiry: int
    hashlock: bytes
    execution_params: bytes = b""
    status: OrderStatus = OrderStatus.CREATED
    timelocks: Optional[TimelockSchedule] = None
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None
    resolver: Optional[str] = None
    safety_deposit: Optional[int] = None


@dataclass
class EscrowRecord:
    """One side of a swap's escrow pair."""

    order_hash: str
    side: EscrowSide
    family: ChainFamily
    hashlock: bytes
    maker: str
    taker: str
    asset: str
    amount: int
    safety_deposit: int
    timelocks: TimelockSchedule
    state: EscrowState = EscrowState.INITIALIZED
    address: Optional[str] = None
    # UTXO escrows only
    witness_script: Optional[bytes] = None
    funding_txid: Optional[str] = None
    funding_vout: Optional[int] = None
    timelock_height: Optional[int] = None

    def transition(self, new_state: EscrowState) -> None:
        """Move out of INITIALIZED; any further transition is rejected."""
        if self.state != EscrowState.INITIALIZED:
            raise ValueError(
                f"Escrow {self.order_hash}/{self.side.value} already {self.state.value}"
            )
        self.state = new_state


@dataclass(frozen=True)
class UTXO:
    """An unspent output."""

    txid: str
    vout: int
    value: int
    confirmed: bool = False
    block_height: Optional[int] = None

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def from_esplora(cls, data: dict) -> "UTXO":
        status = data.get("status") or {}
        return cls(
            txid=data["txid"],
            vout=int(data["vout"]),
            value=int(data["value"]),
            confirmed=bool(status.get("confirmed", False)),
            block_height=status.get("block_height"),
        )


@dataclass
class ProfitabilityAnalysis:
    """Cost/benefit verdict for one order. Amounts in wei."""

    order_hash: str
    is_profitable: bool = False
    estimated_profit: int = 0
    gas_estimate: int = 0
    safety_deposit: int = 0
    resolver_fee: int = 0
    total_costs: int = 0
    profit_margin: float = 0.0
    risk_level: RiskLevel = RiskLevel.HIGH
    priority: int = 0
    reasoning: list[str] = field(default_factory=list)


@dataclass
class ExecutableOrder:
    """A profitable order waiting in the execution queue."""

    order: SwapOrder
    analysis: ProfitabilityAnalysis
    priority: int

    @property
    def order_hash(self) -> str:
        return self.order.order_hash


@dataclass
class ExecutionResult:
    """Outcome of one execute_atomic_swap invocation."""

    order_hash: str
    success: bool = False
    state: SettlementState = SettlementState.ANALYZED
    actual_profit: int = 0
    execution_time: float = 0.0
    transactions: dict[str, list[str]] = field(
        default_factory=lambda: {"source": [], "destination": []}
    )
    error: Optional[str] = None
    race_lost: bool = False

    def add_tx(self, chain: str, txid: Optional[str]) -> None:
        if txid and txid not in self.transactions.setdefault(chain, []):
            self.transactions[chain].append(txid)


class RefundOutcome(str, Enum):
    REFUNDED = "refunded"
    ALREADY_CLAIMED = "already_claimed"
    NOT_YET_REFUNDABLE = "not_yet_refundable"
    FAILED = "failed"


@dataclass
class RefundResult:
    """Outcome of one refund attempt."""

    order_hash: str
    outcome: RefundOutcome
    txid: Optional[str] = None
    spending_txid: Optional[str] = None
    revealed_secret: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == RefundOutcome.REFUNDED
