"""SQLAlchemy models for the settlement ledger."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from htlc_resolver.models import SettlementState


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SettlementRecord(Base):
    """Persisted progress of one order's settlement.

    Written after every step so a restarted resolver resumes from the
    recorded state instead of repeating a broadcast.
    """

    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_hash: Mapped[str] = mapped_column(String(66), unique=True, nullable=False, index=True)
    state: Mapped[str] = mapped_column(
        String(32), default=SettlementState.ANALYZED.value, nullable=False
    )

    # Order summary
    maker: Mapped[str] = mapped_column(String(66), nullable=False)
    destination_chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    destination_family: Mapped[str] = mapped_column(String(16), nullable=False)
    destination_amount: Mapped[str] = mapped_column(String(78), nullable=False)  # uint256 as text
    expiry: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hashlock: Mapped[str] = mapped_column(String(64), nullable=False)
    timelocks: Mapped[list] = mapped_column(JSON, nullable=False)
    secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Source side
    source_escrow: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    source_match_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    source_claim_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Destination side
    destination_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    destination_recipient: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    witness_script: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    funding_txid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    funding_vout: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timelock_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    destination_claim_tx: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    refund_tx: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_settlements_state_expiry", "state", "expiry"),)

    @property
    def settlement_state(self) -> SettlementState:
        return SettlementState(self.state)

    def __repr__(self) -> str:
        return f"<SettlementRecord {self.order_hash} {self.state}>"
