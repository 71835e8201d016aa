"""Settlement ledger persistence."""

from htlc_resolver.ledger.database import close_db, get_db, init_db, session_scope
from htlc_resolver.ledger.models import Base, SettlementRecord
from htlc_resolver.ledger.repository import SettlementRepository, escrow_from_record

__all__ = [
    "Base",
    "SettlementRecord",
    "SettlementRepository",
    "close_db",
    "escrow_from_record",
    "get_db",
    "init_db",
    "session_scope",
]
