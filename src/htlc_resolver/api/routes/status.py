"""Engine status, tracked orders and secret submission."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from htlc_resolver.errors import ResolverValidationError
from htlc_resolver.ledger.models import SettlementRecord
from htlc_resolver.ledger.repository import SettlementRepository

router = APIRouter()


class SecretSubmission(BaseModel):
    """Maker secret, hex encoded."""

    secret: str = Field(..., min_length=64, max_length=66)


class SettlementView(BaseModel):
    order_hash: str
    state: str
    destination_chain_id: int
    expiry: int
    destination_address: Optional[str] = None
    funding_txid: Optional[str] = None
    source_match_tx: Optional[str] = None
    source_claim_tx: Optional[str] = None
    destination_claim_tx: Optional[str] = None
    refund_tx: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_record(cls, record: SettlementRecord) -> "SettlementView":
        return cls(
            order_hash=record.order_hash,
            state=record.state,
            destination_chain_id=record.destination_chain_id,
            expiry=record.expiry,
            destination_address=record.destination_address,
            funding_txid=record.funding_txid,
            source_match_tx=record.source_match_tx,
            source_claim_tx=record.source_claim_tx,
            destination_claim_tx=record.destination_claim_tx,
            refund_tx=record.refund_tx,
            error=record.error,
        )


@router.get("/status")
async def engine_status(request: Request):
    engine = request.app.state.engine
    async with engine.session_scope() as session:
        counts = await SettlementRepository(session).count_by_state()
    return {**engine.get_status(), "settlements": counts}


@router.get("/orders")
async def list_orders(request: Request, limit: int = 50):
    """Queued and tracked orders plus recent settlements."""
    engine = request.app.state.engine
    async with engine.session_scope() as session:
        recent = await SettlementRepository(session).get_recent(limit)
    return {
        "queued": [
            {"order_hash": item.order_hash, "priority": item.priority}
            for item in engine.scheduler.queued()
        ],
        "in_flight": engine.scheduler.in_flight,
        "tracked": [
            {"order_hash": order.order_hash, "status": order.status.value, "expiry": order.expiry}
            for order in engine.registry.active()
        ],
        "settlements": [SettlementView.from_record(r).model_dump() for r in recent],
    }


@router.get("/orders/{order_hash}")
async def get_order(order_hash: str, request: Request):
    engine = request.app.state.engine
    async with engine.session_scope() as session:
        record = await SettlementRepository(session).get(order_hash)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No settlement for {order_hash}")
    return SettlementView.from_record(record).model_dump()


@router.post("/orders/{order_hash}/secret")
async def submit_secret(order_hash: str, body: SecretSubmission, request: Request):
    """Hand the maker's secret to the resolver once the destination escrow is funded."""
    engine = request.app.state.engine
    try:
        secret = bytes.fromhex(body.secret.removeprefix("0x"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Secret must be hex")

    try:
        queued = await engine.submit_secret(order_hash, secret)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No settlement for {order_hash}")
    except ResolverValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"order_hash": order_hash, "accepted": True, "queued": queued}
