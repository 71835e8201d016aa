"""Pytest configuration and fixtures."""

import asyncio
import dataclasses
import os
import time
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["DEBUG"] = "false"

from htlc_resolver.chains.account import AccountChainClient, ContractEscrow
from htlc_resolver.chains.base import AdapterRegistry, DestinationAdapter
from htlc_resolver.errors import TransientError
from htlc_resolver.ledger.database import SessionScope, session_scope
from htlc_resolver.ledger.models import Base, SettlementRecord
from htlc_resolver.ledger.repository import SettlementRepository
from htlc_resolver.models import (
    ChainFamily,
    EscrowRecord,
    EscrowSide,
    EscrowState,
    OrderStatus,
    RefundOutcome,
    RefundResult,
    SettlementState,
    SwapOrder,
)
from htlc_resolver.source.base import EscrowFactory, FactoryEvent
from htlc_resolver.timelock import TimelockSchedule, compute_hashlock, derive_timelock_schedule
from htlc_resolver.utils.locks import clear_order_locks

SECRET = bytes(range(32))
HASHLOCK = compute_hashlock(SECRET)
BTC_CHAIN_ID = 40003
RESOLVER = "0x00000000000000000000000000000000000000aa"
OTHER_RESOLVER = "0x00000000000000000000000000000000000000bb"


def make_order(
    order_hash: str = "0x" + "ab" * 32,
    expiry: Optional[int] = None,
    resolver_fee: int = 10**17,
    source_amount: int = 10**18,
    destination_chain_id: int = BTC_CHAIN_ID,
    destination_amount: int = 20_000,
    hashlock: bytes = HASHLOCK,
    execution_params: bytes = b"",
    **fields,
) -> SwapOrder:
    return SwapOrder(
        order_hash=order_hash,
        maker="0x00000000000000000000000000000000000000cc",
        source_token="0x0000000000000000000000000000000000000000",
        source_amount=source_amount,
        destination_chain_id=destination_chain_id,
        destination_token="0x00",
        destination_amount=destination_amount,
        resolver_fee=resolver_fee,
        expiry=expiry if expiry is not None else int(time.time()) + 86400,
        hashlock=hashlock,
        execution_params=execution_params,
        **fields,
    )


class FakeFactory(EscrowFactory):
    """In-memory escrow factory."""

    def __init__(self):
        self.orders: dict[str, SwapOrder] = {}
        self.events: list[FactoryEvent] = []
        self.source_escrows: dict[str, str] = {}
        self.block_number = 100
        self.gas_price = 10**9
        self.execution_cost = 10**15
        self.safety_deposit = 10**16
        self.supported_chains = [BTC_CHAIN_ID]
        self.match_calls: list[tuple[str, int]] = []
        self.complete_calls: list[tuple[str, bytes]] = []
        self.match_error: Optional[Exception] = None
        self.complete_failures = 0
        self.callback = None

    @property
    def resolver_address(self) -> Optional[str]:
        return RESOLVER

    def add_order(self, order: SwapOrder) -> SwapOrder:
        self.orders[order.order_hash] = order
        return order

    async def get_order(self, order_hash: str) -> Optional[SwapOrder]:
        order = self.orders.get(order_hash)
        return dataclasses.replace(order) if order else None

    async def get_supported_chains(self) -> list[int]:
        return list(self.supported_chains)

    async def calculate_min_safety_deposit(self, chain_id: int, amount: int) -> int:
        return self.safety_deposit

    async def estimate_execution_cost(self, chain_id: int, params: bytes, amount: int) -> int:
        return self.execution_cost

    async def get_source_escrow(self, order_hash: str) -> Optional[str]:
        return self.source_escrows.get(order_hash)

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_events(self, from_block: int, to_block: int) -> list[FactoryEvent]:
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    async def match_order(self, order_hash: str, safety_deposit: int) -> str:
        if self.match_error:
            raise self.match_error
        self.match_calls.append((order_hash, safety_deposit))
        self.source_escrows[order_hash] = "0xescrow" + order_hash[2:10]
        order = self.orders.get(order_hash)
        if order:
            order.status = OrderStatus.MATCHED
            order.resolver = RESOLVER
        return "0xmatch" + order_hash[2:10]

    async def complete_order(self, order_hash: str, secret: bytes) -> str:
        if self.complete_failures > 0:
            self.complete_failures -= 1
            raise TransientError("rpc unavailable")
        self.complete_calls.append((order_hash, secret))
        order = self.orders.get(order_hash)
        if order:
            order.status = OrderStatus.COMPLETED
        return "0xcomplete" + order_hash[2:10]

    async def cancel_order(self, order_hash: str) -> str:
        return "0xcancel" + order_hash[2:10]

    async def subscribe(self, callback) -> None:
        self.callback = callback

    async def unsubscribe(self) -> None:
        self.callback = None

    async def push(self, event: FactoryEvent) -> None:
        """Record an event and deliver it to the live subscriber."""
        self.events.append(event)
        if self.callback:
            await self.callback(event)


class FakeAdapter(DestinationAdapter):
    """Destination adapter that keeps escrow state in memory."""

    family = ChainFamily.UTXO

    def __init__(self):
        self.funded: dict[str, str] = {}
        self.revealed: dict[str, bytes] = {}
        self.claims: list[tuple[str, bytes]] = []
        self.refunds: list[str] = []
        self.released: list[str] = []
        self.fund_calls = 0
        self.prepare_error: Optional[Exception] = None
        self.fund_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.refund_result: Optional[RefundResult] = None
        self.wait_result = True
        self.confirmation: Optional[asyncio.Event] = None
        self.refundable = False

    def encode_execution_params(self, params) -> bytes:
        return bytes(params)

    def decode_execution_params(self, data: bytes):
        return bytes(data)

    async def prepare_escrow(self, order, hashlock, schedule) -> EscrowRecord:
        if self.prepare_error:
            raise self.prepare_error
        return EscrowRecord(
            order_hash=order.order_hash,
            side=EscrowSide.DESTINATION,
            family=self.family,
            hashlock=hashlock,
            maker="tb1qmaker",
            taker="tb1qresolver",
            asset=order.destination_token,
            amount=order.destination_amount,
            safety_deposit=0,
            timelocks=schedule,
            address="htlc-" + order.order_hash[2:12],
            witness_script=b"\x51",
            timelock_height=1000,
        )

    async def fund(self, record, order) -> EscrowRecord:
        self.fund_calls += 1
        if self.fund_error:
            raise self.fund_error
        record.funding_txid = "fund-" + order.order_hash[2:12]
        record.funding_vout = 0
        self.funded[record.order_hash] = record.funding_txid
        return record

    async def find_existing_funding(self, record) -> Optional[EscrowRecord]:
        txid = self.funded.get(record.order_hash)
        if txid is None:
            return None
        record.funding_txid = txid
        record.funding_vout = 0
        return record

    async def wait_funded(self, record) -> bool:
        if self.confirmation is not None:
            await self.confirmation.wait()
        return self.wait_result

    async def claim(self, record, secret, order) -> str:
        self.claims.append((record.order_hash, secret))
        self.revealed[record.order_hash] = secret
        return "claim-" + record.order_hash[2:12]

    async def find_revealed_secret(self, record) -> Optional[bytes]:
        return self.revealed.get(record.order_hash)

    async def can_refund(self, record) -> bool:
        return self.refundable

    async def refund(self, record, refund_address=None, key_id=None) -> RefundResult:
        self.refunds.append(record.order_hash)
        if self.refund_error:
            raise self.refund_error
        if self.refund_result:
            return self.refund_result
        return RefundResult(
            order_hash=record.order_hash,
            outcome=RefundOutcome.REFUNDED,
            txid="refund-" + record.order_hash[2:12],
        )

    async def release(self, order_hash: str) -> None:
        self.released.append(order_hash)


class FakeContractClient(AccountChainClient):
    """Escrow contract on an account-based chain, kept in memory."""

    def __init__(self):
        self.escrows: dict[str, ContractEscrow] = {}
        self.by_order: dict[str, str] = {}
        self.chain_time = int(time.time())
        self.created: list[tuple] = []
        self.refunded: list[str] = []
        self.create_error: Optional[Exception] = None
        self.lost_reply = False

    async def find_escrow(self, order_hash: str) -> Optional[str]:
        return self.by_order.get(order_hash)

    async def create_escrow(self, order_hash, hashlock, recipient, amount, deadline, params):
        if self.create_error:
            raise self.create_error
        escrow_id = f"escrow-{len(self.escrows)}"
        self.escrows[escrow_id] = ContractEscrow(escrow_id, EscrowState.INITIALIZED)
        self.by_order[order_hash] = escrow_id
        self.created.append((order_hash, hashlock, recipient, amount, deadline, params))
        if self.lost_reply:
            raise TransientError("rpc timeout waiting for create_escrow")
        return escrow_id, f"tx-create-{escrow_id}"

    async def get_escrow(self, escrow_id: str) -> Optional[ContractEscrow]:
        return self.escrows.get(escrow_id)

    async def claim(self, escrow_id: str, secret: bytes) -> str:
        escrow = self.escrows[escrow_id]
        escrow.state = EscrowState.WITHDRAWN
        escrow.secret = secret
        return f"tx-claim-{escrow_id}"

    async def refund(self, escrow_id: str) -> str:
        self.escrows[escrow_id].state = EscrowState.CANCELLED
        self.refunded.append(escrow_id)
        return f"tx-refund-{escrow_id}"

    async def get_chain_time(self) -> int:
        return self.chain_time


@pytest.fixture(autouse=True)
def reset_order_locks():
    """Locks are bound to an event loop; every test gets fresh ones."""
    clear_order_locks()
    yield
    clear_order_locks()


@pytest_asyncio.fixture
async def db_engine():
    """Create in-memory database engine shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def scope(db_engine) -> SessionScope:
    """Commit-on-success session scope over the test database."""
    factory = async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)
    return session_scope(factory)


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    factory = async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def adapters(adapter: FakeAdapter) -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(adapter)
    return registry


async def seed_settlement(
    scope: SessionScope,
    order: SwapOrder,
    state: SettlementState = SettlementState.DESTINATION_FUNDED,
    funded: bool = True,
    schedule: Optional[TimelockSchedule] = None,
    secret: Optional[bytes] = None,
    timelock_height: int = 1000,
) -> SettlementRecord:
    """Write a settlement row as a previous execution would have left it."""
    schedule = schedule or derive_timelock_schedule(order.expiry, int(time.time()))
    async with scope() as session:
        repo = SettlementRepository(session)
        await repo.create(order, ChainFamily.UTXO, schedule)
        fields = {"state": state}
        if funded:
            fields.update(
                destination_address="htlc-" + order.order_hash[2:12],
                destination_recipient="tb1qmaker",
                witness_script="51",
                funding_txid="fund-" + order.order_hash[2:12],
                funding_vout=0,
                timelock_height=timelock_height,
            )
        if secret is not None:
            fields["secret"] = secret.hex()
        return await repo.update(order.order_hash, **fields)


async def load_settlement(scope: SessionScope, order_hash: str) -> Optional[SettlementRecord]:
    async with scope() as session:
        return await SettlementRepository(session).get(order_hash)
