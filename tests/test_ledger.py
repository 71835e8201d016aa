"""Tests for the settlement ledger."""

import time

import pytest

from conftest import make_order, seed_settlement
from htlc_resolver.ledger.database import normalize_url
from htlc_resolver.ledger.repository import SettlementRepository, escrow_from_record
from htlc_resolver.models import ChainFamily, EscrowRecord, EscrowSide, SettlementState
from htlc_resolver.timelock import derive_timelock_schedule


def _schedule(order):
    return derive_timelock_schedule(order.expiry, int(time.time()))


class TestSettlementRepository:
    """Tests for settlement records."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, db_session):
        repo = SettlementRepository(db_session)
        order = make_order()
        schedule = _schedule(order)

        record = await repo.create(order, ChainFamily.UTXO, schedule)
        await db_session.commit()

        loaded = await repo.get(order.order_hash)
        assert loaded.id == record.id
        assert loaded.settlement_state == SettlementState.ANALYZED
        assert loaded.hashlock == order.hashlock.hex()
        assert loaded.timelocks == schedule.to_list()
        assert loaded.destination_amount == "20000"
        assert loaded.attempts == 0

    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, db_session):
        repo = SettlementRepository(db_session)
        order = make_order()
        first = await repo.get_or_create(order, ChainFamily.UTXO, _schedule(order))
        second = await repo.get_or_create(order, ChainFamily.UTXO, _schedule(order))
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_update_converts_states(self, db_session):
        repo = SettlementRepository(db_session)
        order = make_order()
        await repo.create(order, ChainFamily.UTXO, _schedule(order))

        record = await repo.update(order.order_hash, state=SettlementState.SOURCE_LOCKED, attempts=2)
        assert record.state == "source_locked"
        assert record.attempts == 2

        record = await repo.set_state(order.order_hash, SettlementState.FAILED, error="boom")
        assert record.settlement_state == SettlementState.FAILED
        assert record.error == "boom"

    @pytest.mark.asyncio
    async def test_update_missing_record(self, db_session):
        with pytest.raises(KeyError):
            await SettlementRepository(db_session).update("0xmissing", state=SettlementState.FAILED)

    @pytest.mark.asyncio
    async def test_escrow_round_trip(self, db_session):
        repo = SettlementRepository(db_session)
        order = make_order()
        schedule = _schedule(order)
        await repo.create(order, ChainFamily.UTXO, schedule)
        escrow = EscrowRecord(
            order_hash=order.order_hash,
            side=EscrowSide.DESTINATION,
            family=ChainFamily.UTXO,
            hashlock=order.hashlock,
            maker="tb1qmaker",
            taker="tb1qresolver",
            asset="BTC",
            amount=order.destination_amount,
            safety_deposit=0,
            timelocks=schedule,
            address="tb1qhtlc",
            witness_script=b"\x63\xa8",
            funding_txid="ff" * 32,
            funding_vout=1,
            timelock_height=944,
        )

        record = await repo.record_escrow(escrow)
        rebuilt = escrow_from_record(record)

        assert rebuilt.address == "tb1qhtlc"
        assert rebuilt.maker == "tb1qmaker"
        assert rebuilt.witness_script == b"\x63\xa8"
        assert (rebuilt.funding_txid, rebuilt.funding_vout) == ("ff" * 32, 1)
        assert rebuilt.timelock_height == 944
        assert rebuilt.amount == order.destination_amount
        assert rebuilt.hashlock == order.hashlock
        assert rebuilt.timelocks == schedule

    @pytest.mark.asyncio
    async def test_refund_candidates(self, scope):
        now = int(time.time())
        late = make_order(order_hash="0x01", expiry=now + 9000)
        early = make_order(order_hash="0x02", expiry=now + 5000)
        pending = make_order(order_hash="0x03", expiry=now + 7000)
        unfunded = make_order(order_hash="0x04", expiry=now + 4800)
        settled = make_order(order_hash="0x05", expiry=now + 4900)

        await seed_settlement(scope, late)
        await seed_settlement(scope, early)
        await seed_settlement(scope, pending, state=SettlementState.REFUND_PENDING)
        await seed_settlement(scope, unfunded, state=SettlementState.REFUND_PENDING, funded=False)
        await seed_settlement(scope, settled, state=SettlementState.SETTLED)

        async with scope() as session:
            candidates = await SettlementRepository(session).get_refund_candidates()

        assert [r.order_hash for r in candidates] == ["0x02", "0x03", "0x01"]

    @pytest.mark.asyncio
    async def test_state_queries(self, scope):
        now = int(time.time())
        await seed_settlement(scope, make_order(order_hash="0x01", expiry=now + 9000))
        await seed_settlement(
            scope, make_order(order_hash="0x02", expiry=now + 8000), state=SettlementState.SETTLED
        )
        await seed_settlement(
            scope, make_order(order_hash="0x03", expiry=now + 7000), state=SettlementState.SOURCE_LOCKED
        )

        async with scope() as session:
            repo = SettlementRepository(session)
            unfinished = await repo.get_unfinished()
            locked = await repo.list_by_state([SettlementState.SOURCE_LOCKED])
            counts = await repo.count_by_state()
            recent = await repo.get_recent(limit=2)

        assert [r.order_hash for r in unfinished] == ["0x03", "0x01"]
        assert [r.order_hash for r in locked] == ["0x03"]
        assert counts == {"destination_funded": 1, "settled": 1, "source_locked": 1}
        assert len(recent) == 2

    @pytest.mark.asyncio
    async def test_failed_scope_rolls_back(self, scope):
        order = make_order()
        with pytest.raises(RuntimeError):
            async with scope() as session:
                await SettlementRepository(session).create(order, ChainFamily.UTXO, _schedule(order))
                raise RuntimeError("crash before commit")

        async with scope() as session:
            assert await SettlementRepository(session).get(order.order_hash) is None


class TestDatabaseUrl:
    def test_plain_sqlite_gets_async_driver(self):
        assert normalize_url("sqlite:///./data/x.db") == "sqlite+aiosqlite:///./data/x.db"
        assert normalize_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"
        assert normalize_url("postgresql+asyncpg://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
