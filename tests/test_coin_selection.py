"""Tests for coin selection and UTXO reservation."""

import asyncio

import pytest

from htlc_resolver.errors import InsufficientFunds
from htlc_resolver.models import UTXO
from htlc_resolver.utxo.coin_selection import UTXOCoinSelector, estimate_fee, select_inputs


def _utxos(*values: int) -> list[UTXO]:
    return [UTXO(txid=f"{i:02x}" * 32, vout=i, value=v, confirmed=True) for i, v in enumerate(values)]


class TestSelectInputs:
    """Tests for largest-first selection."""

    def test_fee_model(self):
        assert estimate_fee(1, 1) == 130
        assert estimate_fee(2, 10) == 1880
        assert estimate_fee(1, 1.5) == 195

    def test_two_inputs_with_change(self):
        """5000 + 3000 covers 6000 plus a 1880 sat fee at 10 sat/vB."""
        selection = select_inputs(_utxos(5000, 3000, 2000), 6000, 10)

        assert [u.value for u in selection.inputs] == [5000, 3000]
        assert selection.fee == 1880
        assert selection.change == 120

    def test_single_largest_input(self):
        selection = select_inputs(_utxos(2000, 50_000, 3000), 20_000, 5)
        assert [u.value for u in selection.inputs] == [50_000]
        assert selection.change == 50_000 - 20_000 - 650

    @pytest.mark.parametrize("target", [1, 500, 4000, 7000, 8000])
    def test_total_covers_target_and_fee(self, target):
        selection = select_inputs(_utxos(5000, 3000, 2000), target, 2)
        assert selection.total >= target + selection.fee
        assert selection.change >= 0

    def test_insufficient_funds(self):
        with pytest.raises(InsufficientFunds) as exc_info:
            select_inputs(_utxos(5000, 3000, 2000), 20_000, 10)

        error = exc_info.value
        assert error.available == 10_000
        assert error.required == 20_000 + estimate_fee(3, 10)
        assert error.shortfall == error.required - error.available

    def test_no_outputs(self):
        with pytest.raises(InsufficientFunds):
            select_inputs([], 1000, 1)

    def test_excluded_outputs_skipped(self):
        utxos = _utxos(5000, 3000)
        selection = select_inputs(utxos, 1000, 1, exclude={utxos[0].outpoint})
        assert selection.inputs == [utxos[1]]

    def test_rejects_non_positive_target(self):
        with pytest.raises(ValueError):
            select_inputs(_utxos(5000), 0, 1)


class TestCoinSelector:
    """Tests for reservations across concurrent executions."""

    @pytest.mark.asyncio
    async def test_concurrent_selections_are_disjoint(self):
        selector = UTXOCoinSelector()
        utxos = _utxos(5000, 3000, 2000)

        first, second = await asyncio.gather(
            selector.select_and_reserve(utxos, 4000, 1, owner="order-a"),
            selector.select_and_reserve(utxos, 4000, 1, owner="order-b"),
        )

        assert not set(first.outpoints) & set(second.outpoints)
        assert selector.reserved == set(first.outpoints) | set(second.outpoints)

    @pytest.mark.asyncio
    async def test_reserved_outputs_not_reselected(self):
        selector = UTXOCoinSelector()
        utxos = _utxos(5000, 3000)
        await selector.select_and_reserve(utxos, 4000, 1, owner="order-a")

        with pytest.raises(InsufficientFunds):
            await selector.select_and_reserve(utxos, 4000, 1, owner="order-b")

    @pytest.mark.asyncio
    async def test_release_owner_returns_outputs(self):
        selector = UTXOCoinSelector()
        utxos = _utxos(5000)
        selection = await selector.select_and_reserve(utxos, 1000, 1, owner="order-a")

        released = await selector.release_owner("order-a")

        assert released == selection.outpoints
        assert selector.reserved == set()
        assert selector.is_available(utxos[0])

    @pytest.mark.asyncio
    async def test_consumed_outputs_stay_unavailable(self):
        selector = UTXOCoinSelector()
        utxos = _utxos(5000, 3000)
        selection = await selector.select_and_reserve(utxos, 1000, 1, owner="order-a")

        await selector.consume(selection.outpoints)
        await selector.release_owner("order-a")

        assert not selector.is_available(utxos[0])
        assert selector.select_inputs(utxos, 1000, 1).inputs == [utxos[1]]

    @pytest.mark.asyncio
    async def test_release_specific_outpoints(self):
        selector = UTXOCoinSelector()
        utxos = _utxos(5000)
        await selector.mark_reserved([utxos[0].outpoint], owner="order-a")
        assert not selector.is_available(utxos[0])

        await selector.release([utxos[0].outpoint])
        assert selector.is_available(utxos[0])
