"""Tests for the Bitcoin HTLC destination adapter against an in-memory Esplora."""

import re
import time
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.util import sigdecode_der

from conftest import SECRET, make_order
from htlc_resolver.chains.bitcoin import (
    BitcoinEscrowAdapter,
    BitcoinExecutionParams,
    decode_bitcoin_params,
    encode_bitcoin_params,
)
from htlc_resolver.errors import (
    BroadcastRejected,
    InvalidExecutionParams,
    InvariantViolation,
    TransientError,
)
from htlc_resolver.models import UTXO, RefundOutcome
from htlc_resolver.signing import LocalSigner
from htlc_resolver.timelock import derive_timelock_schedule
from htlc_resolver.utxo import script as htlc_script
from htlc_resolver.utxo.coin_selection import UTXOCoinSelector
from htlc_resolver.utxo.esplora import EsploraClient
from htlc_resolver.utxo.fees import FeeOracle
from htlc_resolver.utxo.transaction import (
    SEQUENCE_LOCKTIME,
    Transaction,
    p2wpkh_script_code,
)

PRIVATE_KEY = "00" * 31 + "01"
PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
WALLET_ADDRESS = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
MAKER_ADDRESS = "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7"
START_HEIGHT = 800
HTLC_BLOCKS = 144
TIMELOCK = START_HEIGHT + HTLC_BLOCKS


class FakeEsplora:
    """Just enough of the Esplora REST API, backed by dicts."""

    def __init__(self, height: int = START_HEIGHT):
        self.height = height
        self.utxos: dict[str, list[dict]] = {}
        self.txs: dict[str, str] = {}
        self.confirmed: dict[str, int] = {}
        self.outspends: dict[tuple[str, int], str] = {}
        self.broadcasts: list[Transaction] = []
        self.reject: Optional[str] = None
        self.tx_outage = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")

        if self.tx_outage and path.startswith("/tx"):
            return httpx.Response(503, text="Service Unavailable")

        if request.method == "POST" and path == "/tx":
            if self.reject:
                return httpx.Response(400, text=self.reject)
            raw = request.content.decode()
            tx = Transaction.from_hex(raw)
            self.broadcasts.append(tx)
            self.txs[tx.txid] = raw
            for txin in tx.inputs:
                self.outspends[(txin.txid, txin.vout)] = tx.txid
                for utxos in self.utxos.values():
                    utxos[:] = [
                        u for u in utxos if (u["txid"], u["vout"]) != (txin.txid, txin.vout)
                    ]
            return httpx.Response(200, text=tx.txid)

        if path == "/blocks/tip/height":
            return httpx.Response(200, text=str(self.height))

        match = re.fullmatch(r"/address/([^/]+)/utxo", path)
        if match:
            return httpx.Response(200, json=self.utxos.get(match.group(1), []))

        match = re.fullmatch(r"/tx/(\w+)/outspend/(\d+)", path)
        if match:
            spender = self.outspends.get((match.group(1), int(match.group(2))))
            return httpx.Response(200, json={"spent": spender is not None, "txid": spender})

        match = re.fullmatch(r"/tx/(\w+)(/hex|/status)?", path)
        if match:
            txid, suffix = match.groups()
            if txid not in self.txs:
                return httpx.Response(404, text="Transaction not found")
            if suffix == "/hex":
                return httpx.Response(200, text=self.txs[txid])
            if suffix == "/status":
                height = self.confirmed.get(txid)
                return httpx.Response(
                    200, json={"confirmed": height is not None, "block_height": height}
                )
            return httpx.Response(200, json={"txid": txid})

        return httpx.Response(404)


@pytest.fixture
def esplora() -> FakeEsplora:
    fake = FakeEsplora()
    fake.utxos[WALLET_ADDRESS] = [
        {"txid": "aa" * 32, "vout": 0, "value": 50_000, "status": {"confirmed": True, "block_height": 700}},
        {"txid": "bb" * 32, "vout": 1, "value": 30_000, "status": {"confirmed": True, "block_height": 701}},
    ]
    return fake


@pytest_asyncio.fixture
async def btc(esplora: FakeEsplora):
    http = httpx.AsyncClient(transport=httpx.MockTransport(esplora.handler))
    adapter = BitcoinEscrowAdapter(
        EsploraClient("https://esplora.test/api", client=http),
        FeeOracle([], network="testnet"),
        UTXOCoinSelector(),
        LocalSigner(keys={"BTC": PRIVATE_KEY}),
        key_id="BTC",
        network="testnet",
        confirmation_timeout=0.05,
        confirmation_poll=0.01,
    )
    yield adapter
    await adapter.close()
    await http.aclose()


def _order(fee_rate: int = 2):
    params = encode_bitcoin_params(BitcoinExecutionParams(MAKER_ADDRESS, HTLC_BLOCKS, fee_rate))
    return make_order(execution_params=params, destination_amount=20_000)


async def _funded(btc: BitcoinEscrowAdapter, esplora: FakeEsplora):
    order = _order()
    schedule = derive_timelock_schedule(order.expiry, int(time.time()))
    record = await btc.prepare_escrow(order, order.hashlock, schedule)
    record = await btc.fund(record, order)
    esplora.confirmed[record.funding_txid] = esplora.height
    return order, record


def _verify(signature: bytes, digest: bytes) -> bool:
    key = VerifyingKey.from_string(PUBKEY, curve=SECP256k1)
    return key.verify_digest(signature[:-1], digest, sigdecode=sigdecode_der)


class TestExecutionParams:
    """Tests for maker-supplied Bitcoin params."""

    def test_encode_decode(self):
        params = BitcoinExecutionParams(MAKER_ADDRESS, 144, 10)
        assert decode_bitcoin_params(encode_bitcoin_params(params)) == params

    def test_garbage_rejected(self):
        with pytest.raises(InvalidExecutionParams):
            decode_bitcoin_params(b"\x01\x02")

    @pytest.mark.parametrize(
        "params",
        [
            BitcoinExecutionParams("tb1qshort", 144, 10),
            BitcoinExecutionParams(MAKER_ADDRESS, 0, 10),
            BitcoinExecutionParams(MAKER_ADDRESS, 1001, 10),
            BitcoinExecutionParams(MAKER_ADDRESS, 144, 0),
        ],
    )
    def test_out_of_range_rejected(self, params):
        with pytest.raises(InvalidExecutionParams):
            decode_bitcoin_params(encode_bitcoin_params(params))


class TestFunding:
    """Tests for preparing and funding the HTLC."""

    @pytest.mark.asyncio
    async def test_prepare_builds_htlc(self, btc):
        order = _order()
        schedule = derive_timelock_schedule(order.expiry, int(time.time()))
        record = await btc.prepare_escrow(order, order.hashlock, schedule)

        parsed = htlc_script.decode(record.witness_script)
        assert parsed.hashlock == order.hashlock
        assert parsed.recipient_pubkey == PUBKEY
        assert parsed.refund_pubkey == PUBKEY
        assert parsed.timelock_height == TIMELOCK
        assert record.timelock_height == TIMELOCK
        assert record.address == htlc_script.derive_address(record.witness_script, "testnet")
        assert record.maker == MAKER_ADDRESS
        assert record.funding_txid is None

    @pytest.mark.asyncio
    async def test_fund_pays_htlc_with_change(self, btc, esplora):
        order, record = await _funded(btc, esplora)

        assert len(esplora.broadcasts) == 1
        tx = esplora.broadcasts[0]
        assert record.funding_txid == tx.txid
        assert record.funding_vout == 0

        # Fee oracle has no sources: testnet default 5 sat/vB beats the maker's 2
        assert [(i.txid, i.vout) for i in tx.inputs] == [("aa" * 32, 0)]
        assert tx.outputs[0].value == 20_000
        assert tx.outputs[0].script_pubkey == htlc_script.p2wsh_script_pubkey(record.witness_script)
        assert tx.outputs[1].value == 50_000 - 20_000 - 650
        assert tx.outputs[1].script_pubkey == htlc_script.p2wpkh_script_pubkey(PUBKEY)

        signature, pubkey = tx.inputs[0].witness
        assert pubkey == PUBKEY
        assert _verify(signature, tx.segwit_v0_sighash(0, p2wpkh_script_code(PUBKEY), 50_000))

        spent = UTXO(txid="aa" * 32, vout=0, value=50_000)
        assert not btc.coin_selector.is_available(spent)
        assert btc.coin_selector.reserved == set()

    @pytest.mark.asyncio
    async def test_rejected_broadcast_releases_inputs(self, btc, esplora):
        order = _order()
        schedule = derive_timelock_schedule(order.expiry, int(time.time()))
        record = await btc.prepare_escrow(order, order.hashlock, schedule)
        esplora.reject = "min relay fee not met"

        with pytest.raises(BroadcastRejected):
            await btc.fund(record, order)
        assert btc.coin_selector.reserved == set()

    @pytest.mark.asyncio
    async def test_broadcast_in_doubt_withholds_inputs(self, btc, esplora):
        order = _order()
        schedule = derive_timelock_schedule(order.expiry, int(time.time()))
        record = await btc.prepare_escrow(order, order.hashlock, schedule)
        esplora.tx_outage = True

        with pytest.raises(TransientError):
            await btc.fund(record, order)

        assert btc.coin_selector.reserved == set()
        assert not btc.coin_selector.is_available(UTXO(txid="aa" * 32, vout=0, value=50_000))

        await btc.release(order.order_hash)
        assert not btc.coin_selector.is_available(UTXO(txid="aa" * 32, vout=0, value=50_000))

    @pytest.mark.asyncio
    async def test_find_existing_funding(self, btc, esplora):
        order = _order()
        schedule = derive_timelock_schedule(order.expiry, int(time.time()))
        record = await btc.prepare_escrow(order, order.hashlock, schedule)
        assert await btc.find_existing_funding(record) is None

        esplora.utxos[record.address] = [
            {"txid": "cc" * 32, "vout": 2, "value": 20_000, "status": {"confirmed": True}}
        ]
        found = await btc.find_existing_funding(record)
        assert found.funding_txid == "cc" * 32
        assert found.funding_vout == 2

    @pytest.mark.asyncio
    async def test_wait_funded(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        assert await btc.wait_funded(record)

        del esplora.confirmed[record.funding_txid]
        assert not await btc.wait_funded(record)


class TestClaim:
    """Tests for the hashlock branch."""

    @pytest.mark.asyncio
    async def test_claim_reveals_secret_to_maker(self, btc, esplora):
        order, record = await _funded(btc, esplora)

        txid = await btc.claim(record, SECRET, order)

        tx = esplora.broadcasts[-1]
        assert tx.txid == txid
        assert (tx.inputs[0].txid, tx.inputs[0].vout) == (record.funding_txid, 0)
        signature, secret, selector, script = tx.inputs[0].witness
        assert secret == SECRET
        assert selector == b"\x01"
        assert script == record.witness_script
        assert _verify(signature, tx.segwit_v0_sighash(0, record.witness_script, 20_000))
        assert tx.outputs[0].value == 20_000 - 180 * 5
        assert tx.outputs[0].script_pubkey == htlc_script.address_to_script_pubkey(
            MAKER_ADDRESS, "testnet"
        )

        assert await btc.find_revealed_secret(record) == SECRET

    @pytest.mark.asyncio
    async def test_refuses_claim_near_timelock(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        esplora.height = TIMELOCK - 2

        with pytest.raises(InvariantViolation):
            await btc.claim(record, SECRET, order)
        assert len(esplora.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_claim_still_allowed_just_before_guard(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        esplora.height = TIMELOCK - 3
        await btc.claim(record, SECRET, order)
        assert len(esplora.broadcasts) == 2


class TestRefund:
    """Tests for the timelock branch."""

    @pytest.mark.asyncio
    async def test_can_refund_only_from_timelock_height(self, btc, esplora):
        order, record = await _funded(btc, esplora)

        esplora.height = TIMELOCK - 1
        assert not await btc.can_refund(record)
        esplora.height = TIMELOCK
        assert await btc.can_refund(record)

    @pytest.mark.asyncio
    async def test_refund_before_timelock(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        result = await btc.refund(record)
        assert result.outcome == RefundOutcome.NOT_YET_REFUNDABLE
        assert len(esplora.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_refund_after_timelock(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        esplora.height = TIMELOCK

        result = await btc.refund(record)

        assert result.outcome == RefundOutcome.REFUNDED
        tx = esplora.broadcasts[-1]
        assert result.txid == tx.txid
        assert tx.locktime == TIMELOCK
        assert tx.inputs[0].sequence == SEQUENCE_LOCKTIME
        signature, selector, script = tx.inputs[0].witness
        assert selector == b""
        assert script == record.witness_script
        assert _verify(signature, tx.segwit_v0_sighash(0, record.witness_script, 20_000))
        assert tx.outputs[0].value == 20_000 - 170 * 5
        assert tx.outputs[0].script_pubkey == htlc_script.p2wpkh_script_pubkey(PUBKEY)

    @pytest.mark.asyncio
    async def test_refund_after_claim_recovers_secret(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        claim_txid = await btc.claim(record, SECRET, order)
        esplora.height = TIMELOCK + 10

        result = await btc.refund(record)

        assert result.outcome == RefundOutcome.ALREADY_CLAIMED
        assert result.spending_txid == claim_txid
        assert result.revealed_secret == SECRET

    @pytest.mark.asyncio
    async def test_second_refund_reports_own_spend(self, btc, esplora):
        order, record = await _funded(btc, esplora)
        esplora.height = TIMELOCK
        first = await btc.refund(record)

        second = await btc.refund(record)

        assert second.outcome == RefundOutcome.REFUNDED
        assert second.txid == first.txid
        assert len(esplora.broadcasts) == 2

    @pytest.mark.asyncio
    async def test_unconfirmed_funding_is_never_claimable(self, btc, esplora):
        """Funding that misses the window ends with a refund, never a late claim."""
        order, record = await _funded(btc, esplora)
        del esplora.confirmed[record.funding_txid]
        assert not await btc.wait_funded(record)

        esplora.height = TIMELOCK
        assert await btc.can_refund(record)
        with pytest.raises(InvariantViolation):
            await btc.claim(record, SECRET, order)

        result = await btc.refund(record)
        assert result.outcome == RefundOutcome.REFUNDED
