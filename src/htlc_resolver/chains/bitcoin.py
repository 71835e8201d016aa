"""Bitcoin-family destination adapter.

The destination escrow is a P2WSH output locked by the HTLC script. Both
branches use the resolver's key: the claim branch pays the maker's
address from the execution params and publishes the secret, the refund
branch returns the funds to the resolver after the timelock height.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode

from htlc_resolver.errors import (
    AlreadyClaimed,
    BroadcastRejected,
    InsufficientFunds,
    InvalidExecutionParams,
    InvariantViolation,
    ScriptError,
    TransientError,
)
from htlc_resolver.models import (
    ChainFamily,
    EscrowRecord,
    EscrowSide,
    RefundOutcome,
    RefundResult,
    SwapOrder,
)
from htlc_resolver.signing import SignerBackend, require_public_key, sign_digest
from htlc_resolver.timelock import TimelockSchedule
from htlc_resolver.utxo import script as htlc_script
from htlc_resolver.utxo.coin_selection import UTXOCoinSelector
from htlc_resolver.utxo.esplora import EsploraClient
from htlc_resolver.utxo.fees import FeeOracle
from htlc_resolver.utxo.transaction import (
    SEQUENCE_FINAL,
    SEQUENCE_LOCKTIME,
    SIGHASH_ALL,
    Transaction,
    TxIn,
    TxOut,
    claim_witness,
    extract_secret,
    p2wpkh_script_code,
    p2wpkh_witness,
    refund_witness,
)
from htlc_resolver.chains.base import DestinationAdapter

logger = logging.getLogger(__name__)

PARAM_TYPES = ["string", "uint256", "uint256"]
MIN_ADDRESS_LENGTH = 26
MAX_HTLC_TIMELOCK_BLOCKS = 1000
MAX_PARAM_FEE_RATE = 1000

# Single-input single-output HTLC spends
CLAIM_VBYTES = 180
REFUND_VBYTES = 170
# Stop claiming this many blocks before the refund branch opens
CLAIM_SAFETY_BLOCKS = 2


@dataclass
class BitcoinExecutionParams:
    """Maker-supplied hints for a Bitcoin-family destination."""

    btc_address: str
    htlc_timelock: int
    fee_rate: int

    def validate(self) -> list[str]:
        errors = []
        if not self.btc_address or len(self.btc_address) < MIN_ADDRESS_LENGTH:
            errors.append("Invalid Bitcoin address format")
        if not 1 <= self.htlc_timelock <= MAX_HTLC_TIMELOCK_BLOCKS:
            errors.append(f"HTLC timelock must be between 1-{MAX_HTLC_TIMELOCK_BLOCKS} blocks")
        if not 1 <= self.fee_rate <= MAX_PARAM_FEE_RATE:
            errors.append(f"Fee rate must be between 1-{MAX_PARAM_FEE_RATE} sat/vB")
        return errors


def encode_bitcoin_params(params: BitcoinExecutionParams) -> bytes:
    """ABI-encode (string btcAddress, uint256 htlcTimelock, uint256 feeRate)."""
    return abi_encode(PARAM_TYPES, [params.btc_address, params.htlc_timelock, params.fee_rate])


def decode_bitcoin_params(data: bytes) -> BitcoinExecutionParams:
    """Decode and validate ABI-encoded Bitcoin params.

    Raises:
        InvalidExecutionParams: On malformed bytes or out-of-range values
    """
    try:
        btc_address, htlc_timelock, fee_rate = abi_decode(PARAM_TYPES, data)
    except Exception as e:
        raise InvalidExecutionParams(f"Cannot decode Bitcoin execution params: {e}") from e

    params = BitcoinExecutionParams(
        btc_address=btc_address, htlc_timelock=int(htlc_timelock), fee_rate=int(fee_rate)
    )
    errors = params.validate()
    if errors:
        raise InvalidExecutionParams("; ".join(errors))
    return params


class BitcoinEscrowAdapter(DestinationAdapter):
    """HTLC escrows on a Bitcoin-family chain via Esplora."""

    family = ChainFamily.UTXO

    def __init__(
        self,
        esplora: EsploraClient,
        fee_oracle: FeeOracle,
        coin_selector: UTXOCoinSelector,
        signer: SignerBackend,
        key_id: str = "BTC",
        network: str = "testnet",
        min_confirmations: int = 1,
        confirmation_timeout: float = 3600.0,
        confirmation_poll: float = 10.0,
        dust_threshold: int = 546,
        refund_address: Optional[str] = None,
    ):
        self.esplora = esplora
        self.fee_oracle = fee_oracle
        self.coin_selector = coin_selector
        self.signer = signer
        self.key_id = key_id
        self.network = network
        self.min_confirmations = min_confirmations
        self.confirmation_timeout = confirmation_timeout
        self.confirmation_poll = confirmation_poll
        self.dust_threshold = dust_threshold
        self.refund_address = refund_address

    # ---- params ----

    def encode_execution_params(self, params: BitcoinExecutionParams) -> bytes:
        return encode_bitcoin_params(params)

    def decode_execution_params(self, data: bytes) -> BitcoinExecutionParams:
        return decode_bitcoin_params(data)

    # ---- wallet ----

    async def get_wallet(self, key_id: Optional[str] = None) -> tuple[bytes, str]:
        """Resolver public key and its P2WPKH address."""
        pubkey = await require_public_key(self.signer, key_id or self.key_id)
        return pubkey, htlc_script.pubkey_to_p2wpkh_address(pubkey, self.network)

    async def _signature(self, tx: Transaction, index: int, script_code: bytes, value: int,
                         key_id: str, order_hash: str) -> bytes:
        digest = tx.segwit_v0_sighash(index, script_code, value)
        der = await sign_digest(
            self.signer, key_id, digest, metadata={"order_hash": order_hash, "input": index}
        )
        return der + bytes([SIGHASH_ALL])

    async def _fee_rate(self, floor: float = 0) -> float:
        rate = await self.fee_oracle.estimate_fee_rate()
        return max(rate, float(floor))

    # ---- funding ----

    async def prepare_escrow(
        self, order: SwapOrder, hashlock: bytes, schedule: TimelockSchedule
    ) -> EscrowRecord:
        """Build the HTLC script and address without spending anything.

        Raises:
            InvalidExecutionParams: Bad maker params
            ScriptError: HTLC script cannot be built
        """
        params = self.decode_execution_params(order.execution_params)
        pubkey, wallet_address = await self.get_wallet()

        tip = await self.esplora.get_block_height()
        timelock_height = tip + params.htlc_timelock
        witness_script = htlc_script.encode(hashlock, pubkey, pubkey, timelock_height)
        htlc_address = htlc_script.derive_address(witness_script, self.network)

        record = EscrowRecord(
            order_hash=order.order_hash,
            side=EscrowSide.DESTINATION,
            family=self.family,
            hashlock=hashlock,
            maker=params.btc_address,
            taker=wallet_address,
            asset=order.destination_token,
            amount=order.destination_amount,
            safety_deposit=0,
            timelocks=schedule,
            address=htlc_address,
            witness_script=witness_script,
            timelock_height=timelock_height,
        )
        logger.info(
            f"Prepared HTLC {htlc_address} for {order.order_hash} (timelock height {timelock_height})"
        )
        return record

    async def fund(self, record: EscrowRecord, order: SwapOrder) -> EscrowRecord:
        """Pay the HTLC address from the resolver wallet.

        Raises:
            InsufficientFunds: Wallet cannot cover amount plus fee
            BroadcastRejected / TransientError: Broadcast failed
        """
        params = self.decode_execution_params(order.execution_params)
        pubkey, wallet_address = await self.get_wallet()
        witness_script = record.witness_script

        fee_rate = await self._fee_rate(floor=params.fee_rate)
        utxos = await self.esplora.get_utxos(wallet_address)
        selection = await self.coin_selector.select_and_reserve(
            utxos, record.amount, fee_rate, owner=order.order_hash
        )

        tx = Transaction(
            inputs=[TxIn(txid=u.txid, vout=u.vout) for u in selection.inputs],
            outputs=[TxOut(record.amount, htlc_script.p2wsh_script_pubkey(witness_script))],
        )
        if selection.change >= self.dust_threshold:
            tx.outputs.append(TxOut(selection.change, htlc_script.p2wpkh_script_pubkey(pubkey)))

        script_code = p2wpkh_script_code(pubkey)
        try:
            for index, utxo in enumerate(selection.inputs):
                signature = await self._signature(
                    tx, index, script_code, utxo.value, self.key_id, order.order_hash
                )
                tx.inputs[index].witness = p2wpkh_witness(signature, pubkey)
        except Exception:
            await self.coin_selector.release(selection.outpoints)
            raise

        txid = await self._broadcast_funding(tx, selection.outpoints)

        record.funding_txid = txid
        record.funding_vout = 0
        logger.info(
            f"Funded HTLC {record.address} for {order.order_hash}: {txid}:0 "
            f"({record.amount} sats, timelock height {record.timelock_height})"
        )
        return record

    async def _broadcast_funding(self, tx: Transaction, outpoints: list[str]) -> str:
        try:
            txid = await self.esplora.broadcast(tx.to_hex())
        except BroadcastRejected:
            await self.coin_selector.release(outpoints)
            raise
        except TransientError:
            # The node may have accepted it before the connection failed
            try:
                known = await self.esplora.get_transaction(tx.txid)
            except TransientError:
                logger.critical(
                    f"Broadcast of {tx.txid} in doubt; its inputs are withheld from selection"
                )
                await self.coin_selector.consume(outpoints)
                raise
            if known is None:
                await self.coin_selector.release(outpoints)
                raise
            txid = tx.txid

        await self.coin_selector.consume(outpoints)
        return txid

    async def find_existing_funding(self, record: EscrowRecord) -> Optional[EscrowRecord]:
        """Locate a funding output already paying the HTLC address."""
        if not record.address:
            return None
        if record.funding_txid:
            tx = await self.esplora.get_transaction(record.funding_txid)
            return record if tx is not None else None

        for utxo in await self.esplora.get_utxos(record.address):
            if utxo.value >= record.amount:
                record.funding_txid = utxo.txid
                record.funding_vout = utxo.vout
                logger.info(f"Found existing funding for {record.order_hash}: {utxo.outpoint}")
                return record
        return None

    async def wait_funded(self, record: EscrowRecord) -> bool:
        if not record.funding_txid:
            return False
        return await self.esplora.wait_for_confirmation(
            record.funding_txid,
            min_confirmations=self.min_confirmations,
            timeout=self.confirmation_timeout,
            poll_interval=self.confirmation_poll,
        )

    async def release(self, order_hash: str) -> None:
        await self.coin_selector.release_owner(order_hash)

    # ---- spending the HTLC ----

    def _parsed_script(self, record: EscrowRecord) -> htlc_script.HTLCScript:
        if not record.witness_script:
            raise ScriptError(f"No witness script recorded for {record.order_hash}")
        parsed = htlc_script.decode(record.witness_script)
        if parsed is None:
            raise ScriptError(f"Recorded script for {record.order_hash} is not an HTLC")
        return parsed

    async def _spend_htlc(
        self,
        record: EscrowRecord,
        destination: str,
        vbytes: int,
        locktime: int,
        sequence: int,
    ) -> Transaction:
        fee = math.ceil(vbytes * await self._fee_rate())
        value = record.amount - fee
        if value < self.dust_threshold:
            raise InsufficientFunds(available=record.amount, required=fee + self.dust_threshold)

        return Transaction(
            inputs=[TxIn(txid=record.funding_txid, vout=record.funding_vout or 0, sequence=sequence)],
            outputs=[TxOut(value, htlc_script.address_to_script_pubkey(destination, self.network))],
            locktime=locktime,
        )

    async def claim(self, record: EscrowRecord, secret: bytes, order: SwapOrder) -> str:
        """Spend the HTLC through the hashlock branch, paying the maker.

        Raises:
            InvariantViolation: If the refund branch is about to open
            AlreadyClaimed: If someone else spent the output
        """
        parsed = self._parsed_script(record)
        tip = await self.esplora.get_block_height()
        if tip + CLAIM_SAFETY_BLOCKS >= parsed.timelock_height:
            raise InvariantViolation(
                f"Refusing to reveal secret for {record.order_hash}: height {tip} too close "
                f"to timelock {parsed.timelock_height}"
            )

        outspend = await self.esplora.get_outspend(record.funding_txid, record.funding_vout or 0)
        if outspend.get("spent"):
            spender = outspend.get("txid")
            if await self.find_revealed_secret(record) is None:
                raise AlreadyClaimed(record.funding_txid, record.funding_vout or 0, spender)
            logger.info(f"HTLC for {record.order_hash} already claimed by {spender}")
            return spender

        tx = await self._spend_htlc(
            record, record.maker, CLAIM_VBYTES, locktime=0, sequence=SEQUENCE_FINAL
        )
        signature = await self._signature(
            tx, 0, record.witness_script, record.amount, self.key_id, record.order_hash
        )
        tx.inputs[0].witness = claim_witness(signature, secret, record.witness_script)

        txid = await self.esplora.broadcast(tx.to_hex())
        logger.info(f"Claimed HTLC for {record.order_hash} to {record.maker}: {txid}")
        return txid

    async def find_revealed_secret(self, record: EscrowRecord) -> Optional[bytes]:
        if not record.funding_txid:
            return None
        vout = record.funding_vout or 0
        outspend = await self.esplora.get_outspend(record.funding_txid, vout)
        if not outspend.get("spent") or not outspend.get("txid"):
            return None
        raw = await self.esplora.get_transaction_hex(outspend["txid"])
        if not raw:
            return None
        return extract_secret(Transaction.from_hex(raw), record.funding_txid, vout)

    async def can_refund(self, record: EscrowRecord) -> bool:
        """True once the tip height reaches the script's timelock."""
        if not record.witness_script:
            return False
        timelock = htlc_script.decode_timelock(record.witness_script)
        if timelock is None:
            logger.warning(f"Script for {record.order_hash} does not match the HTLC template")
            return False
        height = await self.esplora.get_block_height()
        eligible = height >= timelock
        logger.info(
            f"Refund check {record.order_hash}: height {height}, timelock {timelock}, "
            f"eligible={eligible}"
        )
        return eligible

    async def _spent_result(self, record: EscrowRecord, spender: Optional[str]) -> RefundResult:
        secret = None
        if spender:
            raw = await self.esplora.get_transaction_hex(spender)
            if raw:
                secret = extract_secret(
                    Transaction.from_hex(raw), record.funding_txid, record.funding_vout or 0
                )
        if secret is None:
            # Spent through the refund branch: our own earlier refund
            return RefundResult(
                order_hash=record.order_hash, outcome=RefundOutcome.REFUNDED, txid=spender
            )
        return RefundResult(
            order_hash=record.order_hash,
            outcome=RefundOutcome.ALREADY_CLAIMED,
            spending_txid=spender,
            revealed_secret=secret,
        )

    async def refund(
        self, record: EscrowRecord, refund_address: Optional[str] = None, key_id: Optional[str] = None
    ) -> RefundResult:
        """Spend the HTLC through the timelock branch back to the resolver."""
        if not record.funding_txid:
            return RefundResult(
                order_hash=record.order_hash,
                outcome=RefundOutcome.FAILED,
                error="No funding output recorded",
            )
        vout = record.funding_vout or 0

        outspend = await self.esplora.get_outspend(record.funding_txid, vout)
        if outspend.get("spent"):
            return await self._spent_result(record, outspend.get("txid"))

        if not await self.can_refund(record):
            return RefundResult(order_hash=record.order_hash, outcome=RefundOutcome.NOT_YET_REFUNDABLE)

        parsed = self._parsed_script(record)
        signing_key = key_id or self.key_id
        if refund_address is None:
            refund_address = self.refund_address or (await self.get_wallet(signing_key))[1]

        tx = await self._spend_htlc(
            record,
            refund_address,
            REFUND_VBYTES,
            locktime=parsed.timelock_height,
            sequence=SEQUENCE_LOCKTIME,
        )
        signature = await self._signature(
            tx, 0, record.witness_script, record.amount, signing_key, record.order_hash
        )
        tx.inputs[0].witness = refund_witness(signature, record.witness_script)

        try:
            txid = await self.esplora.broadcast(tx.to_hex())
        except BroadcastRejected as e:
            if e.inputs_spent:
                outspend = await self.esplora.get_outspend(record.funding_txid, vout)
                if outspend.get("spent"):
                    return await self._spent_result(record, outspend.get("txid"))
            return RefundResult(
                order_hash=record.order_hash, outcome=RefundOutcome.FAILED, error=str(e)
            )

        logger.info(f"Refunded HTLC for {record.order_hash} to {refund_address}: {txid}")
        return RefundResult(order_hash=record.order_hash, outcome=RefundOutcome.REFUNDED, txid=txid)

    async def close(self) -> None:
        await self.esplora.close()
        await self.fee_oracle.close()
