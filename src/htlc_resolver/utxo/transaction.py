"""Segwit transaction serialization and BIP143 signature hashing."""

import hashlib
import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import Optional

from htlc_resolver.errors import ScriptError
from htlc_resolver.utxo.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    hash160,
    push_data,
)

SIGHASH_ALL = 0x01
SEQUENCE_FINAL = 0xFFFFFFFF
# Enables nLockTime without opting into RBF
SEQUENCE_LOCKTIME = 0xFFFFFFFE
TX_VERSION = 2


def double_sha256(data: bytes) -> bytes:
    """Double SHA256 hash."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def var_int(n: int) -> bytes:
    """Encode variable length integer."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def _read_var_int(stream: BytesIO) -> int:
    prefix = _read(stream, 1)[0]
    if prefix < 0xFD:
        return prefix
    if prefix == 0xFD:
        return struct.unpack("<H", _read(stream, 2))[0]
    if prefix == 0xFE:
        return struct.unpack("<I", _read(stream, 4))[0]
    return struct.unpack("<Q", _read(stream, 8))[0]


def _read(stream: BytesIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ScriptError("Unexpected end of transaction data")
    return data


def p2wpkh_script_code(pubkey: bytes) -> bytes:
    """BIP143 scriptCode for a P2WPKH input."""
    return (
        bytes([OP_DUP, OP_HASH160])
        + push_data(hash160(pubkey))
        + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


@dataclass
class TxIn:
    txid: str
    vout: int
    sequence: int = SEQUENCE_FINAL
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    def serialize_outpoint(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + var_int(len(self.script_pubkey)) + self.script_pubkey


@dataclass
class Transaction:
    """A Bitcoin transaction with optional segwit witnesses."""

    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    locktime: int = 0
    version: int = TX_VERSION

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        raw = struct.pack("<I", self.version)
        if segwit:
            raw += bytes([0x00, 0x01])

        raw += var_int(len(self.inputs))
        for txin in self.inputs:
            raw += txin.serialize_outpoint()
            raw += var_int(len(txin.script_sig)) + txin.script_sig
            raw += struct.pack("<I", txin.sequence)

        raw += var_int(len(self.outputs))
        for txout in self.outputs:
            raw += txout.serialize()

        if segwit:
            for txin in self.inputs:
                raw += var_int(len(txin.witness))
                for item in txin.witness:
                    raw += var_int(len(item)) + item

        raw += struct.pack("<I", self.locktime)
        return raw

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def vsize(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        weight = base * 3 + total
        return (weight + 3) // 4

    def segwit_v0_sighash(
        self, index: int, script_code: bytes, value: int, hashtype: int = SIGHASH_ALL
    ) -> bytes:
        """BIP143 signature hash for input ``index``.

        https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
        """
        prevouts = b"".join(txin.serialize_outpoint() for txin in self.inputs)
        sequences = b"".join(struct.pack("<I", txin.sequence) for txin in self.inputs)
        outputs = b"".join(txout.serialize() for txout in self.outputs)
        txin = self.inputs[index]

        preimage = struct.pack("<I", self.version)
        preimage += double_sha256(prevouts)
        preimage += double_sha256(sequences)
        preimage += txin.serialize_outpoint()
        preimage += var_int(len(script_code)) + script_code
        preimage += struct.pack("<Q", value)
        preimage += struct.pack("<I", txin.sequence)
        preimage += double_sha256(outputs)
        preimage += struct.pack("<I", self.locktime)
        preimage += struct.pack("<I", hashtype)
        return double_sha256(preimage)

    @classmethod
    def parse(cls, raw: bytes) -> "Transaction":
        """Parse a serialized transaction (legacy or segwit)."""
        stream = BytesIO(raw)
        version = struct.unpack("<I", _read(stream, 4))[0]

        segwit = False
        count = _read_var_int(stream)
        if count == 0:
            flag = _read(stream, 1)[0]
            if flag != 0x01:
                raise ScriptError(f"Unknown transaction flag {flag}")
            segwit = True
            count = _read_var_int(stream)

        inputs = []
        for _ in range(count):
            txid = _read(stream, 32)[::-1].hex()
            vout = struct.unpack("<I", _read(stream, 4))[0]
            script_sig = _read(stream, _read_var_int(stream))
            sequence = struct.unpack("<I", _read(stream, 4))[0]
            inputs.append(TxIn(txid=txid, vout=vout, sequence=sequence, script_sig=script_sig))

        outputs = []
        for _ in range(_read_var_int(stream)):
            value = struct.unpack("<Q", _read(stream, 8))[0]
            outputs.append(TxOut(value=value, script_pubkey=_read(stream, _read_var_int(stream))))

        if segwit:
            for txin in inputs:
                txin.witness = [
                    _read(stream, _read_var_int(stream)) for _ in range(_read_var_int(stream))
                ]

        locktime = struct.unpack("<I", _read(stream, 4))[0]
        return cls(inputs=inputs, outputs=outputs, locktime=locktime, version=version)

    @classmethod
    def from_hex(cls, raw_hex: str) -> "Transaction":
        return cls.parse(bytes.fromhex(raw_hex))


def claim_witness(signature: bytes, secret: bytes, witness_script: bytes) -> list[bytes]:
    """Witness selecting the OP_IF (hashlock) branch."""
    return [signature, secret, b"\x01", witness_script]


def refund_witness(signature: bytes, witness_script: bytes) -> list[bytes]:
    """Witness selecting the OP_ELSE (timelock) branch."""
    return [signature, b"", witness_script]


def p2wpkh_witness(signature: bytes, pubkey: bytes) -> list[bytes]:
    return [signature, pubkey]


def extract_secret(tx: Transaction, txid: str, vout: int, hashlock_size: int = 32) -> Optional[bytes]:
    """Secret revealed by the input spending txid:vout through the claim branch."""
    for txin in tx.inputs:
        if txin.txid != txid or txin.vout != vout:
            continue
        witness = txin.witness
        if len(witness) == 4 and witness[2] == b"\x01" and len(witness[1]) == hashlock_size:
            return witness[1]
    return None
