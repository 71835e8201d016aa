"""HTLC locking script codec for Bitcoin-family destinations.

Script template (BIP-199 style):

    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY <recipient_pubkey> OP_CHECKSIG
    OP_ELSE
        <timelock_height> OP_CHECKLOCKTIMEVERIFY OP_DROP <refund_pubkey> OP_CHECKSIG
    OP_ENDIF

Claim witness:  <signature> <secret> 0x01 <script>
Refund witness: <signature> <empty> <script>
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Optional, Union

from bip_utils import (
    Base58Decoder,
    Base58Encoder,
    Secp256k1PublicKey,
    SegwitBech32Decoder,
    SegwitBech32Encoder,
)
from bip_utils.utils.crypto import Hash160

from htlc_resolver.errors import ScriptError

# Opcodes
OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_16 = 0x60
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xA8
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKLOCKTIMEVERIFY = 0xB1

HASHLOCK_SIZE = 32
MIN_TIMELOCK_HEIGHT = 1
# nLockTime values at or above this are unix timestamps, not heights
LOCKTIME_THRESHOLD = 500_000_000

# Network parameters: bech32 hrp, P2PKH version, P2SH version
NETWORKS = {
    "mainnet": {"hrp": "bc", "p2pkh": b"\x00", "p2sh": b"\x05"},
    "testnet": {"hrp": "tb", "p2pkh": b"\x6f", "p2sh": b"\xc4"},
    "signet": {"hrp": "tb", "p2pkh": b"\x6f", "p2sh": b"\xc4"},
    "regtest": {"hrp": "bcrt", "p2pkh": b"\x6f", "p2sh": b"\xc4"},
}


@dataclass(frozen=True)
class HTLCScript:
    """Fields recovered from an HTLC locking script."""

    hashlock: bytes
    recipient_pubkey: bytes
    refund_pubkey: bytes
    timelock_height: int


def push_data(data: bytes) -> bytes:
    """Minimal push of arbitrary bytes."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    elif length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", length) + data
    else:
        return bytes([OP_PUSHDATA4]) + struct.pack("<I", length) + data


def encode_script_num(n: int) -> bytes:
    """Minimal little-endian sign-magnitude encoding (CScriptNum)."""
    if n == 0:
        return b""
    negative = n < 0
    value = abs(n)
    result = bytearray()
    while value:
        result.append(value & 0xFF)
        value >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def decode_script_num(data: bytes) -> int:
    """Inverse of encode_script_num."""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def push_int(n: int) -> bytes:
    """Push an integer using the smallest opcode form."""
    if n == 0:
        return bytes([OP_0])
    if n == -1:
        return bytes([OP_1NEGATE])
    if 1 <= n <= 16:
        return bytes([OP_1 + n - 1])
    return push_data(encode_script_num(n))


def parse_script(script: bytes) -> list[Union[int, bytes]]:
    """Split a script into opcodes (int) and pushed data (bytes).

    Raises:
        ScriptError: On a truncated push
    """
    items: list[Union[int, bytes]] = []
    i = 0
    while i < len(script):
        op = script[i]
        i += 1
        if 0 < op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            if i + 1 > len(script):
                raise ScriptError("Truncated OP_PUSHDATA1")
            size = script[i]
            i += 1
        elif op == OP_PUSHDATA2:
            if i + 2 > len(script):
                raise ScriptError("Truncated OP_PUSHDATA2")
            size = struct.unpack("<H", script[i : i + 2])[0]
            i += 2
        elif op == OP_PUSHDATA4:
            if i + 4 > len(script):
                raise ScriptError("Truncated OP_PUSHDATA4")
            size = struct.unpack("<I", script[i : i + 4])[0]
            i += 4
        else:
            items.append(op)
            continue

        if i + size > len(script):
            raise ScriptError(f"Push of {size} bytes runs past end of script")
        items.append(script[i : i + size])
        i += size
    return items


def validate_pubkey(pubkey: bytes, name: str = "public key") -> None:
    """Require a compressed, on-curve secp256k1 key."""
    if len(pubkey) != 33 or pubkey[0] not in (0x02, 0x03):
        raise ScriptError(f"{name} must be a 33-byte compressed key")
    if not Secp256k1PublicKey.IsValidBytes(pubkey):
        raise ScriptError(f"{name} is not a valid secp256k1 point")


def _validate_height(height: int) -> None:
    if not MIN_TIMELOCK_HEIGHT <= height < LOCKTIME_THRESHOLD:
        raise ScriptError(
            f"Timelock height {height} outside [{MIN_TIMELOCK_HEIGHT}, {LOCKTIME_THRESHOLD})"
        )


def encode(
    hashlock: bytes, recipient_pubkey: bytes, refund_pubkey: bytes, timelock_height: int
) -> bytes:
    """Build the two-branch HTLC witness script.

    Args:
        hashlock: SHA-256 digest of the secret (32 bytes)
        recipient_pubkey: Compressed key allowed to claim with the secret
        refund_pubkey: Compressed key allowed to refund after the timelock
        timelock_height: Absolute block height for OP_CHECKLOCKTIMEVERIFY

    Raises:
        ScriptError: On bad hashlock length, invalid keys or height range
    """
    if len(hashlock) != HASHLOCK_SIZE:
        raise ScriptError(f"Hashlock must be {HASHLOCK_SIZE} bytes, got {len(hashlock)}")
    validate_pubkey(recipient_pubkey, "recipient key")
    validate_pubkey(refund_pubkey, "refund key")
    _validate_height(timelock_height)

    return (
        bytes([OP_IF, OP_SHA256])
        + push_data(hashlock)
        + bytes([OP_EQUALVERIFY])
        + push_data(recipient_pubkey)
        + bytes([OP_CHECKSIG, OP_ELSE])
        + push_int(timelock_height)
        + bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP])
        + push_data(refund_pubkey)
        + bytes([OP_CHECKSIG, OP_ENDIF])
    )


def decode(script: bytes) -> Optional[HTLCScript]:
    """Recover all template fields, or None if the script is not an HTLC."""
    try:
        items = parse_script(script)
    except ScriptError:
        return None

    if len(items) != 13:
        return None

    (
        op_if, op_sha, hashlock, op_eqv, recipient, op_cs1,
        op_else, height, op_cltv, op_drop, refund, op_cs2, op_endif,
    ) = items
    expected_ops = (
        (op_if, OP_IF), (op_sha, OP_SHA256), (op_eqv, OP_EQUALVERIFY),
        (op_cs1, OP_CHECKSIG), (op_else, OP_ELSE), (op_cltv, OP_CHECKLOCKTIMEVERIFY),
        (op_drop, OP_DROP), (op_cs2, OP_CHECKSIG), (op_endif, OP_ENDIF),
    )
    for actual, expected in expected_ops:
        if actual != expected:
            return None
    if not isinstance(hashlock, bytes) or len(hashlock) != HASHLOCK_SIZE:
        return None
    if not isinstance(recipient, bytes) or not isinstance(refund, bytes):
        return None

    if isinstance(height, int):
        if not OP_1 <= height <= OP_16:
            return None
        timelock = height - OP_1 + 1
    else:
        timelock = decode_script_num(height)

    return HTLCScript(
        hashlock=hashlock,
        recipient_pubkey=recipient,
        refund_pubkey=refund,
        timelock_height=timelock,
    )


def decode_timelock(script: bytes) -> Optional[int]:
    """Timelock height of an HTLC script, or None on template mismatch."""
    parsed = decode(script)
    return parsed.timelock_height if parsed else None


def _network_params(network: str) -> dict:
    params = NETWORKS.get(network.lower())
    if params is None:
        raise ScriptError(f"Unknown network: {network}")
    return params


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    return Hash160.QuickDigest(data)


def p2wsh_script_pubkey(script: bytes) -> bytes:
    return bytes([OP_0]) + push_data(sha256(script))


def p2wpkh_script_pubkey(pubkey: bytes) -> bytes:
    return bytes([OP_0]) + push_data(hash160(pubkey))


def derive_address(script: bytes, network: str = "testnet", kind: str = "p2wsh") -> str:
    """Hash-of-script address for the given network.

    Args:
        script: Witness/redeem script
        network: mainnet, testnet, signet or regtest
        kind: "p2wsh" (bech32, default) or "p2sh" (base58check)
    """
    params = _network_params(network)
    if kind == "p2wsh":
        return SegwitBech32Encoder.Encode(params["hrp"], 0, sha256(script))
    if kind == "p2sh":
        return Base58Encoder.CheckEncode(params["p2sh"] + hash160(script))
    raise ScriptError(f"Unsupported address kind: {kind}")


def pubkey_to_p2wpkh_address(pubkey: bytes, network: str = "testnet") -> str:
    params = _network_params(network)
    return SegwitBech32Encoder.Encode(params["hrp"], 0, hash160(pubkey))


def address_to_script_pubkey(address: str, network: str = "testnet") -> bytes:
    """Output script paying to a bech32/bech32m or base58 address.

    Raises:
        ScriptError: If the address cannot be decoded for this network
    """
    params = _network_params(network)

    if address.lower().startswith(params["hrp"] + "1"):
        try:
            version, program = SegwitBech32Decoder.Decode(params["hrp"], address)
        except Exception as e:
            raise ScriptError(f"Invalid segwit address {address}: {e}") from e
        version_op = OP_0 if version == 0 else OP_1 + version - 1
        return bytes([version_op]) + push_data(program)

    try:
        decoded = Base58Decoder.CheckDecode(address)
    except Exception as e:
        raise ScriptError(f"Invalid address {address}: {e}") from e

    version, payload = decoded[:1], decoded[1:]
    if len(payload) != 20:
        raise ScriptError(f"Invalid address payload length for {address}")
    if version == params["p2pkh"]:
        return bytes([OP_DUP, OP_HASH160]) + push_data(payload) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    if version == params["p2sh"]:
        return bytes([OP_HASH160]) + push_data(payload) + bytes([OP_EQUAL])
    raise ScriptError(f"Address {address} does not belong to {network}")
