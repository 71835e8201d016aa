"""Signer interface used by the UTXO adapter.

Transactions and their BIP143 digests are built locally; a signer only
ever sees a 32-byte digest and a key identifier and answers with a DER
signature. Private key material stays inside the backend.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class SignerType(str, Enum):
    """Where the keys live."""
    LOCAL = "local"           # In this process (testnet, small hot wallet)
    EXTERNAL = "external"     # Key-management service reached over the network


@dataclass
class SigningRequest:
    """One digest to sign.

    Attributes:
        chain: Chain the signature is for (BTC, LTC, ...)
        key_id: Which key the backend should use
        message_hash: 32-byte digest as hex
        metadata: Context for the backend's audit log (order hash, input index)
    """
    chain: str
    key_id: str
    message_hash: str
    metadata: dict = field(default_factory=dict)


@dataclass
class SignatureResult:
    """Backend answer.

    ``signature`` is low-S DER as hex and ``public_key`` the compressed key
    that produced it. On failure only ``error`` is set.
    """
    success: bool
    signature: Optional[str] = None
    public_key: Optional[str] = None
    error: Optional[str] = None


class SignerBackend(ABC):
    """A source of secp256k1 signatures. Backends must never hand out private keys."""

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type

    @abstractmethod
    async def sign(self, request: SigningRequest) -> SignatureResult:
        pass

    @abstractmethod
    async def get_public_key(self, key_id: str) -> Optional[str]:
        """Compressed public key (hex) for a key identifier, or None."""
        pass

    async def health_check(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.signer_type.value}>"


class SigningError(Exception):
    """The backend could not produce a signature."""


class KeyNotFoundError(SigningError):
    """The backend has no key under the requested identifier."""


async def sign_digest(
    signer: SignerBackend,
    key_id: str,
    digest: bytes,
    chain: str = "BTC",
    metadata: Optional[dict] = None,
) -> bytes:
    """Sign a digest and return the raw DER signature.

    Raises:
        SigningError: If the backend reports failure
    """
    request = SigningRequest(chain=chain, key_id=key_id, message_hash=digest.hex(), metadata=metadata or {})
    result = await signer.sign(request)
    if result.success and result.signature:
        return bytes.fromhex(result.signature)

    logger.error(f"Signing with {key_id} failed: {result.error}")
    raise SigningError(result.error or f"Signer returned no signature for {key_id}")


async def require_public_key(signer: SignerBackend, key_id: str) -> bytes:
    """Public key bytes for key_id.

    Raises:
        KeyNotFoundError: If the signer does not know the key
    """
    pubkey_hex = await signer.get_public_key(key_id)
    if pubkey_hex is None:
        raise KeyNotFoundError(f"{signer!r} has no key {key_id}")
    return bytes.fromhex(pubkey_hex)
