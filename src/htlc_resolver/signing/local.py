"""In-process secp256k1 signer.

For development, testnets and small hot wallets. Production funds belong
behind an external key-management backend registered with set_signer().
"""

import hashlib
import logging
import os
from typing import Optional

from ecdsa import SECP256k1, SigningKey
from ecdsa.util import sigencode_der_canonize

from htlc_resolver.signing.base import (
    KeyNotFoundError,
    SignatureResult,
    SignerBackend,
    SignerType,
    SigningRequest,
)

logger = logging.getLogger(__name__)

KEY_ENV_PREFIX = "RESOLVER_SIGNING_KEY_"
DEFAULT_KEY_ENV = "RESOLVER_SIGNING_KEY"
DEFAULT_KEY_ID = "DEFAULT"


class LocalSigner(SignerBackend):
    """Signs with keys held in memory.

    Without an explicit ``keys`` mapping, keys come from the environment:
    RESOLVER_SIGNING_KEY_<ID> per identifier and RESOLVER_SIGNING_KEY as
    the fallback for any identifier. Identifiers are case-insensitive.
    """

    def __init__(self, keys: Optional[dict[str, str]] = None):
        super().__init__(SignerType.LOCAL)
        self._keys: dict[str, SigningKey] = {}
        for key_id, private_key_hex in (keys if keys is not None else self._keys_from_env()).items():
            self.add_key(key_id, private_key_hex)
        logger.info(f"Local signer ready with {len(self._keys)} key(s)")

    @staticmethod
    def _keys_from_env() -> dict[str, str]:
        found = {
            name[len(KEY_ENV_PREFIX):]: value
            for name, value in os.environ.items()
            if name.startswith(KEY_ENV_PREFIX) and value
        }
        if os.environ.get(DEFAULT_KEY_ENV):
            found[DEFAULT_KEY_ID] = os.environ[DEFAULT_KEY_ENV]
        return found

    def add_key(self, key_id: str, private_key_hex: str):
        """Register a 32-byte hex private key under key_id."""
        secret = bytes.fromhex(private_key_hex.removeprefix("0x"))
        self._keys[key_id.upper()] = SigningKey.from_string(secret, curve=SECP256k1)

    def _key(self, key_id: str) -> SigningKey:
        key = self._keys.get(key_id.upper()) or self._keys.get(DEFAULT_KEY_ID)
        if key is None:
            raise KeyNotFoundError(f"No signing key found for {key_id}")
        return key

    @staticmethod
    def _compressed(key: SigningKey) -> str:
        return key.get_verifying_key().to_string("compressed").hex()

    async def sign(self, request: SigningRequest) -> SignatureResult:
        """Deterministic (RFC 6979) low-S DER signature over the digest."""
        try:
            key = self._key(request.key_id)
        except KeyNotFoundError as e:
            return SignatureResult(success=False, error=str(e))

        try:
            digest = bytes.fromhex(request.message_hash.removeprefix("0x"))
        except ValueError:
            return SignatureResult(success=False, error="Message hash must be hex")
        if len(digest) != 32:
            return SignatureResult(success=False, error="Message hash must be 32 bytes")

        try:
            der = key.sign_digest_deterministic(
                digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
            )
        except Exception as e:
            logger.error(f"Local signing with {request.key_id} failed: {e}")
            return SignatureResult(success=False, error=str(e))

        return SignatureResult(success=True, signature=der.hex(), public_key=self._compressed(key))

    async def get_public_key(self, key_id: str) -> Optional[str]:
        try:
            return self._compressed(self._key(key_id))
        except KeyNotFoundError:
            return None

    async def health_check(self) -> bool:
        return bool(self._keys)
