"""Signing backends.

- LocalSigner: development/hot wallet (private key in memory)
- Any SignerBackend registered with set_signer() for external key management
"""

from htlc_resolver.signing.base import (
    KeyNotFoundError,
    SignatureResult,
    SignerBackend,
    SigningError,
    SigningRequest,
    require_public_key,
    sign_digest,
)
from htlc_resolver.signing.factory import get_signer, reset_signer, set_signer
from htlc_resolver.signing.local import LocalSigner

__all__ = [
    "KeyNotFoundError",
    "LocalSigner",
    "SignatureResult",
    "SignerBackend",
    "SigningError",
    "SigningRequest",
    "get_signer",
    "require_public_key",
    "reset_signer",
    "set_signer",
    "sign_digest",
]
