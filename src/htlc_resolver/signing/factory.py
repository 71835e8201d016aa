"""Process-wide signer selection.

SIGNER_BACKEND=local (default) loads keys from the environment. An
external backend has to be built by the caller and passed to set_signer.
"""

import logging
import os
from typing import Optional

from htlc_resolver.signing.base import SignerBackend, SignerType

logger = logging.getLogger(__name__)

_signer: Optional[SignerBackend] = None


def get_signer_type() -> SignerType:
    value = os.environ.get("SIGNER_BACKEND", SignerType.LOCAL.value).strip().lower()
    try:
        return SignerType(value)
    except ValueError:
        logger.warning(f"Unknown SIGNER_BACKEND {value!r}, using local keys")
        return SignerType.LOCAL


def get_signer() -> SignerBackend:
    """The registered signer, creating a LocalSigner on first use.

    Raises:
        RuntimeError: If an external backend is configured but none was registered
    """
    global _signer
    if _signer is None:
        if get_signer_type() == SignerType.EXTERNAL:
            raise RuntimeError(
                "SIGNER_BACKEND=external requires set_signer() with a key-management backend"
            )
        from htlc_resolver.signing.local import LocalSigner

        _signer = LocalSigner()
        logger.info(f"Using {_signer!r}")
    return _signer


def set_signer(signer: SignerBackend) -> None:
    global _signer
    _signer = signer


def reset_signer() -> None:
    global _signer
    _signer = None
