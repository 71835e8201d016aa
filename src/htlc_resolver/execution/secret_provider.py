"""Where the executor gets the maker's secret.

The maker keeps the preimage until the destination escrow is funded and
then hands it to the resolver (relayer, API call). A provider never
returns a value that does not hash to the order's hashlock.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from htlc_resolver.errors import ResolverValidationError
from htlc_resolver.timelock import SECRET_SIZE, verify_preimage

logger = logging.getLogger(__name__)


class SecretProvider(ABC):
    """Source of order secrets."""

    @abstractmethod
    async def get_secret(self, order_hash: str, hashlock: bytes) -> Optional[bytes]:
        """Secret for an order if it is available now."""
        pass

    async def wait_for_secret(
        self, order_hash: str, hashlock: bytes, timeout: float
    ) -> Optional[bytes]:
        """Poll get_secret until it returns or the timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            secret = await self.get_secret(order_hash, hashlock)
            if secret is not None or loop.time() >= deadline:
                return secret
            await asyncio.sleep(min(5.0, max(0.0, deadline - loop.time())))


class InMemorySecretProvider(SecretProvider):
    """Secrets pushed in by the operator API or a relayer callback."""

    def __init__(self):
        self._secrets: dict[str, bytes] = {}
        self._events: dict[str, asyncio.Event] = {}

    def _event(self, order_hash: str) -> asyncio.Event:
        if order_hash not in self._events:
            self._events[order_hash] = asyncio.Event()
        return self._events[order_hash]

    def register(self, order_hash: str, secret: bytes, hashlock: Optional[bytes] = None) -> None:
        """Store a secret, checking it against the hashlock when one is given.

        Raises:
            ResolverValidationError: Wrong size or not the hashlock's preimage
        """
        if len(secret) != SECRET_SIZE:
            raise ResolverValidationError(f"Secret must be {SECRET_SIZE} bytes, got {len(secret)}")
        if hashlock is not None and not verify_preimage(secret, hashlock):
            raise ResolverValidationError(f"Secret does not match hashlock of {order_hash}")

        self._secrets[order_hash] = secret
        self._event(order_hash).set()
        logger.info(f"Secret registered for {order_hash}")

    def forget(self, order_hash: str) -> None:
        self._secrets.pop(order_hash, None)
        self._events.pop(order_hash, None)

    async def get_secret(self, order_hash: str, hashlock: bytes) -> Optional[bytes]:
        secret = self._secrets.get(order_hash)
        if secret is None:
            return None
        if not verify_preimage(secret, hashlock):
            logger.warning(f"Stored secret for {order_hash} does not match its hashlock")
            return None
        return secret

    async def wait_for_secret(
        self, order_hash: str, hashlock: bytes, timeout: float
    ) -> Optional[bytes]:
        secret = await self.get_secret(order_hash, hashlock)
        if secret is not None:
            return secret
        try:
            await asyncio.wait_for(self._event(order_hash).wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info(f"No secret for {order_hash} within {timeout}s")
            return None
        return await self.get_secret(order_hash, hashlock)
