"""Esplora REST client (Blockstream / mempool.space compatible).

Docs: https://github.com/Blockstream/esplora/blob/master/API.md

Network failures surface as TransientError; callers decide whether to
retry, fall back or give up.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx

from htlc_resolver.errors import BroadcastRejected, TransientError
from htlc_resolver.models import UTXO

logger = logging.getLogger(__name__)


class EsploraClient:
    """Async client for an Esplora-style block explorer API."""

    MAINNET_URL = "https://blockstream.info/api"
    TESTNET_URL = "https://blockstream.info/testnet/api"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _get(self, path: str, allow_missing: bool = False) -> Optional[httpx.Response]:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}{path}")
        except httpx.HTTPError as e:
            raise TransientError(f"Esplora request {path} failed: {e}") from e

        if allow_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise TransientError(f"Esplora {path} returned HTTP {response.status_code}")
        return response

    async def get_utxos(self, address: str) -> list[UTXO]:
        """Unspent outputs for an address."""
        response = await self._get(f"/address/{address}/utxo")
        return [UTXO.from_esplora(item) for item in response.json()]

    async def get_transaction(self, txid: str) -> Optional[dict]:
        """Transaction JSON, or None if the node does not know it."""
        response = await self._get(f"/tx/{txid}", allow_missing=True)
        return response.json() if response is not None else None

    async def get_transaction_hex(self, txid: str) -> Optional[str]:
        response = await self._get(f"/tx/{txid}/hex", allow_missing=True)
        return response.text.strip() if response is not None else None

    async def get_tx_status(self, txid: str) -> Optional[dict]:
        response = await self._get(f"/tx/{txid}/status", allow_missing=True)
        return response.json() if response is not None else None

    async def get_outspend(self, txid: str, vout: int) -> dict:
        """Spending status of one output: {"spent": bool, "txid": ..., "vin": ...}."""
        response = await self._get(f"/tx/{txid}/outspend/{vout}")
        return response.json()

    async def get_block_height(self) -> int:
        """Get current block height."""
        response = await self._get("/blocks/tip/height")
        try:
            return int(response.text.strip())
        except ValueError as e:
            raise TransientError(f"Unparseable tip height: {response.text!r}") from e

    async def get_fee_estimates(self) -> dict[str, float]:
        """Confirmation target (blocks) to sat/vB."""
        response = await self._get("/fee-estimates")
        return response.json()

    async def get_confirmations(self, txid: str) -> int:
        """Confirmation count; 0 for mempool or unknown transactions."""
        status = await self.get_tx_status(txid)
        if not status or not status.get("confirmed"):
            return 0
        block_height = status.get("block_height")
        if block_height is None:
            return 0
        current_height = await self.get_block_height()
        return max(0, current_height - block_height + 1)

    async def broadcast(self, raw_hex: str) -> str:
        """Broadcast a raw transaction and return its txid.

        Raises:
            BroadcastRejected: The node refused the transaction
            TransientError: The node could not be reached
        """
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/tx",
                content=raw_hex,
                headers={"Content-Type": "text/plain"},
            )
        except httpx.HTTPError as e:
            raise TransientError(f"Broadcast failed: {e}") from e

        if response.status_code == 200:
            txid = response.text.strip()
            logger.info(f"Broadcast transaction {txid}")
            return txid
        if 400 <= response.status_code < 500:
            raise BroadcastRejected(
                f"Broadcast rejected (HTTP {response.status_code}): {response.text}",
                reason=response.text,
            )
        raise TransientError(f"Broadcast returned HTTP {response.status_code}")

    async def wait_for_confirmation(
        self,
        txid: str,
        min_confirmations: int = 1,
        timeout: float = 3600.0,
        poll_interval: float = 10.0,
    ) -> bool:
        """Poll until txid has min_confirmations or the timeout passes.

        Transient errors while polling are logged and retried.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                confirmations = await self.get_confirmations(txid)
                if confirmations >= min_confirmations:
                    logger.info(f"{txid} has {confirmations} confirmation(s)")
                    return True
            except TransientError as e:
                logger.warning(f"Confirmation check for {txid} failed: {e}")

            if time.monotonic() + poll_interval > deadline:
                logger.warning(f"Timed out waiting for {min_confirmations} confirmation(s) of {txid}")
                return False
            await asyncio.sleep(poll_interval)
