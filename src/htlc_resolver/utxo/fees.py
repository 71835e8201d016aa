"""Fee-rate estimation from an ordered list of independent sources.

The first source returning a rate inside the sanity bound wins and is
cached for a fixed TTL. When every source fails the network default is
returned; estimation never raises.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)

DEFAULT_FEE_RATES = {
    "mainnet": 15.0,
    "testnet": 5.0,
    "signet": 5.0,
    "regtest": 5.0,
}
MAX_SANE_FEE_RATE = 1000.0


class FeeSource(ABC):
    """One fee recommendation endpoint."""

    name: str = "fee_source"

    @abstractmethod
    async def fetch(self, client: httpx.AsyncClient) -> float:
        """Return a fee rate in sat/vB.

        Raises on any network or parsing failure.
        """
        pass


class MempoolSpaceSource(FeeSource):
    """mempool.space /v1/fees/recommended."""

    name = "mempool.space"

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    async def fetch(self, client: httpx.AsyncClient) -> float:
        response = await client.get(f"{self.base_url}/v1/fees/recommended")
        response.raise_for_status()
        data = response.json()
        return float(data.get("economyFee") or data["halfHourFee"])


class EsploraFeeSource(FeeSource):
    """Esplora /fee-estimates, keyed by confirmation target in blocks."""

    name = "esplora"
    TARGETS = ("6", "10", "25")

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    async def fetch(self, client: httpx.AsyncClient) -> float:
        response = await client.get(f"{self.base_url}/fee-estimates")
        response.raise_for_status()
        data = response.json()
        for target in self.TARGETS:
            if target in data:
                return float(data[target])
        raise ValueError(f"No estimate for targets {self.TARGETS}")


class BlockchairSource(FeeSource):
    """Blockchair chain stats."""

    name = "blockchair"

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    async def fetch(self, client: httpx.AsyncClient) -> float:
        response = await client.get(f"{self.base_url}/stats")
        response.raise_for_status()
        return float(response.json()["data"]["suggested_transaction_fee_per_byte_sat"])


def default_fee_sources(network: str, esplora_url: str) -> list[FeeSource]:
    """Standard source order for a network."""
    if network == "mainnet":
        mempool_url = "https://mempool.space/api"
        blockchair_url = "https://api.blockchair.com/bitcoin"
    else:
        mempool_url = f"https://mempool.space/{'signet' if network == 'signet' else 'testnet'}/api"
        blockchair_url = "https://api.blockchair.com/bitcoin/testnet"
    return [
        MempoolSpaceSource(mempool_url),
        EsploraFeeSource(esplora_url),
        BlockchairSource(blockchair_url),
    ]


class FeeOracle:
    """Cached multi-source fee estimator."""

    def __init__(
        self,
        sources: Sequence[FeeSource],
        network: str = "testnet",
        cache_ttl: float = 300.0,
        source_timeout: float = 5.0,
        max_rate: float = MAX_SANE_FEE_RATE,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sources = list(sources)
        self.network = network
        self.cache_ttl = cache_ttl
        self.source_timeout = source_timeout
        self.max_rate = max_rate
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cached_rate: Optional[float] = None
        self._cached_at: float = 0.0
        self._cached_source: Optional[str] = None

    @property
    def default_rate(self) -> float:
        return DEFAULT_FEE_RATES.get(self.network, DEFAULT_FEE_RATES["testnet"])

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.source_timeout)
        return self._client

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    def _is_sane(self, rate: float) -> bool:
        return 0 < rate < self.max_rate

    def invalidate(self) -> None:
        self._cached_rate = None

    async def estimate_fee_rate(self) -> float:
        """Current fee rate in sat/vB."""
        now = self._clock()
        if self._cached_rate is not None and now - self._cached_at < self.cache_ttl:
            return self._cached_rate

        client = await self._get_client()
        for source in self.sources:
            try:
                rate = await asyncio.wait_for(source.fetch(client), timeout=self.source_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Fee source {source.name} timed out")
                continue
            except Exception as e:
                logger.warning(f"Fee source {source.name} failed: {e}")
                continue

            if not self._is_sane(rate):
                logger.warning(f"Fee source {source.name} returned out-of-bounds rate {rate}")
                continue

            self._cached_rate = rate
            self._cached_at = now
            self._cached_source = source.name
            logger.debug(f"Fee rate {rate} sat/vB from {source.name}")
            return rate

        logger.warning(
            f"All fee sources failed, using {self.network} default {self.default_rate} sat/vB"
        )
        return self.default_rate

    def get_status(self) -> dict:
        return {
            "cached_rate": self._cached_rate,
            "source": self._cached_source,
            "age": self._clock() - self._cached_at if self._cached_rate is not None else None,
        }
