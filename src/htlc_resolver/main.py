"""Main entry point - runs the resolver engine and its status API."""

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from htlc_resolver.api.app import create_app
from htlc_resolver.chains.base import AdapterRegistry
from htlc_resolver.chains.bitcoin import BitcoinEscrowAdapter
from htlc_resolver.config import Settings, get_settings
from htlc_resolver.engine import ResolverEngine
from htlc_resolver.ledger.database import close_db, init_db
from htlc_resolver.notifications.telegram import TelegramNotifier
from htlc_resolver.signing import get_signer
from htlc_resolver.source.web3_factory import Web3EscrowFactory
from htlc_resolver.utxo import EsploraClient, FeeOracle, UTXOCoinSelector, default_fee_sources

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> ResolverEngine:
    """Compose the engine from settings: web3 factory, Bitcoin adapter, Telegram alerts."""
    factory = Web3EscrowFactory(
        rpc_url=settings.eth_rpc_url,
        factory_address=settings.factory_address,
        chain_id=settings.eth_chain_id,
        private_key=settings.resolver_private_key,
        receipt_timeout=settings.source_confirmation_timeout,
    )

    esplora_url = settings.get_esplora_url()
    fee_oracle = FeeOracle(
        default_fee_sources(settings.btc_network, esplora_url),
        network=settings.btc_network,
        cache_ttl=settings.fee_cache_ttl,
        source_timeout=settings.fee_source_timeout,
        max_rate=settings.fee_rate_max,
    )
    adapters = AdapterRegistry()
    adapters.register(
        BitcoinEscrowAdapter(
            esplora=EsploraClient(esplora_url),
            fee_oracle=fee_oracle,
            coin_selector=UTXOCoinSelector(),
            signer=get_signer(),
            key_id=settings.btc_key_id,
            network=settings.btc_network,
            min_confirmations=settings.btc_min_confirmations,
            confirmation_timeout=settings.btc_confirmation_timeout,
            confirmation_poll=settings.btc_confirmation_poll,
            dust_threshold=settings.btc_dust_threshold,
            refund_address=settings.btc_refund_address,
        )
    )

    notifier = TelegramNotifier(
        token=settings.telegram_bot_token, chat_id=settings.telegram_operator_chat_id
    )
    return ResolverEngine(settings, factory, adapters, notifier=notifier)


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Per-request HTTP logs drown out settlement progress
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ResolverService:
    """Engine plus status API for the lifetime of the process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[ResolverEngine] = None
        self._server: Optional[uvicorn.Server] = None
        self._stop_requested = asyncio.Event()

    def request_shutdown(self) -> None:
        if not self._stop_requested.is_set():
            logger.info("Shutdown requested")
            self._stop_requested.set()

    async def run(self) -> None:
        logger.info(
            f"Starting HTLC resolver ({self.settings.environment}, BTC {self.settings.btc_network})"
        )
        await init_db()

        self.engine = build_engine(self.settings)
        self._server = uvicorn.Server(
            uvicorn.Config(
                create_app(self.engine),
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
        )

        try:
            await self.engine.start()
            api = asyncio.create_task(self._server.serve())
            logger.info(f"Status API on {self.settings.api_host}:{self.settings.api_port}")

            stop = asyncio.create_task(self._stop_requested.wait())
            done, _ = await asyncio.wait({api, stop}, return_when=asyncio.FIRST_COMPLETED)
            if api in done and api.exception():
                logger.error(f"Status API exited: {api.exception()}")

            self._server.should_exit = True
            stop.cancel()
            await asyncio.gather(api, stop, return_exceptions=True)
        finally:
            await self._shutdown()

    async def _shutdown(self) -> None:
        if self.engine is not None:
            await self.engine.stop()
            await self.engine.close()
        await close_db()
        logger.info("Resolver stopped")


def main():
    settings = get_settings()
    configure_logging(settings.debug)
    service = ResolverService(settings)

    async def run_with_signals():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, service.request_shutdown)
        await service.run()

    try:
        asyncio.run(run_with_signals())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
