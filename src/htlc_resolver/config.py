"""Application configuration using pydantic-settings.

Covers the source EVM chain, the UTXO destination network, fee estimation,
scheduling limits and the operator surfaces.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug logging")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/resolver.db",
        description="Settlement ledger connection URL",
    )

    # ======================
    # Source chain (EVM)
    # ======================
    eth_rpc_url: str = Field(
        default="https://ethereum-sepolia-rpc.publicnode.com", description="Source chain RPC URL"
    )
    eth_chain_id: int = Field(default=11155111, description="Source chain id")
    factory_address: str = Field(default="", description="Escrow factory contract address")
    resolver_private_key: Optional[str] = Field(
        default=None, description="Resolver EVM key (hex) used for match/complete transactions"
    )
    source_confirmation_timeout: float = Field(
        default=180.0, description="Seconds to wait for a source chain receipt"
    )

    # ======================
    # UTXO destination
    # ======================
    btc_network: str = Field(default="testnet", description="mainnet, testnet or signet")
    esplora_url: Optional[str] = Field(
        default=None, description="Esplora API base URL (defaults to Blockstream for the network)"
    )
    btc_key_id: str = Field(default="BTC", description="Signing key identifier for the resolver BTC key")
    btc_min_confirmations: int = Field(default=1, description="Confirmations before funding counts")
    btc_confirmation_timeout: float = Field(
        default=3600.0, description="Seconds to wait for HTLC funding confirmation"
    )
    btc_confirmation_poll: float = Field(default=10.0, description="Confirmation poll interval (s)")
    btc_dust_threshold: int = Field(default=546, description="Change below this is added to the fee")

    # ======================
    # Fee estimation
    # ======================
    fee_cache_ttl: float = Field(default=300.0, description="Seconds a fee estimate stays cached")
    fee_source_timeout: float = Field(default=5.0, description="Per fee source request timeout (s)")
    fee_rate_max: float = Field(default=1000.0, description="Upper sanity bound in sat/vB")

    # ======================
    # Execution
    # ======================
    loop_interval: float = Field(default=10.0, description="Seconds between scheduler iterations")
    max_concurrent_executions: int = Field(default=3, description="Max settlements in flight")
    shutdown_grace_period: float = Field(
        default=120.0, description="Seconds to let in-flight settlements reach a safe point"
    )
    min_profit_wei: int = Field(default=10**15, description="Minimum absolute profit (0.001 ETH)")
    min_profit_margin: float = Field(default=5.0, description="Minimum profit margin in percent")
    capital_cost_rate: float = Field(
        default=0.05, description="Annualized opportunity cost applied to the safety deposit"
    )
    source_claim_retry_delay: float = Field(
        default=15.0, description="Base delay between source claim retries after secret reveal"
    )
    secret_wait_timeout: float = Field(
        default=900.0, description="Seconds to wait for the maker secret after destination funding"
    )
    source_claim_margin: float = Field(
        default=600.0,
        description="Seconds of source claim window that must remain before revealing the secret",
    )
    min_timelock_segment: int = Field(
        default=600, description="Minimum seconds between timelock stages (one BTC block)"
    )

    # ======================
    # Monitoring / refunds
    # ======================
    reconcile_interval: float = Field(default=30.0, description="Seconds between event reconciliation")
    refund_sweep_interval: float = Field(default=300.0, description="Seconds between refund sweeps")
    refund_pacing_delay: float = Field(default=2.0, description="Delay between refund broadcasts")
    btc_refund_address: Optional[str] = Field(default=None, description="Where refunds are paid")

    # ======================
    # Operator surfaces
    # ======================
    api_host: str = Field(default="127.0.0.1", description="Status API host")
    api_port: int = Field(default=8080, description="Status API port")
    telegram_bot_token: str = Field(default="", description="Operator alert bot token")
    telegram_operator_chat_id: Optional[int] = Field(default=None, description="Operator chat id")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def is_mainnet(self) -> bool:
        return self.btc_network.lower() == "mainnet"

    def get_esplora_url(self) -> str:
        """Esplora base URL for the configured network."""
        if self.esplora_url:
            return self.esplora_url.rstrip("/")
        if self.is_mainnet:
            return "https://blockstream.info/api"
        if self.btc_network.lower() == "signet":
            return "https://mempool.space/signet/api"
        return "https://blockstream.info/testnet/api"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "source": {
                "rpc": self.eth_rpc_url,
                "chain_id": self.eth_chain_id,
                "factory": self.factory_address or "(not set)",
                "resolver_key": "***" if self.resolver_private_key else "(not set)",
            },
            "bitcoin": {
                "network": self.btc_network,
                "esplora": self.get_esplora_url(),
                "min_confirmations": self.btc_min_confirmations,
                "refund_address": self.btc_refund_address or "(not set)",
            },
            "execution": {
                "loop_interval": self.loop_interval,
                "max_concurrent_executions": self.max_concurrent_executions,
                "min_profit_wei": self.min_profit_wei,
                "min_profit_margin": self.min_profit_margin,
            },
            "telegram": "***" if self.telegram_bot_token else "(not set)",
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
