"""
Migration SDK Configuration - Network, RPC and tuning settings.

Defaults are safe for public RPC endpoints. Endpoints and the program
override are loaded from environment variables (a `.env` file is honoured
through python-dotenv).
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv

from migration_sdk.cache import CacheTTL
from migration_sdk.models import Network


logger = logging.getLogger(__name__)


DEFAULT_RPC_URLS = {
    Network.DEVNET: "https://api.devnet.solana.com",
    Network.MAINNET: "https://api.mainnet-beta.solana.com",
}

_NETWORK_ALIASES = {
    "devnet": Network.DEVNET,
    "mainnet": Network.MAINNET,
    "mainnet-beta": Network.MAINNET,
}


def resolve_network(value: Optional[Any] = None) -> Network:
    """
    Map a network name to a Network.

    `mainnet` and `mainnet-beta` both resolve to MAINNET. With no value,
    SOLANA_NETWORK then NEXT_PUBLIC_SOLANA_NETWORK are consulted, falling
    back to devnet.

    Raises:
        ValueError: For unrecognized names
    """
    if isinstance(value, Network):
        return value
    if value is None:
        value = (
            os.environ.get("SOLANA_NETWORK")
            or os.environ.get("NEXT_PUBLIC_SOLANA_NETWORK")
            or Network.DEVNET.value
        )
    network = _NETWORK_ALIASES.get(str(value).strip().lower())
    if network is None:
        raise ValueError(
            f"Unknown network {value!r}; expected one of {sorted(_NETWORK_ALIASES)}"
        )
    return network


@dataclass
class CacheConfig:
    """Cache lifetimes in seconds."""
    balances_ttl: float = CacheTTL.BALANCES
    project_config_ttl: float = CacheTTL.PROJECT_CONFIG
    account_info_ttl: float = CacheTTL.ACCOUNT_INFO

    def to_dict(self) -> dict[str, Any]:
        return {
            "balances_ttl": self.balances_ttl,
            "project_config_ttl": self.project_config_ttl,
            "account_info_ttl": self.account_info_ttl,
        }


@dataclass
class SdkConfig:
    """Main configuration for the migration SDK."""

    network: Network = Network.DEVNET
    rpc_url: str = ""
    backup_rpc_urls: list[str] = field(default_factory=list)
    commitment: str = "confirmed"
    request_timeout: float = 30.0

    # Throttling (conservative for public endpoints)
    throttle_min_delay: float = 0.1  # 100ms between requests

    cache: CacheConfig = field(default_factory=CacheConfig)

    # Balance watching
    watch_interval: float = 0.15

    # Compute budget
    compute_unit_limit: int = 200_000
    compute_unit_price: int = 1_000  # micro-lamports

    # Optional program id overriding the one in the IDL
    program_override: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.rpc_url:
            self.rpc_url = DEFAULT_RPC_URLS[self.network]

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "SdkConfig":
        """Build a configuration from environment variables."""
        load_dotenv(dotenv_path)

        network = resolve_network()
        backups = [
            url.strip()
            for url in os.environ.get("SOLANA_BACKUP_RPC_URLS", "").split(",")
            if url.strip()
        ]

        config = cls(
            network=network,
            rpc_url=os.environ.get("SOLANA_RPC_URL", ""),
            backup_rpc_urls=backups,
            program_override=os.environ.get("MIGRATION_PROGRAM_OVERRIDE") or None,
        )

        throttle_ms = os.environ.get("MIGRATION_THROTTLE_MS")
        if throttle_ms:
            try:
                config.throttle_min_delay = int(throttle_ms) / 1000
            except ValueError:
                logger.warning(f"Ignoring invalid MIGRATION_THROTTLE_MS={throttle_ms!r}")

        logger.debug(f"Loaded SDK config for {network.value} ({config.rpc_url})")
        return config

    def all_rpc_urls(self) -> list[str]:
        """Primary endpoint followed by backups, without duplicates."""
        urls = [self.rpc_url]
        for url in self.backup_rpc_urls:
            if url not in urls:
                urls.append(url)
        return urls

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network.value,
            "rpc_url": self.rpc_url,
            "backup_rpc_urls": list(self.backup_rpc_urls),
            "commitment": self.commitment,
            "request_timeout": self.request_timeout,
            "throttle_min_delay": self.throttle_min_delay,
            "cache": self.cache.to_dict(),
            "watch_interval": self.watch_interval,
            "compute_unit_limit": self.compute_unit_limit,
            "compute_unit_price": self.compute_unit_price,
            "program_override": self.program_override,
        }


# Default configuration instance
_default_config: Optional[SdkConfig] = None


def get_config() -> SdkConfig:
    """Get the default configuration."""
    global _default_config
    if _default_config is None:
        _default_config = SdkConfig()
    return _default_config


def set_config(config: Optional[SdkConfig]) -> None:
    """Set the default configuration (None restores defaults)."""
    global _default_config
    _default_config = config
