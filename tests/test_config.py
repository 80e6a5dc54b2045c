"""
Tests for SDK configuration and network resolution.
"""

import pytest

from migration_sdk.config import (
    DEFAULT_RPC_URLS,
    CacheConfig,
    SdkConfig,
    get_config,
    resolve_network,
    set_config,
)
from migration_sdk.models import Network


class TestResolveNetwork:
    """Test network name resolution."""

    @pytest.mark.parametrize("value,expected", [
        ("devnet", Network.DEVNET),
        ("mainnet", Network.MAINNET),
        ("mainnet-beta", Network.MAINNET),
        (" MAINNET ", Network.MAINNET),
        (Network.DEVNET, Network.DEVNET),
    ])
    def test_aliases(self, value, expected):
        assert resolve_network(value) == expected

    def test_unknown_rejected(self):
        with pytest.raises(ValueError):
            resolve_network("testnet")

    def test_defaults_to_devnet(self):
        """Test devnet is used when nothing is configured."""
        assert resolve_network() == Network.DEVNET

    def test_environment_variable(self, monkeypatch):
        monkeypatch.setenv("SOLANA_NETWORK", "mainnet")
        assert resolve_network() == Network.MAINNET

    def test_public_variable_fallback(self, monkeypatch):
        """Test the public-prefixed variable is consulted second."""
        monkeypatch.setenv("NEXT_PUBLIC_SOLANA_NETWORK", "mainnet-beta")
        assert resolve_network() == Network.MAINNET


class TestSdkConfig:
    """Test configuration defaults and environment loading."""

    def test_defaults(self):
        config = SdkConfig()

        assert config.network == Network.DEVNET
        assert config.rpc_url == DEFAULT_RPC_URLS[Network.DEVNET]
        assert config.throttle_min_delay == 0.1
        assert config.cache.project_config_ttl == 3600
        assert config.watch_interval == 0.15

    def test_mainnet_default_url(self):
        assert SdkConfig(network=Network.MAINNET).rpc_url == "https://api.mainnet-beta.solana.com"

    def test_all_rpc_urls_deduplicates(self):
        config = SdkConfig(rpc_url="https://a", backup_rpc_urls=["https://b", "https://a"])
        assert config.all_rpc_urls() == ["https://a", "https://b"]

    def test_from_env(self, monkeypatch, tmp_path):
        """Test values are read from environment variables."""
        monkeypatch.setenv("SOLANA_NETWORK", "mainnet")
        monkeypatch.setenv("SOLANA_RPC_URL", "https://rpc.example")
        monkeypatch.setenv("SOLANA_BACKUP_RPC_URLS", "https://b1, https://b2,,")
        monkeypatch.setenv("MIGRATION_THROTTLE_MS", "250")
        monkeypatch.setenv("MIGRATION_PROGRAM_OVERRIDE", "Override111")

        config = SdkConfig.from_env(str(tmp_path / "missing.env"))

        assert config.network == Network.MAINNET
        assert config.rpc_url == "https://rpc.example"
        assert config.backup_rpc_urls == ["https://b1", "https://b2"]
        assert config.throttle_min_delay == 0.25
        assert config.program_override == "Override111"

    def test_from_dotenv_file(self, monkeypatch, tmp_path):
        """Test a .env file is honoured."""
        env_file = tmp_path / ".env"
        env_file.write_text("SOLANA_RPC_URL=https://from-dotenv\n")
        monkeypatch.delenv("SOLANA_RPC_URL", raising=False)

        try:
            config = SdkConfig.from_env(str(env_file))
        finally:
            monkeypatch.delenv("SOLANA_RPC_URL", raising=False)

        assert config.rpc_url == "https://from-dotenv"

    def test_invalid_throttle_ignored(self, monkeypatch, tmp_path):
        """Test a malformed throttle value keeps the default."""
        monkeypatch.setenv("MIGRATION_THROTTLE_MS", "fast")

        config = SdkConfig.from_env(str(tmp_path / "missing.env"))
        assert config.throttle_min_delay == 0.1

    def test_to_dict(self):
        data = SdkConfig().to_dict()

        assert data["network"] == "devnet"
        assert data["cache"]["balances_ttl"] == 30

    def test_cache_lifetimes(self):
        """Test only the lifetimes the SDK reads are configurable."""
        cache = CacheConfig()

        assert set(cache.to_dict()) == {"balances_ttl", "project_config_ttl", "account_info_ttl"}
        assert cache.account_info_ttl == 10


class TestDefaultConfig:
    """Test the process-wide default configuration."""

    def test_set_and_reset(self):
        custom = SdkConfig(network=Network.MAINNET)
        set_config(custom)
        assert get_config() is custom

        set_config(None)
        assert get_config().network == Network.DEVNET
