"""
Shared fixtures for the migration SDK tests.
"""

import copy
from typing import Any

import pytest
from solders.pubkey import Pubkey

from migration_sdk.addresses import (
    TOKEN_PROGRAM_ID,
    derive_associated_token_address,
    derive_project_config,
    derive_user_migration,
)
from migration_sdk.balances import BalanceLoader
from migration_sdk.cache import RequestThrottle, TTLCache
from migration_sdk.clock import MockClock
from migration_sdk.codec import encode_account
from migration_sdk.config import SdkConfig, set_config
from migration_sdk.ledger.base import AccountInfo
from migration_sdk.models import Network
from migration_sdk.program import ProgramResolver, ProgramSchema
from migration_sdk.projects import ProjectStateLoader
from migration_sdk.queries import MigrationQueries

from tests.fakes import (
    NOW,
    PROJECT_ID,
    SAMPLE_IDL,
    FakeLedgerReader,
    parsed_mint,
    project_config_fields,
)


# ============================================================
# ENVIRONMENT
# ============================================================

@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep ambient network settings and the default config out of tests."""
    for name in (
        "SOLANA_NETWORK",
        "NEXT_PUBLIC_SOLANA_NETWORK",
        "SOLANA_RPC_URL",
        "SOLANA_BACKUP_RPC_URLS",
        "MIGRATION_PROGRAM_OVERRIDE",
        "MIGRATION_THROTTLE_MS",
    ):
        monkeypatch.delenv(name, raising=False)
    set_config(None)
    yield
    set_config(None)


# ============================================================
# CORE FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Clock pinned inside the default project's migration window."""
    return MockClock.at(NOW)


@pytest.fixture
def idl():
    return copy.deepcopy(SAMPLE_IDL)


@pytest.fixture
def resolver(idl):
    return ProgramResolver({Network.DEVNET: idl}, default_network=Network.DEVNET)


@pytest.fixture
def schema(resolver) -> ProgramSchema:
    return resolver.resolve(Network.DEVNET)


@pytest.fixture
def reader():
    return FakeLedgerReader()


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock)


@pytest.fixture
def throttle():
    return RequestThrottle(0)


@pytest.fixture
def sdk_config():
    return SdkConfig(throttle_min_delay=0, watch_interval=0.01)


# ============================================================
# LEDGER STATE FACTORIES
# ============================================================

@pytest.fixture
def install_project(reader, schema):
    """
    Write a project config account and its mints into the fake ledger.

    Usage:
        install_project(claims_enabled=True, old_decimals=6)
    """
    def _install(
        project_id: str = PROJECT_ID,
        old_decimals: int = 9,
        new_decimals: int = 9,
        old_owner: str = str(TOKEN_PROGRAM_ID),
        **overrides: Any,
    ) -> Pubkey:
        fields = project_config_fields(project_id, **overrides)
        address, _ = derive_project_config(project_id, schema.program_id)
        reader.accounts[address] = AccountInfo(
            data=encode_account(schema, "ProjectConfig", fields),
            owner=schema.program_id,
            lamports=2_000_000,
        )
        reader.parsed[fields["old_token_mint"]] = parsed_mint(old_decimals, owner=old_owner)
        reader.parsed[fields["new_token_mint"]] = parsed_mint(new_decimals)
        return address

    return _install


@pytest.fixture
def install_user_migration(reader, schema):
    """Write a UserMigration record into the fake ledger."""
    def _install(
        user: Pubkey,
        amount_migrated: int,
        project_id: str = PROJECT_ID,
        has_claimed_refund: bool = False,
    ) -> Pubkey:
        address, _ = derive_user_migration(user, project_id, schema.program_id)
        reader.accounts[address] = AccountInfo(
            data=encode_account(schema, "UserMigration", {
                "user": user,
                "amount_migrated": amount_migrated,
                "has_claimed_refund": has_claimed_refund,
                "migrated_at": NOW - 60,
                "bump": 253,
            }),
            owner=schema.program_id,
        )
        return address

    return _install


@pytest.fixture
def fund(reader):
    """Set a user's token balance for a mint (standard token program)."""
    def _fund(user: Pubkey, mint: Pubkey, amount: int, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
        ata = derive_associated_token_address(user, mint, token_program)
        reader.token_balances[ata] = amount
        return ata

    return _fund


# ============================================================
# COMPONENTS
# ============================================================

@pytest.fixture
def projects(reader, resolver, cache, throttle, clock):
    return ProjectStateLoader(reader, resolver, cache=cache, throttle=throttle, clock=clock)


@pytest.fixture
def balances(projects, cache, throttle):
    return BalanceLoader(projects, cache=cache, throttle=throttle)


@pytest.fixture
def queries(projects, cache, throttle):
    return MigrationQueries(projects, cache=cache, throttle=throttle)
