"""
Migration SDK - Client facade.

Wires one ledger reader, one cache, one throttle and one program
resolver into every component, so all reads share the same request
spacing and cache.
"""

import logging
from typing import Any, Optional, Sequence, Union

from solders.pubkey import Pubkey
from solders.transaction import Transaction

from migration_sdk.balances import BalanceCallback, BalanceLoader, BalanceWatch
from migration_sdk.cache import RequestThrottle, TTLCache
from migration_sdk.clock import ClockProtocol, get_clock
from migration_sdk.config import SdkConfig, get_config
from migration_sdk.eligibility import EligibilityEngine
from migration_sdk.ledger.base import BaseLedgerReader, SimulationResult
from migration_sdk.ledger.jsonrpc import JsonRpcLedgerReader
from migration_sdk.models import (
    BalanceSnapshot,
    ClaimEligibility,
    Network,
    ProjectEligibilitySummary,
    ProjectInfoPage,
    ProjectView,
    UserMigrationRecord,
)
from migration_sdk.program import ProgramResolver
from migration_sdk.projects import ProjectStateLoader
from migration_sdk.queries import MigrationQueries
from migration_sdk.transactions import (
    BuildOptions,
    BuiltTransaction,
    TransactionBuilder,
    TransactionKind,
)


logger = logging.getLogger(__name__)


class MigrationClient:
    """
    Entry point for applications.

    Usage:
        async with MigrationClient({Network.DEVNET: devnet_idl}) as client:
            project = await client.load_project_state("my-project")
            balances = await client.get_balances("my-project", wallet)
            built = await client.build_transaction("migrate", wallet, "my-project", amount=10**9)
    """

    def __init__(
        self,
        idls: dict[Network, dict[str, Any]],
        config: Optional[SdkConfig] = None,
        reader: Optional[BaseLedgerReader] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._config = config or get_config()
        self._clock = clock or get_clock()
        self._owns_reader = reader is None
        self._reader = reader or JsonRpcLedgerReader(
            self._config.rpc_url,
            backup_urls=self._config.backup_rpc_urls,
            commitment=self._config.commitment,
            timeout=self._config.request_timeout,
            clock=self._clock,
        )

        self.cache = TTLCache(default_ttl=self._config.cache.balances_ttl, clock=self._clock)
        self.throttle = RequestThrottle(self._config.throttle_min_delay)
        self.resolver = ProgramResolver(
            idls,
            program_override=self._config.program_override,
            default_network=self._config.network,
        )

        self.projects = ProjectStateLoader(
            self._reader,
            self.resolver,
            cache=self.cache,
            throttle=self.throttle,
            clock=self._clock,
            ttl=self._config.cache.project_config_ttl,
        )
        self.balances = BalanceLoader(
            self.projects,
            cache=self.cache,
            throttle=self.throttle,
            ttl=self._config.cache.balances_ttl,
        )
        self.queries = MigrationQueries(
            self.projects,
            cache=self.cache,
            throttle=self.throttle,
            record_ttl=self._config.cache.account_info_ttl,
            listing_ttl=self._config.cache.project_config_ttl,
        )
        self.eligibility = EligibilityEngine(self.balances, self.queries)
        self.transactions = TransactionBuilder(self.projects, self.queries, self._config, self._clock)

    @property
    def config(self) -> SdkConfig:
        return self._config

    @property
    def reader(self) -> BaseLedgerReader:
        return self._reader

    # ─────────────────────────────────────────────────────────────
    # Project state
    # ─────────────────────────────────────────────────────────────

    async def load_project_state(
        self,
        project_id: str,
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> ProjectView:
        return await self.projects.load(project_id, network, skip_cache)

    async def list_projects(
        self,
        network: Optional[Network] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
        skip_cache: bool = False,
    ) -> ProjectInfoPage:
        return await self.queries.list_projects(network, limit, cursor, skip_cache)

    # ─────────────────────────────────────────────────────────────
    # Balances
    # ─────────────────────────────────────────────────────────────

    async def get_balances(
        self,
        project_id: str,
        user: Pubkey,
        network: Optional[Network] = None,
        project: Optional[ProjectView] = None,
        skip_cache: bool = False,
    ) -> BalanceSnapshot:
        return await self.balances.get(project_id, user, network, project, skip_cache)

    def watch_balances(
        self,
        project_id: str,
        user: Pubkey,
        on_change: BalanceCallback,
        interval: Optional[float] = None,
        network: Optional[Network] = None,
    ) -> BalanceWatch:
        """Start polling balances; see BalanceLoader.watch."""
        return self.balances.watch(
            project_id,
            user,
            on_change,
            interval=self._config.watch_interval if interval is None else interval,
            network=network,
        )

    # ─────────────────────────────────────────────────────────────
    # Users
    # ─────────────────────────────────────────────────────────────

    async def get_user_migration_record(
        self,
        user: Pubkey,
        project_id: str,
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> Optional[UserMigrationRecord]:
        return await self.queries.get_user_migration_record(user, project_id, network, skip_cache)

    async def has_user_migrated(
        self,
        user: Pubkey,
        project_id: str,
        network: Optional[Network] = None,
    ) -> bool:
        return await self.queries.has_user_migrated(user, project_id, network)

    async def compute_eligibility(
        self,
        project_id: str,
        user: Optional[Pubkey],
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> ClaimEligibility:
        return await self.eligibility.compute_for_user(project_id, user, network, skip_cache)

    async def check_project_eligibility(
        self,
        project_id: str,
        user: Optional[Pubkey],
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> ProjectEligibilitySummary:
        return await self.eligibility.check_project(project_id, user, network, skip_cache)

    # ─────────────────────────────────────────────────────────────
    # Transactions
    # ─────────────────────────────────────────────────────────────

    async def build_transaction(
        self,
        kind: Union[TransactionKind, str],
        user: Pubkey,
        project_id: str,
        amount: Optional[int] = None,
        proof: Optional[Sequence[bytes]] = None,
        network: Optional[Network] = None,
        options: Optional[BuildOptions] = None,
    ) -> BuiltTransaction:
        return await self.transactions.build(kind, user, project_id, amount, proof, network, options)

    async def simulate_transaction(self, transaction: Transaction) -> SimulationResult:
        return await self.transactions.simulate(transaction)

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    def clear_cache(self) -> None:
        self.cache.clear()
        self.resolver.reset()

    async def close(self) -> None:
        """Close the ledger reader if this client created it."""
        if self._owns_reader:
            await self._reader.close()

    async def __aenter__(self) -> "MigrationClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(network={self._config.network.value}, reader={self._reader!r})>"
