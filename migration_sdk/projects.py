"""
Migration SDK - Project state loading.

============================================================
FLOW
============================================================
cache hit  -> ProjectView (phase re-evaluated against the clock)
cache miss -> derive config PDA -> throttle -> fetch + decode config
           -> throttle -> old mint decimals
           -> throttle -> new mint decimals
           -> derive all PDAs -> compute phase -> cache (1h)

Failures leave this module as MigrationSdkError:
- config account absent -> NOT_FOUND
- endpoint throttling   -> RATE_LIMITED
- anything else         -> RPC_ERROR
============================================================
"""

import dataclasses
import logging
from typing import Any, Optional

from solders.pubkey import Pubkey

from migration_sdk.addresses import derive_project_addresses, derive_project_config
from migration_sdk.cache import CacheTTL, RequestThrottle, TTLCache, create_cache_key
from migration_sdk.clock import ClockProtocol, get_clock
from migration_sdk.codec import ProjectConfigRecord, decode_account, decode_project_config
from migration_sdk.errors import parse_error
from migration_sdk.exceptions import ErrorCode, MigrationSdkError, ProjectNotFoundError
from migration_sdk.ledger.base import BaseLedgerReader
from migration_sdk.models import MigrationPhase, Network, ProjectAddresses, ProjectView
from migration_sdk.program import ProgramResolver


logger = logging.getLogger(__name__)


PROJECT_CONFIG_ACCOUNT = "ProjectConfig"
RECEIPT_DECIMALS = 9
DEFAULT_MINT_DECIMALS = 9


def compute_phase(start_ts: int, end_ts: int, claims_enabled: bool, now: int) -> MigrationPhase:
    """
    Phase of a project at `now` (Unix seconds).

    now < start                         -> SETUP
    start <= now < end                  -> ACTIVE_MIGRATION
    now >= end and claims enabled       -> GRACE_PERIOD
    otherwise                           -> FINALIZED
    """
    if now < start_ts:
        return MigrationPhase.SETUP
    if now < end_ts:
        return MigrationPhase.ACTIVE_MIGRATION
    if claims_enabled:
        return MigrationPhase.GRACE_PERIOD
    return MigrationPhase.FINALIZED


def parse_mint_info(parsed_account: Optional[dict[str, Any]]) -> tuple[int, Optional[Pubkey]]:
    """
    Decimals and owning token program from a jsonParsed mint account.

    Decimals default to 9 when the account is missing or not a parsed mint.
    """
    if not parsed_account:
        return DEFAULT_MINT_DECIMALS, None

    owner: Optional[Pubkey] = None
    raw_owner = parsed_account.get("owner")
    if raw_owner:
        try:
            owner = raw_owner if isinstance(raw_owner, Pubkey) else Pubkey.from_string(raw_owner)
        except ValueError:
            owner = None

    data = parsed_account.get("data")
    decimals = None
    if isinstance(data, dict):
        decimals = ((data.get("parsed") or {}).get("info") or {}).get("decimals")
    if isinstance(decimals, bool) or not isinstance(decimals, int):
        return DEFAULT_MINT_DECIMALS, owner
    return decimals, owner


class ProjectStateLoader:
    """
    Loads and caches project configuration.

    Usage:
        loader = ProjectStateLoader(reader, resolver)
        project = await loader.load("my-project")
        print(project.phase, project.exchange_rate_bps)
    """

    def __init__(
        self,
        reader: BaseLedgerReader,
        resolver: ProgramResolver,
        cache: Optional[TTLCache] = None,
        throttle: Optional[RequestThrottle] = None,
        clock: Optional[ClockProtocol] = None,
        ttl: float = CacheTTL.PROJECT_CONFIG,
    ) -> None:
        self._reader = reader
        self._resolver = resolver
        self._clock = clock or get_clock()
        self._cache = cache if cache is not None else TTLCache(clock=self._clock)
        self._throttle = throttle if throttle is not None else RequestThrottle()
        self._ttl = ttl

    @property
    def reader(self) -> BaseLedgerReader:
        return self._reader

    @property
    def resolver(self) -> ProgramResolver:
        return self._resolver

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    @staticmethod
    def cache_key(project_id: str, network: Optional[Network]) -> str:
        return create_cache_key("project", project_id, network)

    async def load(
        self,
        project_id: str,
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> ProjectView:
        """
        Load a project's configuration.

        Args:
            project_id: Project identifier (the PDA seed)
            network: Network whose program to use (default: resolver default)
            skip_cache: Bypass the cached view

        Raises:
            MigrationSdkError: NOT_FOUND, RATE_LIMITED or RPC_ERROR
        """
        key = self.cache_key(project_id, network)
        if not skip_cache:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug(f"Project cache hit: {project_id}")
                return self._refresh_phase(cached)

        try:
            view = await self._fetch(project_id, network)
        except MigrationSdkError:
            raise
        except Exception as e:
            raise parse_error(e, fallback=ErrorCode.RPC_ERROR, fallback_message=f"Failed to load project: {e}")

        self._cache.set(key, view, self._ttl)
        return view

    async def _fetch(self, project_id: str, network: Optional[Network]) -> ProjectView:
        schema = self._resolver.resolve(network)
        program_id = schema.program_id
        config_address, _ = derive_project_config(project_id, program_id)

        await self._throttle.wait()
        account = await self._reader.get_account_info(config_address)
        if account is None:
            raise ProjectNotFoundError(project_id, schema.network.value if schema.network else None)

        fields = decode_account(schema, PROJECT_CONFIG_ACCOUNT, account.data)
        record = decode_project_config(fields)

        await self._throttle.wait()
        old_decimals, old_program = parse_mint_info(
            await self._reader.get_parsed_account_info(record.old_token_mint)
        )
        await self._throttle.wait()
        new_decimals, new_program = parse_mint_info(
            await self._reader.get_parsed_account_info(record.new_token_mint)
        )

        addresses = derive_project_addresses(project_id, program_id)
        view = self._build_view(
            project_id,
            schema.network or network,
            record,
            addresses,
            old_decimals,
            new_decimals,
            old_program,
            new_program,
        )
        logger.debug(f"Loaded project {project_id}: phase={view.phase.name} paused={view.paused}")
        return view

    def _build_view(
        self,
        project_id: str,
        network: Optional[Network],
        record: ProjectConfigRecord,
        addresses: ProjectAddresses,
        old_decimals: int,
        new_decimals: int,
        old_program: Optional[Pubkey],
        new_program: Optional[Pubkey],
    ) -> ProjectView:
        return ProjectView(
            project_id=project_id,
            network=network or Network.DEVNET,
            old_token_mint=record.old_token_mint,
            new_token_mint=record.new_token_mint,
            receipt_mint=addresses.receipt_mint,
            old_token_decimals=old_decimals,
            new_token_decimals=new_decimals,
            receipt_decimals=RECEIPT_DECIMALS,
            exchange_rate_bps=record.exchange_rate_bps,
            phase=compute_phase(
                record.start_ts,
                record.end_ts,
                record.claims_enabled,
                self._clock.unix_seconds(),
            ),
            paused=record.is_paused,
            claims_enabled=record.claims_enabled,
            start_ts=record.start_ts,
            end_ts=record.end_ts,
            addresses=addresses,
            claim_config=record.claim_config,
            old_token_program=old_program,
            new_token_program=new_program,
        )

    def _refresh_phase(self, view: ProjectView) -> ProjectView:
        phase = compute_phase(view.start_ts, view.end_ts, view.claims_enabled, self._clock.unix_seconds())
        if phase == view.phase:
            return view
        return dataclasses.replace(view, phase=phase)

    def invalidate(self, project_id: str, network: Optional[Network] = None) -> None:
        """Drop the cached view of one project."""
        self._cache.delete(self.cache_key(project_id, network))

    async def is_project_paused(self, project_id: str, network: Optional[Network] = None) -> bool:
        project = await self.load(project_id, network)
        return project.paused

    async def is_project_active(self, project_id: str, network: Optional[Network] = None) -> bool:
        """Accepting migrations right now (active phase, not paused)."""
        project = await self.load(project_id, network)
        return project.is_active()
