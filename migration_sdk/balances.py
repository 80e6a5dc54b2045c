"""
Migration SDK - User balance loading and watching.

Four throttled reads per snapshot: native balance, then the user's
associated token accounts for the old token, the new token and the
receipt token. A token account that does not exist reads as 0.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from solders.pubkey import Pubkey

from migration_sdk.addresses import TOKEN_PROGRAM_ID, derive_associated_token_address
from migration_sdk.cache import CacheTTL, RequestThrottle, TTLCache, create_cache_key
from migration_sdk.errors import parse_error
from migration_sdk.exceptions import ErrorCode, MigrationSdkError, RateLimitError
from migration_sdk.models import BalanceSnapshot, Network, ProjectView
from migration_sdk.projects import ProjectStateLoader


logger = logging.getLogger(__name__)


DEFAULT_WATCH_INTERVAL = 0.15

BalanceCallback = Callable[[BalanceSnapshot], Union[None, Awaitable[None]]]


class BalanceLoader:
    """
    Loads a user's balances for one project.

    Usage:
        balances = BalanceLoader(projects)
        snapshot = await balances.get("my-project", user)
        print(snapshot.old_token, snapshot.receipt_token)
    """

    def __init__(
        self,
        projects: ProjectStateLoader,
        cache: Optional[TTLCache] = None,
        throttle: Optional[RequestThrottle] = None,
        ttl: float = CacheTTL.BALANCES,
    ) -> None:
        self._projects = projects
        self._reader = projects.reader
        self._cache = cache if cache is not None else TTLCache(clock=projects.clock)
        self._throttle = throttle if throttle is not None else RequestThrottle()
        self._ttl = ttl

    @property
    def projects(self) -> ProjectStateLoader:
        return self._projects

    @staticmethod
    def cache_key(project_id: str, user: Pubkey, network: Optional[Network]) -> str:
        return create_cache_key("balances", project_id, user, network)

    async def get(
        self,
        project_id: str,
        user: Pubkey,
        network: Optional[Network] = None,
        project: Optional[ProjectView] = None,
        skip_cache: bool = False,
    ) -> BalanceSnapshot:
        """
        Get all balances of `user` relevant to a project.

        Args:
            project_id: Project identifier
            user: Wallet address
            network: Network override
            project: Already loaded project (skips the project load)
            skip_cache: Bypass the cached snapshot

        Raises:
            MigrationSdkError: RATE_LIMITED on a throttled native read,
                project load failures, RPC_ERROR otherwise
        """
        key = self.cache_key(project_id, user, network)
        if not skip_cache:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug(f"Balance cache hit: {project_id}/{user}")
                return cached

        try:
            snapshot = await self._fetch(project_id, user, network, project)
        except MigrationSdkError:
            raise
        except Exception as e:
            raise parse_error(e, fallback=ErrorCode.RPC_ERROR, fallback_message=f"Failed to fetch balances: {e}")

        self._cache.set(key, snapshot, self._ttl)
        return snapshot

    async def _fetch(
        self,
        project_id: str,
        user: Pubkey,
        network: Optional[Network],
        project: Optional[ProjectView],
    ) -> BalanceSnapshot:
        loaded = project or await self._projects.load(project_id, network)

        native = await self._read_native(user)
        old_token = await self._read_token(
            derive_associated_token_address(user, loaded.old_token_mint, loaded.old_token_program or TOKEN_PROGRAM_ID),
            "old token",
        )
        new_token = await self._read_token(
            derive_associated_token_address(user, loaded.new_token_mint, loaded.new_token_program or TOKEN_PROGRAM_ID),
            "new token",
        )
        # receipt mint is always owned by the standard token program
        receipt_token = await self._read_token(
            derive_associated_token_address(user, loaded.receipt_mint, TOKEN_PROGRAM_ID),
            "receipt token",
        )

        return BalanceSnapshot(
            native=native,
            old_token=old_token,
            new_token=new_token,
            receipt_token=receipt_token,
        )

    async def _read_native(self, user: Pubkey) -> int:
        await self._throttle.wait()
        try:
            return await self._reader.get_balance(user)
        except RateLimitError:
            raise
        except Exception as e:
            if parse_error(e).code == ErrorCode.RATE_LIMITED:
                raise RateLimitError(original_error=e)
            logger.warning(f"Native balance read failed for {user}, using 0: {e}")
            return 0

    async def _read_token(self, account: Pubkey, label: str) -> int:
        await self._throttle.wait()
        try:
            amount = await self._reader.get_token_account_balance(account)
        except Exception as e:
            logger.warning(f"{label} balance read failed for {account}, using 0: {e}")
            return 0
        return amount or 0

    def invalidate(self, project_id: str, user: Pubkey, network: Optional[Network] = None) -> None:
        self._cache.delete(self.cache_key(project_id, user, network))

    def watch(
        self,
        project_id: str,
        user: Pubkey,
        on_change: BalanceCallback,
        interval: float = DEFAULT_WATCH_INTERVAL,
        network: Optional[Network] = None,
    ) -> "BalanceWatch":
        """
        Poll balances and call `on_change` whenever any field changes.

        Must be called from a running event loop. Returns a handle whose
        unsubscribe() (or plain call) stops delivery.
        """
        watch = BalanceWatch(self, project_id, user, on_change, interval, network)
        watch.start()
        return watch


class BalanceWatch:
    """
    Handle of a running balance poll.

    After unsubscribe() no further callback is delivered, including the
    result of a fetch that was already in flight.
    """

    def __init__(
        self,
        loader: BalanceLoader,
        project_id: str,
        user: Pubkey,
        on_change: BalanceCallback,
        interval: float = DEFAULT_WATCH_INTERVAL,
        network: Optional[Network] = None,
    ) -> None:
        self._loader = loader
        self._project_id = project_id
        self._user = user
        self._on_change = on_change
        self._interval = interval
        self._network = network
        self._active = True
        self._last: Optional[BalanceSnapshot] = None
        self._project: Optional[ProjectView] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def last_snapshot(self) -> Optional[BalanceSnapshot]:
        return self._last

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    def unsubscribe(self) -> None:
        """Stop watching. Safe to call more than once."""
        self._active = False

    def __call__(self) -> None:
        self.unsubscribe()

    async def wait_closed(self) -> None:
        """Wait for the poll loop to exit after unsubscribe()."""
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        try:
            self._project = await self._loader.projects.load(self._project_id, self._network)
        except Exception as e:
            logger.warning(f"Balance watch could not load project {self._project_id}: {e}")

        while self._active:
            await self._poll()
            if not self._active:
                break
            await asyncio.sleep(self._interval)

    async def _poll(self) -> None:
        try:
            snapshot = await self._loader.get(
                self._project_id,
                self._user,
                network=self._network,
                project=self._project,
                skip_cache=True,
            )
        except Exception as e:
            logger.warning(f"Balance watch error for {self._project_id}/{self._user}: {e}")
            return

        # unsubscribed while the fetch was in flight
        if not self._active:
            return
        if self._last is not None and snapshot == self._last:
            return

        self._last = snapshot
        await self._deliver(snapshot)

    async def _deliver(self, snapshot: BalanceSnapshot) -> None:
        try:
            result: Any = self._on_change(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Balance watch callback raised: {e}")
