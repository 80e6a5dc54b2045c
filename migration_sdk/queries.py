"""
Migration SDK - Account queries beyond the project view.

- Per-user migration records (cached, absence cached too)
- Project listing via a program-accounts scan
"""

import logging
from typing import Optional

from solders.pubkey import Pubkey

from migration_sdk.addresses import derive_user_migration
from migration_sdk.cache import CacheTTL, RequestThrottle, TTLCache, create_cache_key
from migration_sdk.codec import decode_account, decode_project_config, decode_user_migration
from migration_sdk.errors import parse_error
from migration_sdk.exceptions import ErrorCode, MigrationSdkError
from migration_sdk.models import Network, ProjectInfoPage, ProjectView, UserMigrationRecord
from migration_sdk.projects import PROJECT_CONFIG_ACCOUNT, ProjectStateLoader


logger = logging.getLogger(__name__)


USER_MIGRATION_ACCOUNT = "UserMigration"

# Cached marker for "record does not exist"
_NO_RECORD = object()


class MigrationQueries:
    """
    Read-only queries against migration program accounts.

    Usage:
        queries = MigrationQueries(projects)
        record = await queries.get_user_migration_record(user, "my-project")
        if record:
            print(record.amount_migrated)
    """

    def __init__(
        self,
        projects: ProjectStateLoader,
        cache: Optional[TTLCache] = None,
        throttle: Optional[RequestThrottle] = None,
        record_ttl: float = CacheTTL.ACCOUNT_INFO,
        listing_ttl: float = CacheTTL.PROJECT_CONFIG,
    ) -> None:
        self._projects = projects
        self._reader = projects.reader
        self._resolver = projects.resolver
        self._record_ttl = record_ttl
        self._listing_ttl = listing_ttl
        self._cache = cache if cache is not None else TTLCache(clock=projects.clock)
        self._throttle = throttle if throttle is not None else RequestThrottle()

    async def get_user_migration_record(
        self,
        user: Pubkey,
        project_id: str,
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> Optional[UserMigrationRecord]:
        """
        Fetch a user's migration record, or None if they never migrated.

        Raises:
            MigrationSdkError: RATE_LIMITED or RPC_ERROR
        """
        key = create_cache_key("user-migration", project_id, user, network)
        if not skip_cache:
            cached = self._cache.get(key)
            if cached is _NO_RECORD:
                return None
            if cached is not None:
                return cached

        try:
            schema = self._resolver.resolve(network)
            address, _ = derive_user_migration(user, project_id, schema.program_id)

            await self._throttle.wait()
            account = await self._reader.get_account_info(address)
            if account is None:
                record = None
            else:
                record = decode_user_migration(decode_account(schema, USER_MIGRATION_ACCOUNT, account.data))
        except MigrationSdkError:
            raise
        except Exception as e:
            raise parse_error(
                e,
                fallback=ErrorCode.RPC_ERROR,
                fallback_message=f"Failed to fetch migration record: {e}",
            )

        self._cache.set(key, _NO_RECORD if record is None else record, self._record_ttl)
        return record

    async def has_user_migrated(
        self,
        user: Pubkey,
        project_id: str,
        network: Optional[Network] = None,
    ) -> bool:
        record = await self.get_user_migration_record(user, project_id, network)
        return record is not None and record.amount_migrated > 0

    async def list_projects(
        self,
        network: Optional[Network] = None,
        limit: int = 100,
        cursor: Optional[str] = None,
        skip_cache: bool = False,
    ) -> ProjectInfoPage:
        """
        List projects of the migration program, ordered by project id.

        Args:
            network: Network override
            limit: Page size
            cursor: Project id of the last item of the previous page
            skip_cache: Bypass the cached page

        Projects whose config cannot be decoded or loaded are skipped.
        """
        key = create_cache_key("all-projects", network, cursor or "first", limit)
        if not skip_cache:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        try:
            schema = self._resolver.resolve(network)
            await self._throttle.wait()
            accounts = await self._reader.get_program_accounts(
                schema.program_id,
                schema.account_discriminator(PROJECT_CONFIG_ACCOUNT),
            )
        except MigrationSdkError:
            raise
        except Exception as e:
            raise parse_error(e, fallback=ErrorCode.RPC_ERROR, fallback_message=f"Failed to fetch projects: {e}")

        project_ids = []
        for item in accounts:
            try:
                record = decode_project_config(decode_account(schema, PROJECT_CONFIG_ACCOUNT, item.account.data))
            except MigrationSdkError as e:
                logger.warning(f"Skipping undecodable project config {item.address}: {e}")
                continue
            if not record.project_id:
                logger.warning(f"Skipping project config {item.address} without a stored project id")
                continue
            project_ids.append(record.project_id)

        project_ids.sort()
        if cursor is not None:
            project_ids = [pid for pid in project_ids if pid > cursor]

        page_ids = project_ids[:limit]
        projects: list[ProjectView] = []
        for project_id in page_ids:
            try:
                projects.append(await self._projects.load(project_id, network, skip_cache=skip_cache))
            except MigrationSdkError as e:
                logger.warning(f"Failed to load project {project_id}: {e}")

        has_more = len(project_ids) > limit
        page = ProjectInfoPage(
            projects=tuple(projects),
            cursor=page_ids[-1] if has_more and page_ids else None,
            has_more=has_more,
        )
        self._cache.set(key, page, self._listing_ttl)
        return page
