"""
Migration SDK - Client library for the token migration program.

Users move an old token into a new one in two steps: during the
migration window they lock old tokens and receive receipt tokens (MFT);
once claims open they burn receipts for new tokens. Late claims with a
merkle proof and refunds of failed migrations are also supported.

This package NEVER signs or submits transactions. It derives addresses,
reads and caches on-chain state, computes eligibility and builds
unsigned transactions for the caller's wallet.

Quick Start:
    from migration_sdk import MigrationClient, Network, SdkConfig

    async def migrate(wallet, idl):
        config = SdkConfig.from_env()
        async with MigrationClient({Network.DEVNET: idl}, config) as client:
            project = await client.load_project_state("my-project")
            if project.is_active():
                built = await client.build_transaction(
                    "migrate", wallet, "my-project", amount=10**9,
                )
                print(f"Expected receipt tokens: {built.expected_amount}")

Pure helpers (no I/O):
    from migration_sdk import (
        derive_project_addresses,
        convert_by_exchange_rate,
        compute_eligibility,
        best_claim_type,
    )

Errors:
    Every failure is a MigrationSdkError with a stable ErrorCode;
    normalize_error() adds a title, recovery actions and retryability.
"""

# ============================================================
# MODELS
# ============================================================
from migration_sdk.models import (
    BalanceSnapshot,
    ClaimConfig,
    ClaimEligibility,
    ClaimType,
    MigrationPhase,
    Network,
    ProjectAddresses,
    ProjectEligibilitySummary,
    ProjectInfoPage,
    ProjectView,
    RedirectIntent,
    UserMigrationRecord,
)

# ============================================================
# ERRORS
# ============================================================
from migration_sdk.exceptions import (
    AmountOverflowError,
    ErrorCode,
    FetchError,
    MigrationSdkError,
    ProjectNotFoundError,
    RateLimitError,
    SchemaError,
    ValidationError,
)
from migration_sdk.errors import (
    NormalizedError,
    format_error_for_log,
    is_retryable_error,
    normalize_error,
    parse_error,
)

# ============================================================
# CONFIG / INFRASTRUCTURE
# ============================================================
from migration_sdk.config import SdkConfig, get_config, resolve_network, set_config
from migration_sdk.cache import CacheTTL, RequestThrottle, TTLCache, memoize_async
from migration_sdk.clock import MockClock, SystemClock
from migration_sdk.program import ProgramResolver, ProgramSchema

# ============================================================
# ADDRESSES / ARITHMETIC
# ============================================================
from migration_sdk.addresses import (
    derive_address,
    derive_associated_token_address,
    derive_project_addresses,
    derive_user_migration,
    parse_address,
)
from migration_sdk.amounts import (
    apply_penalty,
    convert_by_exchange_rate,
    format_exchange_rate,
    format_percentage,
    format_token_amount,
    parse_token_amount,
    rescale,
)

# ============================================================
# COMPONENTS
# ============================================================
from migration_sdk.ledger import BaseLedgerReader, JsonRpcLedgerReader
from migration_sdk.projects import ProjectStateLoader, compute_phase
from migration_sdk.balances import BalanceLoader, BalanceWatch
from migration_sdk.queries import MigrationQueries
from migration_sdk.eligibility import (
    EligibilityEngine,
    best_claim_type,
    compute_eligibility,
    redirect_intent,
    summarize_eligibility,
)
from migration_sdk.transactions import (
    BuildOptions,
    BuiltTransaction,
    TransactionBuilder,
    TransactionKind,
)
from migration_sdk.client import MigrationClient


# ============================================================
# VERSION
# ============================================================
__version__ = "0.1.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Models
    "BalanceSnapshot",
    "ClaimConfig",
    "ClaimEligibility",
    "ClaimType",
    "MigrationPhase",
    "Network",
    "ProjectAddresses",
    "ProjectEligibilitySummary",
    "ProjectInfoPage",
    "ProjectView",
    "RedirectIntent",
    "UserMigrationRecord",
    # Errors
    "AmountOverflowError",
    "ErrorCode",
    "FetchError",
    "MigrationSdkError",
    "ProjectNotFoundError",
    "RateLimitError",
    "SchemaError",
    "ValidationError",
    "NormalizedError",
    "format_error_for_log",
    "is_retryable_error",
    "normalize_error",
    "parse_error",
    # Config / infrastructure
    "SdkConfig",
    "get_config",
    "set_config",
    "resolve_network",
    "CacheTTL",
    "RequestThrottle",
    "TTLCache",
    "memoize_async",
    "MockClock",
    "SystemClock",
    "ProgramResolver",
    "ProgramSchema",
    # Addresses / arithmetic
    "derive_address",
    "derive_associated_token_address",
    "derive_project_addresses",
    "derive_user_migration",
    "parse_address",
    "apply_penalty",
    "convert_by_exchange_rate",
    "format_exchange_rate",
    "format_percentage",
    "format_token_amount",
    "parse_token_amount",
    "rescale",
    # Components
    "BaseLedgerReader",
    "JsonRpcLedgerReader",
    "ProjectStateLoader",
    "compute_phase",
    "BalanceLoader",
    "BalanceWatch",
    "MigrationQueries",
    "EligibilityEngine",
    "best_claim_type",
    "compute_eligibility",
    "redirect_intent",
    "summarize_eligibility",
    "BuildOptions",
    "BuiltTransaction",
    "TransactionBuilder",
    "TransactionKind",
    "MigrationClient",
    "__version__",
]
