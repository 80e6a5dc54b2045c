"""
Migration SDK Data Models - Client-side projections of on-chain state.

All records are frozen: a fresh fetch replaces a cached instance, it
never mutates one, so cached values can be handed to callers directly.
"""

from dataclasses import dataclass, fields
from enum import Enum, IntEnum
from typing import Any, Optional

from solders.pubkey import Pubkey


class Network(Enum):
    """Supported ledger clusters."""
    DEVNET = "devnet"
    MAINNET = "mainnet-beta"


class MigrationPhase(IntEnum):
    """Position of a project in its migration lifecycle."""
    SETUP = 0
    ACTIVE_MIGRATION = 1
    GRACE_PERIOD = 2
    FINALIZED = 3


class ClaimType(Enum):
    """Claim variants, declared in priority order."""
    RECEIPT = "receipt"  # burn receipt tokens, no penalty
    PROOF = "proof"      # merkle-proof late claim, haircut applies
    REFUND = "refund"    # failed migration, old tokens returned


@dataclass(frozen=True)
class ProjectAddresses:
    """Program-derived addresses of one project."""
    project_config: Pubkey
    old_token_vault: Pubkey
    new_token_vault: Pubkey
    receipt_mint: Pubkey
    wsol_vault: Pubkey
    quote_token_vault: Pubkey
    lp_vault: Pubkey

    def to_dict(self) -> dict[str, str]:
        """Base58 rendering of every address."""
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class ClaimConfig:
    """
    Late-claim and refund state of a project.

    Only present when the program schema exposes these fields; proof
    claims and refunds stay unavailable without it.
    """
    merkle_root: Optional[bytes] = None
    late_claim_haircut_bps: int = 0
    migration_failed: bool = False

    @property
    def has_merkle_root(self) -> bool:
        return bool(self.merkle_root) and any(self.merkle_root)


@dataclass(frozen=True)
class ProjectView:
    """Client-side view of a project's on-chain configuration."""
    project_id: str
    network: Network
    old_token_mint: Pubkey
    new_token_mint: Pubkey
    receipt_mint: Pubkey
    old_token_decimals: int
    new_token_decimals: int
    receipt_decimals: int
    exchange_rate_bps: int
    phase: MigrationPhase
    paused: bool
    claims_enabled: bool
    start_ts: int
    end_ts: int
    addresses: ProjectAddresses
    claim_config: Optional[ClaimConfig] = None
    # Owning token programs of the mints; None means the standard token program
    old_token_program: Optional[Pubkey] = None
    new_token_program: Optional[Pubkey] = None

    def is_active(self) -> bool:
        """Accepting migrations right now."""
        return self.phase == MigrationPhase.ACTIVE_MIGRATION and not self.paused

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "project_id": self.project_id,
            "network": self.network.value,
            "old_token_mint": str(self.old_token_mint),
            "new_token_mint": str(self.new_token_mint),
            "receipt_mint": str(self.receipt_mint),
            "old_token_decimals": self.old_token_decimals,
            "new_token_decimals": self.new_token_decimals,
            "receipt_decimals": self.receipt_decimals,
            "exchange_rate_bps": self.exchange_rate_bps,
            "phase": self.phase.name,
            "paused": self.paused,
            "claims_enabled": self.claims_enabled,
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
            "addresses": self.addresses.to_dict(),
            "claim_config": {
                "merkle_root": self.claim_config.merkle_root.hex() if self.claim_config.merkle_root else None,
                "late_claim_haircut_bps": self.claim_config.late_claim_haircut_bps,
                "migration_failed": self.claim_config.migration_failed,
            } if self.claim_config else None,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balances of one user against one project, in base units."""
    native: int = 0
    old_token: int = 0
    new_token: int = 0
    receipt_token: int = 0

    def changed_fields(self, other: Optional["BalanceSnapshot"]) -> list[str]:
        """Names of fields that differ from another snapshot."""
        if other is None:
            return [f.name for f in fields(self)]
        return [f.name for f in fields(self) if getattr(self, f.name) != getattr(other, f.name)]

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ClaimEligibility:
    """Derived claim flags plus the balances that produced them."""
    can_claim_receipt: bool = False
    can_claim_proof: bool = False
    can_refund: bool = False
    has_old_tokens: bool = False
    has_receipt_tokens: bool = False
    receipt_balance: int = 0
    old_token_balance: int = 0


@dataclass(frozen=True)
class UserMigrationRecord:
    """Per-user on-chain migration record."""
    amount_migrated: int
    has_claimed_refund: bool
    migrated_at: int


@dataclass(frozen=True)
class ProjectEligibilitySummary:
    """One-line answer to "what can this user do with this project"."""
    is_migration_active: bool
    can_claim_receipt: bool
    can_claim_proof: bool
    can_refund: bool
    is_expired: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class RedirectIntent:
    """Routing hint for view layers."""
    action: str  # migrate, claim, refund, view
    target_route: str


@dataclass(frozen=True)
class ProjectInfoPage:
    """One page of a project listing."""
    projects: tuple[ProjectView, ...] = ()
    cursor: Optional[str] = None  # project id to resume after
    has_more: bool = False
