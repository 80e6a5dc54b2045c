"""
Tests for claim eligibility.

============================================================
PURPOSE
============================================================
Claims open only in GRACE_PERIOD or FINALIZED and never while paused.
Receipt claims beat proof claims, which beat refunds. Proof claims and
refunds need a claim config.

============================================================
"""

from typing import Optional

import pytest

from migration_sdk.addresses import derive_project_addresses
from migration_sdk.eligibility import (
    EligibilityEngine,
    best_claim_type,
    compute_eligibility,
    redirect_intent,
    summarize_eligibility,
)
from migration_sdk.models import (
    BalanceSnapshot,
    ClaimConfig,
    ClaimEligibility,
    ClaimType,
    MigrationPhase,
    Network,
    ProjectView,
    UserMigrationRecord,
)

from tests.fakes import END_TS, NEW_MINT, NOW, OLD_MINT, PROGRAM_ID, PROJECT_ID, START_TS, USER


# ============================================================
# FIXTURES
# ============================================================

def make_project(
    phase: MigrationPhase = MigrationPhase.GRACE_PERIOD,
    paused: bool = False,
    claim_config: Optional[ClaimConfig] = None,
) -> ProjectView:
    addresses = derive_project_addresses(PROJECT_ID, PROGRAM_ID)
    return ProjectView(
        project_id=PROJECT_ID,
        network=Network.DEVNET,
        old_token_mint=OLD_MINT,
        new_token_mint=NEW_MINT,
        receipt_mint=addresses.receipt_mint,
        old_token_decimals=9,
        new_token_decimals=9,
        receipt_decimals=9,
        exchange_rate_bps=10_000,
        phase=phase,
        paused=paused,
        claims_enabled=phase == MigrationPhase.GRACE_PERIOD,
        start_ts=START_TS,
        end_ts=END_TS,
        addresses=addresses,
        claim_config=claim_config,
    )


MERKLE = ClaimConfig(merkle_root=bytes([1] * 32), late_claim_haircut_bps=500)
FAILED = ClaimConfig(migration_failed=True)


# ============================================================
# RULES
# ============================================================

class TestComputeEligibility:
    """Test the pure eligibility rules."""

    def test_receipt_claim_in_grace_period(self):
        eligibility = compute_eligibility(make_project(), BalanceSnapshot(receipt_token=5))

        assert eligibility.can_claim_receipt
        assert eligibility.has_receipt_tokens
        assert eligibility.receipt_balance == 5

    @pytest.mark.parametrize("phase", [MigrationPhase.SETUP, MigrationPhase.ACTIVE_MIGRATION])
    def test_no_claims_before_grace(self, phase):
        """Test claims are closed during setup and active migration."""
        project = make_project(phase=phase, claim_config=MERKLE)
        eligibility = compute_eligibility(project, BalanceSnapshot(old_token=5, receipt_token=5))

        assert not eligibility.can_claim_receipt
        assert not eligibility.can_claim_proof
        assert not eligibility.can_refund
        assert eligibility.has_old_tokens

    def test_paused_blocks_everything(self):
        project = make_project(paused=True, claim_config=MERKLE)
        eligibility = compute_eligibility(project, BalanceSnapshot(old_token=5, receipt_token=5))

        assert best_claim_type(eligibility) is None

    def test_finalized_allows_claims(self):
        project = make_project(phase=MigrationPhase.FINALIZED)
        assert compute_eligibility(project, BalanceSnapshot(receipt_token=1)).can_claim_receipt

    def test_proof_claim_needs_merkle_root(self):
        """Test a proof claim requires a non-zero merkle root and old tokens."""
        balances = BalanceSnapshot(old_token=5)

        assert compute_eligibility(make_project(claim_config=MERKLE), balances).can_claim_proof
        assert not compute_eligibility(make_project(claim_config=ClaimConfig()), balances).can_claim_proof
        zero_root = ClaimConfig(merkle_root=bytes(32))
        assert not compute_eligibility(make_project(claim_config=zero_root), balances).can_claim_proof
        assert not compute_eligibility(make_project(claim_config=MERKLE), BalanceSnapshot()).can_claim_proof

    def test_no_claim_config_disables_proof_and_refund(self):
        """Test projects without a claim config offer neither proof claims nor refunds."""
        eligibility = compute_eligibility(
            make_project(claim_config=None),
            BalanceSnapshot(old_token=5, receipt_token=5),
            UserMigrationRecord(amount_migrated=5, has_claimed_refund=False, migrated_at=NOW),
        )

        assert eligibility.can_claim_receipt
        assert not eligibility.can_claim_proof
        assert not eligibility.can_refund

    def test_refund_with_receipt_tokens(self):
        eligibility = compute_eligibility(make_project(claim_config=FAILED), BalanceSnapshot(receipt_token=3))
        assert eligibility.can_refund

    def test_refund_with_unclaimed_record(self):
        """Test an unclaimed migration record makes a refund available."""
        record = UserMigrationRecord(amount_migrated=10, has_claimed_refund=False, migrated_at=NOW)
        eligibility = compute_eligibility(make_project(claim_config=FAILED), BalanceSnapshot(), record)

        assert eligibility.can_refund
        assert best_claim_type(eligibility) == ClaimType.REFUND

    def test_no_refund_when_already_claimed(self):
        record = UserMigrationRecord(amount_migrated=10, has_claimed_refund=True, migrated_at=NOW)
        eligibility = compute_eligibility(make_project(claim_config=FAILED), BalanceSnapshot(), record)

        assert not eligibility.can_refund

    def test_no_refund_unless_failed(self):
        record = UserMigrationRecord(amount_migrated=10, has_claimed_refund=False, migrated_at=NOW)
        eligibility = compute_eligibility(make_project(claim_config=MERKLE), BalanceSnapshot(), record)

        assert not eligibility.can_refund


class TestBestClaimType:
    """Test claim priority."""

    def test_receipt_first(self):
        eligibility = ClaimEligibility(can_claim_receipt=True, can_claim_proof=True, can_refund=True)
        assert best_claim_type(eligibility) == ClaimType.RECEIPT

    def test_proof_before_refund(self):
        eligibility = ClaimEligibility(can_claim_proof=True, can_refund=True)
        assert best_claim_type(eligibility) == ClaimType.PROOF

    def test_none(self):
        assert best_claim_type(ClaimEligibility()) is None


# ============================================================
# SUMMARIES
# ============================================================

class TestSummaries:
    """Test summaries and redirect intents."""

    def test_active_with_old_tokens(self):
        project = make_project(phase=MigrationPhase.ACTIVE_MIGRATION)
        eligibility = compute_eligibility(project, BalanceSnapshot(old_token=1))

        summary = summarize_eligibility(project, eligibility)

        assert summary.is_migration_active
        assert summary.reason is None
        assert redirect_intent(project, eligibility).target_route == f"/migrate/{PROJECT_ID}"

    @pytest.mark.parametrize("phase,paused,balances,reason", [
        (MigrationPhase.SETUP, False, BalanceSnapshot(), "Migration not started yet"),
        (MigrationPhase.ACTIVE_MIGRATION, False, BalanceSnapshot(), "No old tokens to migrate"),
        (MigrationPhase.GRACE_PERIOD, False, BalanceSnapshot(), "No receipt tokens to claim"),
        (MigrationPhase.FINALIZED, False, BalanceSnapshot(), "Project has expired - no claims available"),
        (MigrationPhase.GRACE_PERIOD, True, BalanceSnapshot(receipt_token=1), "Project is paused"),
    ])
    def test_reasons(self, phase, paused, balances, reason):
        project = make_project(phase=phase, paused=paused)
        summary = summarize_eligibility(project, compute_eligibility(project, balances))

        assert summary.reason == reason

    def test_expired_flag(self):
        project = make_project(phase=MigrationPhase.FINALIZED)
        summary = summarize_eligibility(project, compute_eligibility(project, BalanceSnapshot()))
        assert summary.is_expired

    @pytest.mark.parametrize("claim_config,balances,action", [
        (None, BalanceSnapshot(receipt_token=1), "claim"),
        (MERKLE, BalanceSnapshot(old_token=1), "claim"),
        (FAILED, BalanceSnapshot(receipt_token=0), "view"),
    ])
    def test_redirects(self, claim_config, balances, action):
        project = make_project(claim_config=claim_config)
        intent = redirect_intent(project, compute_eligibility(project, balances))

        assert intent.action == action

    def test_refund_redirect(self):
        project = make_project(claim_config=FAILED)
        record = UserMigrationRecord(amount_migrated=1, has_claimed_refund=False, migrated_at=NOW)
        intent = redirect_intent(project, compute_eligibility(project, BalanceSnapshot(), record))

        assert intent.target_route == f"/refund/{PROJECT_ID}"


# ============================================================
# ENGINE
# ============================================================

class TestEligibilityEngine:
    """Test eligibility loaded from the ledger."""

    @pytest.fixture
    def engine(self, balances, queries):
        return EligibilityEngine(balances, queries)

    @pytest.mark.asyncio
    async def test_no_user(self, engine):
        """Test an absent wallet yields no eligibility and no reads."""
        assert await engine.compute_for_user(PROJECT_ID, None) == ClaimEligibility()

    @pytest.mark.asyncio
    async def test_receipt_claim(self, engine, install_project, projects, fund, clock):
        install_project(claims_enabled=True)
        project = await projects.load(PROJECT_ID)
        fund(USER, project.receipt_mint, 50)
        clock.advance(END_TS - NOW)

        eligibility = await engine.compute_for_user(PROJECT_ID, USER, skip_cache=True)

        assert eligibility.can_claim_receipt
        assert eligibility.receipt_balance == 50

    @pytest.mark.asyncio
    async def test_refund_reads_record(self, engine, install_project, install_user_migration, clock):
        """Test failed migrations consult the user's migration record."""
        install_project(claims_enabled=True, migration_failed=True)
        install_user_migration(USER, 40)
        clock.advance(END_TS - NOW + 1)

        eligibility = await engine.compute_for_user(PROJECT_ID, USER)

        assert eligibility.can_refund

    @pytest.mark.asyncio
    async def test_record_not_read_without_failure(self, engine, install_project, reader):
        install_project(claims_enabled=True)

        await engine.compute_for_user(PROJECT_ID, USER)

        # one read for the project config, none for the user record
        assert reader.count("get_account_info") == 1

    @pytest.mark.asyncio
    async def test_check_project(self, engine, install_project, fund):
        install_project()
        fund(USER, OLD_MINT, 1)

        summary = await engine.check_project(PROJECT_ID, USER)

        assert summary.is_migration_active
        assert summary.reason is None

    @pytest.mark.asyncio
    async def test_check_project_without_user(self, engine, install_project):
        install_project()

        summary = await engine.check_project(PROJECT_ID, None)

        assert not summary.is_migration_active
        assert summary.reason == "No old tokens to migrate"
