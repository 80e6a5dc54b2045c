"""
Migration SDK - Claim eligibility.

============================================================
RULES
============================================================
Every claim needs: phase in {GRACE_PERIOD, FINALIZED} and not paused.

RECEIPT  receipt token balance > 0
PROOF    claim config present, merkle root set, old token balance > 0
REFUND   claim config present, migration failed, and either receipt
         tokens > 0 or an unclaimed migration record with an amount

Priority when several apply: RECEIPT > PROOF > REFUND
============================================================
"""

import logging
from typing import Optional

from solders.pubkey import Pubkey

from migration_sdk.balances import BalanceLoader
from migration_sdk.models import (
    BalanceSnapshot,
    ClaimEligibility,
    ClaimType,
    MigrationPhase,
    Network,
    ProjectEligibilitySummary,
    ProjectView,
    RedirectIntent,
    UserMigrationRecord,
)
from migration_sdk.queries import MigrationQueries


logger = logging.getLogger(__name__)


CLAIM_PHASES = frozenset({MigrationPhase.GRACE_PERIOD, MigrationPhase.FINALIZED})


def compute_eligibility(
    project: ProjectView,
    balances: BalanceSnapshot,
    record: Optional[UserMigrationRecord] = None,
) -> ClaimEligibility:
    """Derive claim flags from a project view and the user's balances."""
    has_old_tokens = balances.old_token > 0
    has_receipt_tokens = balances.receipt_token > 0
    claim_window = project.phase in CLAIM_PHASES and not project.paused

    can_claim_receipt = claim_window and has_receipt_tokens

    can_claim_proof = False
    can_refund = False
    claim_config = project.claim_config
    if claim_window and claim_config is not None:
        can_claim_proof = claim_config.has_merkle_root and has_old_tokens
        has_unclaimed_record = (
            record is not None
            and record.amount_migrated > 0
            and not record.has_claimed_refund
        )
        can_refund = claim_config.migration_failed and (has_receipt_tokens or has_unclaimed_record)

    return ClaimEligibility(
        can_claim_receipt=can_claim_receipt,
        can_claim_proof=can_claim_proof,
        can_refund=can_refund,
        has_old_tokens=has_old_tokens,
        has_receipt_tokens=has_receipt_tokens,
        receipt_balance=balances.receipt_token,
        old_token_balance=balances.old_token,
    )


def best_claim_type(eligibility: ClaimEligibility) -> Optional[ClaimType]:
    """Highest-priority claim available, or None."""
    if eligibility.can_claim_receipt:
        return ClaimType.RECEIPT
    if eligibility.can_claim_proof:
        return ClaimType.PROOF
    if eligibility.can_refund:
        return ClaimType.REFUND
    return None


def summarize_eligibility(project: ProjectView, eligibility: ClaimEligibility) -> ProjectEligibilitySummary:
    """Collapse eligibility into a summary with a reason when nothing is possible."""
    is_migration_active = project.is_active() and eligibility.has_old_tokens
    any_claim = eligibility.can_claim_receipt or eligibility.can_claim_proof or eligibility.can_refund
    is_expired = project.phase == MigrationPhase.FINALIZED and not any_claim

    reason = None
    if not is_migration_active and not any_claim:
        if project.paused:
            reason = "Project is paused"
        elif project.phase == MigrationPhase.SETUP:
            reason = "Migration not started yet"
        elif project.phase == MigrationPhase.ACTIVE_MIGRATION and not eligibility.has_old_tokens:
            reason = "No old tokens to migrate"
        elif project.phase == MigrationPhase.GRACE_PERIOD and not eligibility.has_receipt_tokens:
            reason = "No receipt tokens to claim"
        elif is_expired:
            reason = "Project has expired - no claims available"
        else:
            reason = "No claim options available"

    return ProjectEligibilitySummary(
        is_migration_active=is_migration_active,
        can_claim_receipt=eligibility.can_claim_receipt,
        can_claim_proof=eligibility.can_claim_proof,
        can_refund=eligibility.can_refund,
        is_expired=is_expired,
        reason=reason,
    )


def redirect_intent(project: ProjectView, eligibility: ClaimEligibility) -> RedirectIntent:
    """Where a view layer should send the user for this project."""
    if project.is_active() and eligibility.has_old_tokens:
        return RedirectIntent(action="migrate", target_route=f"/migrate/{project.project_id}")

    claim_type = best_claim_type(eligibility)
    if claim_type in (ClaimType.RECEIPT, ClaimType.PROOF):
        return RedirectIntent(action="claim", target_route=f"/claim/{project.project_id}")
    if claim_type == ClaimType.REFUND:
        return RedirectIntent(action="refund", target_route=f"/refund/{project.project_id}")
    return RedirectIntent(action="view", target_route=f"/project/{project.project_id}")


class EligibilityEngine:
    """Loads what eligibility needs and evaluates it."""

    def __init__(self, balances: BalanceLoader, queries: MigrationQueries) -> None:
        self._balances = balances
        self._projects = balances.projects
        self._queries = queries

    async def compute_for_user(
        self,
        project_id: str,
        user: Optional[Pubkey],
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> ClaimEligibility:
        """Eligibility of `user`; with no user every flag is false."""
        if user is None:
            return ClaimEligibility()

        project = await self._projects.load(project_id, network, skip_cache=skip_cache)
        balances = await self._balances.get(project_id, user, network, project=project, skip_cache=skip_cache)

        record = None
        # the record only matters for refunds
        if project.claim_config is not None and project.claim_config.migration_failed:
            record = await self._queries.get_user_migration_record(user, project_id, network, skip_cache=skip_cache)

        return compute_eligibility(project, balances, record)

    async def check_project(
        self,
        project_id: str,
        user: Optional[Pubkey],
        network: Optional[Network] = None,
        skip_cache: bool = False,
    ) -> ProjectEligibilitySummary:
        project = await self._projects.load(project_id, network, skip_cache=skip_cache)
        eligibility = await self.compute_for_user(project_id, user, network, skip_cache)
        return summarize_eligibility(project, eligibility)
