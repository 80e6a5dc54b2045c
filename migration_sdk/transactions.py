"""
Migration SDK - Transaction building.

============================================================
RESPONSIBILITY
============================================================
Assembles UNSIGNED transactions for the four user operations:

    migrate        old tokens  -> receipt tokens
    claim_receipt  receipt     -> new tokens (no penalty)
    claim_proof    old tokens  -> new tokens with a merkle proof (haircut)
    refund         receipt / record -> old tokens (failed migration)

Every transaction is:
    [compute budget] + idempotent ATA creates + one program instruction

Signing and submission belong to the caller's wallet.
============================================================
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Union

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from migration_sdk.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    RENT_SYSVAR_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    derive_associated_token_address,
    derive_platform_config,
    derive_registry,
    derive_user_migration,
)
from migration_sdk.amounts import apply_penalty, convert_by_exchange_rate, rescale, validate_amount
from migration_sdk.clock import ClockProtocol, get_clock
from migration_sdk.codec import encode_instruction_data
from migration_sdk.config import SdkConfig, get_config
from migration_sdk.errors import PROGRAM_ERROR_MAP, extract_program_error_code, parse_error
from migration_sdk.exceptions import ErrorCode, MigrationSdkError, ValidationError
from migration_sdk.ledger.base import SimulationResult
from migration_sdk.models import Network, ProjectView
from migration_sdk.program import InstructionSchema, ProgramSchema
from migration_sdk.projects import ProjectStateLoader
from migration_sdk.queries import MigrationQueries


logger = logging.getLogger(__name__)


MERKLE_NODE_SIZE = 32
CREATE_IDEMPOTENT = bytes([1])


class TransactionKind(Enum):
    """User operations the builder can assemble."""
    MIGRATE = "migrate"
    CLAIM_RECEIPT = "claim_receipt"
    CLAIM_PROOF = "claim_proof"
    REFUND = "refund"


PROGRAM_INSTRUCTIONS = {
    TransactionKind.MIGRATE: "migrate",
    TransactionKind.CLAIM_RECEIPT: "claim_with_mft",
    TransactionKind.CLAIM_PROOF: "claim_with_merkle",
    TransactionKind.REFUND: "claim_refund",
}


@dataclass
class BuildOptions:
    """Per-transaction tuning. None falls back to the SDK config."""
    compute_unit_limit: Optional[int] = None
    compute_unit_price: Optional[int] = None
    include_compute_budget: bool = True


@dataclass(frozen=True)
class BuiltTransaction:
    """An unsigned transaction plus what it is expected to do."""
    transaction: Transaction
    kind: TransactionKind
    amount: int
    expected_amount: int
    blockhash: Hash
    last_valid_block_height: int
    penalty_bps: int = 0
    accounts: dict[str, Pubkey] = field(default_factory=dict)


def create_associated_token_account_idempotent(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    """Create `owner`'s associated token account for `mint` unless it exists."""
    ata = derive_associated_token_address(owner, mint, token_program)
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        CREATE_IDEMPOTENT,
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(ata, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(token_program, is_signer=False, is_writable=False),
        ],
    )


def _known_accounts(
    user: Pubkey,
    project: ProjectView,
    schema: ProgramSchema,
) -> dict[str, Pubkey]:
    """Every account the program instructions can ask for, by snake_case name."""
    program_id = schema.program_id
    old_program = project.old_token_program or TOKEN_PROGRAM_ID
    new_program = project.new_token_program or TOKEN_PROGRAM_ID
    pdas = project.addresses

    accounts = {
        "user": user,
        "payer": user,
        "authority": user,
        "project_config": pdas.project_config,
        "old_token_vault": pdas.old_token_vault,
        "new_token_vault": pdas.new_token_vault,
        "mft_mint": pdas.receipt_mint,
        "receipt_mint": pdas.receipt_mint,
        "project_wsol_vault": pdas.wsol_vault,
        "wsol_vault": pdas.wsol_vault,
        "quote_token_vault": pdas.quote_token_vault,
        "lp_vault": pdas.lp_vault,
        "user_migration": derive_user_migration(user, project.project_id, program_id)[0],
        "project_registry": derive_registry(program_id)[0],
        "platform_config": derive_platform_config(program_id)[0],
        "old_token_mint": project.old_token_mint,
        "new_token_mint": project.new_token_mint,
        "user_old_token_ata": derive_associated_token_address(user, project.old_token_mint, old_program),
        "user_new_token_ata": derive_associated_token_address(user, project.new_token_mint, new_program),
        "user_mft_ata": derive_associated_token_address(user, pdas.receipt_mint, TOKEN_PROGRAM_ID),
        "old_token_program": old_program,
        "new_token_program": new_program,
        "mft_token_program": TOKEN_PROGRAM_ID,
        "token_program": TOKEN_PROGRAM_ID,
        "token_2022_program": TOKEN_2022_PROGRAM_ID,
        "associated_token_program": ASSOCIATED_TOKEN_PROGRAM_ID,
        "system_program": SYSTEM_PROGRAM_ID,
        "rent": RENT_SYSVAR_ID,
    }
    accounts["user_receipt_ata"] = accounts["user_mft_ata"]
    return accounts


def resolve_instruction_accounts(
    instruction: InstructionSchema,
    known: dict[str, Pubkey],
    program_id: Pubkey,
) -> list[AccountMeta]:
    """
    Map an instruction's declared accounts to metas, in declaration order.

    Raises:
        MigrationSdkError: ACCOUNT_NOT_FOUND for a required account
            the SDK cannot resolve
    """
    metas = []
    for account in instruction.accounts:
        pubkey = account.address or known.get(account.name)
        if pubkey is None:
            if not account.optional:
                raise MigrationSdkError(
                    ErrorCode.ACCOUNT_NOT_FOUND,
                    f"Cannot resolve account {account.name!r} for instruction {instruction.name}",
                    context={"instruction": instruction.name, "account": account.name},
                )
            # omitted optional accounts are passed as the program id
            pubkey = program_id
        metas.append(AccountMeta(pubkey, is_signer=account.signer, is_writable=account.writable))
    return metas


class TransactionBuilder:
    """
    Builds unsigned migration and claim transactions.

    Usage:
        builder = TransactionBuilder(projects, queries)
        built = await builder.build_migrate(user, "my-project", 1_000_000_000)
        signed = wallet.sign(built.transaction)
    """

    def __init__(
        self,
        projects: ProjectStateLoader,
        queries: MigrationQueries,
        config: Optional[SdkConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._projects = projects
        self._queries = queries
        self._reader = projects.reader
        self._resolver = projects.resolver
        self._config = config or get_config()
        self._clock = clock or get_clock()

    async def build(
        self,
        kind: Union[TransactionKind, str],
        user: Pubkey,
        project_id: str,
        amount: Optional[int] = None,
        proof: Optional[Sequence[bytes]] = None,
        network: Optional[Network] = None,
        options: Optional[BuildOptions] = None,
    ) -> BuiltTransaction:
        """Dispatch to the builder for `kind`."""
        kind = TransactionKind(kind)
        if kind == TransactionKind.MIGRATE:
            return await self.build_migrate(user, project_id, amount, network, options)
        if kind == TransactionKind.CLAIM_RECEIPT:
            return await self.build_claim_receipt(user, project_id, amount, network, options)
        if kind == TransactionKind.CLAIM_PROOF:
            return await self.build_claim_proof(user, project_id, amount, proof or [], network, options)
        return await self.build_claim_refund(user, project_id, network, options)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def build_migrate(
        self,
        user: Pubkey,
        project_id: str,
        amount: int,
        network: Optional[Network] = None,
        options: Optional[BuildOptions] = None,
    ) -> BuiltTransaction:
        """Migrate `amount` old tokens (base units) into receipt tokens."""
        validate_amount(amount)
        project = await self._projects.load(project_id, network)

        self._require_not_paused(project, "migrations")
        now = self._clock.unix_seconds()
        if now < project.start_ts:
            raise MigrationSdkError(
                ErrorCode.WINDOW_CLOSED,
                f"Migration has not started yet (starts at {project.start_ts})",
                context={"project_id": project_id, "start_ts": project.start_ts},
            )
        if now >= project.end_ts:
            raise MigrationSdkError(
                ErrorCode.WINDOW_CLOSED,
                f"Migration window has ended (ended at {project.end_ts})",
                context={"project_id": project_id, "end_ts": project.end_ts},
            )

        expected = convert_by_exchange_rate(
            amount,
            project.exchange_rate_bps,
            project.old_token_decimals,
            project.receipt_decimals,
        )
        return await self._assemble(
            TransactionKind.MIGRATE,
            user,
            project,
            [project_id, amount],
            ("old", "receipt"),
            amount,
            expected,
            network,
            options,
        )

    async def build_claim_receipt(
        self,
        user: Pubkey,
        project_id: str,
        amount: int,
        network: Optional[Network] = None,
        options: Optional[BuildOptions] = None,
    ) -> BuiltTransaction:
        """Burn `amount` receipt tokens for new tokens."""
        validate_amount(amount)
        project = await self._projects.load(project_id, network)

        self._require_not_paused(project, "claims")
        if not project.claims_enabled:
            raise MigrationSdkError(
                ErrorCode.INVALID_PHASE,
                "Claims are not enabled yet for this project",
                context={"project_id": project_id, "phase": project.phase.name},
            )

        expected = rescale(amount, project.receipt_decimals, project.new_token_decimals)
        return await self._assemble(
            TransactionKind.CLAIM_RECEIPT,
            user,
            project,
            [project_id, amount],
            ("receipt", "new"),
            amount,
            expected,
            network,
            options,
        )

    async def build_claim_proof(
        self,
        user: Pubkey,
        project_id: str,
        amount: int,
        proof: Sequence[bytes],
        network: Optional[Network] = None,
        options: Optional[BuildOptions] = None,
    ) -> BuiltTransaction:
        """Late claim: swap old tokens for new ones with a merkle proof, minus the haircut."""
        validate_amount(amount)
        nodes = _validate_proof(proof)
        project = await self._projects.load(project_id, network)

        self._require_not_paused(project, "claims")
        claim_config = project.claim_config
        if claim_config is not None and not claim_config.has_merkle_root:
            raise MigrationSdkError(
                ErrorCode.INVALID_PHASE,
                "Late claims are not available: no merkle root is set for this project",
                context={"project_id": project_id},
            )

        penalty_bps = claim_config.late_claim_haircut_bps if claim_config else 0
        after_penalty = apply_penalty(amount, penalty_bps).remainder
        expected = rescale(after_penalty, project.old_token_decimals, project.new_token_decimals)
        return await self._assemble(
            TransactionKind.CLAIM_PROOF,
            user,
            project,
            [project_id, amount, nodes],
            ("old", "new"),
            amount,
            expected,
            network,
            options,
            penalty_bps=penalty_bps,
        )

    async def build_claim_refund(
        self,
        user: Pubkey,
        project_id: str,
        network: Optional[Network] = None,
        options: Optional[BuildOptions] = None,
    ) -> BuiltTransaction:
        """Refund a failed migration; the whole migrated amount comes back."""
        project = await self._projects.load(project_id, network)
        self._require_not_paused(project, "refunds")

        record = await self._queries.get_user_migration_record(user, project_id, network)
        if record is None:
            raise MigrationSdkError(
                ErrorCode.ACCOUNT_NOT_FOUND,
                "No migration record found for this wallet",
                context={"project_id": project_id, "user": str(user)},
            )

        expected = 0 if record.has_claimed_refund else record.amount_migrated
        return await self._assemble(
            TransactionKind.REFUND,
            user,
            project,
            [project_id],
            ("old", "receipt"),
            record.amount_migrated,
            expected,
            network,
            options,
        )

    async def simulate(self, transaction: Transaction) -> SimulationResult:
        """
        Simulate a built transaction.

        Raises:
            MigrationSdkError: SIMULATION_FAILED when the ledger rejects it
        """
        try:
            result = await self._reader.simulate_transaction(transaction)
        except MigrationSdkError:
            raise
        except Exception as e:
            raise parse_error(e, fallback=ErrorCode.RPC_ERROR)

        if result.succeeded:
            return result

        raw = {"err": result.err, "logs": result.logs}
        context = {"logs": result.logs, "err": result.err}
        message = f"Transaction simulation failed: {result.err}"
        number = extract_program_error_code(raw)
        info = PROGRAM_ERROR_MAP.get(number) if number is not None else None
        if info is not None:
            context.update({"program_error": info.name, "program_error_code": number})
            message = f"Transaction simulation failed: {info.user_message or info.message}"
        raise MigrationSdkError(ErrorCode.SIMULATION_FAILED, message, raw, context)

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _require_not_paused(self, project: ProjectView, what: str) -> None:
        if project.paused:
            raise MigrationSdkError(
                ErrorCode.PAUSED,
                f"Project is paused - {what} are temporarily disabled",
                context={"project_id": project.project_id},
            )

    async def _assemble(
        self,
        kind: TransactionKind,
        user: Pubkey,
        project: ProjectView,
        args: list,
        token_accounts: tuple[str, ...],
        amount: int,
        expected_amount: int,
        network: Optional[Network],
        options: Optional[BuildOptions],
        penalty_bps: int = 0,
    ) -> BuiltTransaction:
        try:
            schema = self._resolver.resolve(network)
            instruction_name = PROGRAM_INSTRUCTIONS[kind]
            ix_schema = schema.instruction(instruction_name)

            known = _known_accounts(user, project, schema)
            program_ix = Instruction(
                schema.program_id,
                encode_instruction_data(schema, instruction_name, args),
                resolve_instruction_accounts(ix_schema, known, schema.program_id),
            )

            instructions = self._compute_budget(options)
            instructions.extend(self._ata_creates(user, project, token_accounts))
            instructions.append(program_ix)

            recent = await self._reader.get_latest_blockhash()
            message = Message.new_with_blockhash(instructions, user, recent.blockhash)
            transaction = Transaction.new_unsigned(message)
        except MigrationSdkError:
            raise
        except Exception as e:
            raise parse_error(e, fallback_message=f"Failed to build {kind.value} transaction: {e}")

        accounts = {meta_name: known[meta_name] for meta_name in ix_schema.account_names() if meta_name in known}
        logger.debug(
            f"Built {kind.value} transaction for {project.project_id}: "
            f"amount={amount} expected={expected_amount}"
        )
        return BuiltTransaction(
            transaction=transaction,
            kind=kind,
            amount=amount,
            expected_amount=expected_amount,
            blockhash=recent.blockhash,
            last_valid_block_height=recent.last_valid_block_height,
            penalty_bps=penalty_bps,
            accounts=accounts,
        )

    def _compute_budget(self, options: Optional[BuildOptions]) -> list[Instruction]:
        options = options or BuildOptions()
        if not options.include_compute_budget:
            return []
        limit = options.compute_unit_limit
        if limit is None:
            limit = self._config.compute_unit_limit
        price = options.compute_unit_price
        if price is None:
            price = self._config.compute_unit_price
        return [set_compute_unit_limit(limit), set_compute_unit_price(price)]

    def _ata_creates(
        self,
        user: Pubkey,
        project: ProjectView,
        token_accounts: tuple[str, ...],
    ) -> list[Instruction]:
        mints = {
            "old": (project.old_token_mint, project.old_token_program or TOKEN_PROGRAM_ID),
            "new": (project.new_token_mint, project.new_token_program or TOKEN_PROGRAM_ID),
            "receipt": (project.receipt_mint, TOKEN_PROGRAM_ID),
        }
        return [
            create_associated_token_account_idempotent(user, user, *mints[which])
            for which in token_accounts
        ]


def _validate_proof(proof: Sequence[bytes]) -> list[bytes]:
    nodes = []
    for index, node in enumerate(proof):
        node_bytes = bytes(node)
        if len(node_bytes) != MERKLE_NODE_SIZE:
            raise ValidationError(
                f"Merkle proof node {index} is {len(node_bytes)} bytes (expected {MERKLE_NODE_SIZE})",
                field_name="proof",
                value=node_bytes.hex(),
            )
        nodes.append(node_bytes)
    return nodes
