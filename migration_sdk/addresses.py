"""
Program-derived address (PDA) derivation for the migration program.

Every address is a pure function of a fixed tag, the project id (and
for per-user records the user's key) and the program id. Nothing in this
module performs I/O.
"""

import functools
import logging
from typing import Sequence, Union

from solders.pubkey import Pubkey

from migration_sdk.exceptions import ErrorCode, ValidationError
from migration_sdk.models import ProjectAddresses


logger = logging.getLogger(__name__)


# Ledger limits: 16 seeds including the bump byte, 32 bytes per seed
MAX_SEEDS = 15
MAX_SEED_LENGTH = 32

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
RENT_SYSVAR_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")


class Seeds:
    """Seed tags used by the migration program."""
    PROJECT_CONFIG = b"project_config"
    OLD_TOKEN_VAULT = b"old_token_vault"
    NEW_TOKEN_VAULT = b"new_token_vault"
    PROJECT_WSOL_VAULT = b"project_wsol_vault"
    PROJECT_REGISTRY = b"project_registry"
    PLATFORM_CONFIG = b"platform_config"
    PLATFORM_FEE_VAULT = bytes([
        6, 221, 246, 225, 215, 101, 161, 147, 217, 203, 225, 70, 206, 235, 121, 172,
        28, 180, 133, 237, 95, 91, 55, 145, 58, 140, 245, 133, 126, 255, 0, 169,
    ])
    QUOTE_TOKEN_VAULT = b"quote_token_vault"
    LP_VAULT = b"lp_vault"
    RECEIPT_MINT = b"mft_mint"
    USER_MIGRATION = b"user_migration"


def parse_address(value: Union[str, Pubkey]) -> Pubkey:
    """Parse a base58 address, raising INVALID_ADDRESS on bad input."""
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(
            f"Invalid public key: {value!r}",
            code=ErrorCode.INVALID_ADDRESS,
            field_name="address",
            value=value,
            original_error=e,
        )


def validate_seeds(seeds: Sequence[bytes]) -> None:
    """Reject seed lists the ledger would refuse, before hashing anything."""
    if len(seeds) > MAX_SEEDS:
        raise ValidationError(
            f"Too many seeds: {len(seeds)} (max {MAX_SEEDS})",
            code=ErrorCode.INVALID_ADDRESS,
            field_name="seeds",
        )
    for index, seed in enumerate(seeds):
        if len(seed) > MAX_SEED_LENGTH:
            raise ValidationError(
                f"Seed {index} is {len(seed)} bytes (max {MAX_SEED_LENGTH})",
                code=ErrorCode.INVALID_ADDRESS,
                field_name="seeds",
                value=bytes(seed),
            )


def derive_address(seeds: Sequence[bytes], program_id: Pubkey) -> tuple[Pubkey, int]:
    """
    Derive a program address and its bump seed.

    Args:
        seeds: Ordered seed byte strings
        program_id: Owning program

    Returns:
        (address, bump) - identical for identical inputs

    Raises:
        ValidationError: If the seeds exceed ledger limits
    """
    seed_bytes = [bytes(seed) for seed in seeds]
    validate_seeds(seed_bytes)
    return Pubkey.find_program_address(seed_bytes, program_id)


def _project_seed(project_id: str) -> bytes:
    if not project_id:
        raise ValidationError(
            "Project id must not be empty",
            code=ErrorCode.INVALID_ADDRESS,
            field_name="project_id",
        )
    return project_id.encode("utf-8")


def derive_project_config(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.PROJECT_CONFIG, _project_seed(project_id)], program_id)


def derive_old_token_vault(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.OLD_TOKEN_VAULT, _project_seed(project_id)], program_id)


def derive_new_token_vault(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.NEW_TOKEN_VAULT, _project_seed(project_id)], program_id)


def derive_wsol_vault(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.PROJECT_WSOL_VAULT, _project_seed(project_id)], program_id)


def derive_quote_token_vault(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.QUOTE_TOKEN_VAULT, _project_seed(project_id)], program_id)


def derive_receipt_mint(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    """Receipt token (MFT) mint, minted to users as they migrate."""
    return derive_address([Seeds.RECEIPT_MINT, _project_seed(project_id)], program_id)


def derive_lp_vault(project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.LP_VAULT, _project_seed(project_id)], program_id)


def derive_user_migration(user: Pubkey, project_id: str, program_id: Pubkey) -> tuple[Pubkey, int]:
    """Per-user migration record of one project."""
    return derive_address(
        [Seeds.USER_MIGRATION, _project_seed(project_id), bytes(user)],
        program_id,
    )


def derive_registry(program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.PROJECT_REGISTRY], program_id)


def derive_platform_config(program_id: Pubkey) -> tuple[Pubkey, int]:
    return derive_address([Seeds.PLATFORM_CONFIG], program_id)


def derive_platform_fee_vault(
    platform_config: Pubkey,
    quote_token_mint: Pubkey,
    program_id: Pubkey,
) -> tuple[Pubkey, int]:
    """Platform fee vault for one quote token."""
    return derive_address(
        [bytes(platform_config), Seeds.PLATFORM_FEE_VAULT, bytes(quote_token_mint)],
        program_id,
    )


def derive_associated_token_address(
    owner: Pubkey,
    mint: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Pubkey:
    """Associated token account of `owner` for `mint`."""
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


@functools.lru_cache(maxsize=256)
def derive_project_addresses(project_id: str, program_id: Pubkey) -> ProjectAddresses:
    """
    Derive every per-project address in one call.

    Results are memoized per (project_id, program_id).
    """
    return ProjectAddresses(
        project_config=derive_project_config(project_id, program_id)[0],
        old_token_vault=derive_old_token_vault(project_id, program_id)[0],
        new_token_vault=derive_new_token_vault(project_id, program_id)[0],
        receipt_mint=derive_receipt_mint(project_id, program_id)[0],
        wsol_vault=derive_wsol_vault(project_id, program_id)[0],
        quote_token_vault=derive_quote_token_vault(project_id, program_id)[0],
        lp_vault=derive_lp_vault(project_id, program_id)[0],
    )
