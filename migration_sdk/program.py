"""
Migration SDK - Program resolution and IDL handling.

============================================================
RESPONSIBILITY
============================================================
Turns an injected IDL (one per network) into a ProgramSchema the codec
and the transaction builder can query:
- program id (IDL address, or an explicit override)
- account layouts and discriminators
- instruction account lists, args and discriminators

Both IDL shapes are accepted:
- legacy:  isMut / isSigner flags, camelCase names, metadata.address
- current: writable / signer flags, snake_case names, top-level address

All names are normalized to snake_case, except account and type names,
which keep their declared casing and are matched case-insensitively.
============================================================
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from solders.pubkey import Pubkey

from migration_sdk.config import resolve_network
from migration_sdk.exceptions import SchemaError
from migration_sdk.models import Network


logger = logging.getLogger(__name__)


DISCRIMINATOR_SIZE = 8

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def to_snake_case(name: str) -> str:
    """claimWithMft -> claim_with_mft; already snake_case names pass through."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator: sha256("global:<snake_name>")[:8]."""
    return hashlib.sha256(f"global:{to_snake_case(name)}".encode()).digest()[:DISCRIMINATOR_SIZE]


def account_discriminator(name: str) -> bytes:
    """Anchor account discriminator: sha256("account:<Name>")[:8]."""
    return hashlib.sha256(f"account:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


@dataclass(frozen=True)
class InstructionAccount:
    """One account slot of an instruction, in declaration order."""
    name: str
    writable: bool = False
    signer: bool = False
    optional: bool = False
    address: Optional[Pubkey] = None  # fixed address declared by the IDL


@dataclass(frozen=True)
class InstructionSchema:
    name: str
    discriminator: bytes
    accounts: tuple[InstructionAccount, ...]
    args: tuple[tuple[str, Any], ...]

    def account_names(self) -> list[str]:
        return [account.name for account in self.accounts]


@dataclass
class ProgramSchema:
    """Queryable view of one normalized IDL."""
    program_id: Pubkey
    idl: dict[str, Any]
    network: Optional[Network] = None
    _types: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False)
    _accounts: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False)
    _instructions: dict[str, InstructionSchema] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        for type_def in self.idl.get("types") or []:
            if type_def.get("name"):
                self._types[type_def["name"].lower()] = type_def
        for account in self.idl.get("accounts") or []:
            if account.get("name"):
                self._accounts[account["name"].lower()] = account
        for ix in self.idl.get("instructions") or []:
            parsed = _parse_instruction(ix)
            self._instructions[parsed.name] = parsed

    # ------------------------------------------------------------------
    # Types and accounts
    # ------------------------------------------------------------------

    def type_definition(self, name: str) -> dict[str, Any]:
        """Type body ({"kind": ..., ...}) of a defined type or account."""
        type_def = self._types.get(name.lower()) or self._accounts.get(name.lower())
        if not type_def or "type" not in type_def:
            raise SchemaError(f"Type {name!r} is not defined in the program IDL", type_name=name)
        return type_def["type"]

    def has_account(self, name: str) -> bool:
        return name.lower() in self._accounts

    def account_name(self, name: str) -> str:
        """Declared casing of an account name."""
        account = self._accounts.get(name.lower())
        if account is None:
            raise SchemaError(f"Account {name!r} is not defined in the program IDL", type_name=name)
        return account["name"]

    def account_layout(self, name: str) -> list[dict[str, Any]]:
        """Field list of an account struct."""
        body = self.type_definition(self.account_name(name))
        if body.get("kind") != "struct":
            raise SchemaError(f"Account {name!r} is not a struct", type_name=name)
        return list(body.get("fields") or [])

    def account_discriminator(self, name: str) -> bytes:
        account = self._accounts.get(name.lower())
        if account is None:
            raise SchemaError(f"Account {name!r} is not defined in the program IDL", type_name=name)
        if account.get("discriminator"):
            return bytes(account["discriminator"])
        return account_discriminator(account["name"])

    # ------------------------------------------------------------------
    # Instructions
    # ------------------------------------------------------------------

    def instruction(self, name: str) -> InstructionSchema:
        schema = self._instructions.get(to_snake_case(name))
        if schema is None:
            raise SchemaError(f"Instruction {name!r} is not defined in the program IDL", type_name=name)
        return schema

    def has_instruction(self, name: str) -> bool:
        return to_snake_case(name) in self._instructions

    def instruction_discriminator(self, name: str) -> bytes:
        return self.instruction(name).discriminator


def _flatten_accounts(entries: list[dict[str, Any]]) -> list[InstructionAccount]:
    flattened: list[InstructionAccount] = []
    for entry in entries:
        # composite account groups nest their members
        if "accounts" in entry:
            flattened.extend(_flatten_accounts(entry["accounts"]))
            continue
        address = entry.get("address")
        flattened.append(
            InstructionAccount(
                name=to_snake_case(entry["name"]),
                writable=bool(entry.get("writable", entry.get("isMut", False))),
                signer=bool(entry.get("signer", entry.get("isSigner", False))),
                optional=bool(entry.get("optional", entry.get("isOptional", False))),
                address=Pubkey.from_string(address) if address else None,
            )
        )
    return flattened


def _parse_instruction(ix: dict[str, Any]) -> InstructionSchema:
    name = to_snake_case(ix["name"])
    discriminator = bytes(ix["discriminator"]) if ix.get("discriminator") else instruction_discriminator(name)
    return InstructionSchema(
        name=name,
        discriminator=discriminator,
        accounts=tuple(_flatten_accounts(ix.get("accounts") or [])),
        args=tuple((to_snake_case(arg["name"]), arg["type"]) for arg in ix.get("args") or []),
    )


def normalize_idl_accounts(idl: dict[str, Any]) -> dict[str, Any]:
    """
    Fill in missing account type bodies from the `types` section.

    Current-format IDLs declare account layouts only under `types`;
    legacy ones inline them. Returns a new dict when anything changed.
    """
    accounts = idl.get("accounts")
    types = idl.get("types")
    if not isinstance(accounts, list) or not isinstance(types, list):
        return idl

    type_map = {t["name"].lower(): t for t in types if t.get("name")}
    changed = False
    normalized = []
    for account in accounts:
        if account.get("type"):
            normalized.append(account)
            continue
        type_def = type_map.get(account.get("name", "").lower())
        if not type_def or not type_def.get("type"):
            normalized.append(account)
            continue
        changed = True
        normalized.append({**account, "type": type_def["type"], "docs": account.get("docs", type_def.get("docs"))})

    if not changed:
        return idl
    return {**idl, "accounts": normalized}


def _idl_address(idl: dict[str, Any]) -> Optional[str]:
    return idl.get("address") or (idl.get("metadata") or {}).get("address")


class ProgramResolver:
    """
    Resolves the program schema for a network.

    Usage:
        resolver = ProgramResolver({Network.DEVNET: devnet_idl})
        schema = resolver.resolve(Network.DEVNET)
        schema.instruction("migrate")
    """

    def __init__(
        self,
        idls: dict[Network, dict[str, Any]],
        program_override: Optional[str] = None,
        default_network: Optional[Network] = None,
    ) -> None:
        self._idls = dict(idls)
        self._program_override = program_override.strip() if program_override else None
        self._default_network = default_network
        self._schemas: dict[Network, ProgramSchema] = {}

    @property
    def networks(self) -> list[Network]:
        return list(self._idls)

    def resolve(self, network: Optional[Network] = None) -> ProgramSchema:
        """
        Get the (cached) schema for a network.

        Raises:
            SchemaError: If no IDL was registered for the network or it
                carries no program address
        """
        target = network or self._default_network or resolve_network()
        cached = self._schemas.get(target)
        if cached is not None:
            return cached

        idl = self._idls.get(target)
        if idl is None:
            raise SchemaError(f"No program IDL registered for {target.value}")

        address = self._program_override or _idl_address(idl)
        if not address:
            raise SchemaError(f"Program IDL for {target.value} has no address")

        try:
            program_id = Pubkey.from_string(address)
        except ValueError as e:
            raise SchemaError(f"Invalid program address {address!r}", original_error=e)

        schema = ProgramSchema(program_id=program_id, idl=normalize_idl_accounts(idl), network=target)
        self._schemas[target] = schema
        logger.debug(f"Resolved migration program {program_id} for {target.value}")
        return schema

    def program_id(self, network: Optional[Network] = None) -> Pubkey:
        return self.resolve(network).program_id

    def reset(self) -> None:
        """Drop cached schemas (e.g. after changing the override)."""
        self._schemas.clear()
