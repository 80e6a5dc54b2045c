"""
Migration SDK - Borsh codec over IDL types, and typed record decoders.

Supported IDL types:
- bool, u8..u128, i8..i128, f32, f64
- string, bytes, pubkey / publicKey
- {"option": T}, {"vec": T}, {"array": [T, N]}
- {"defined": "Name"} / {"defined": {"name": "Name"}} for structs and enums

Decoded struct fields are keyed by snake_case name. Enums decode to the
variant name for unit variants and to {"Variant": value} otherwise.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Any, Optional, Union

from solders.pubkey import Pubkey

from migration_sdk.exceptions import SchemaError
from migration_sdk.models import ClaimConfig, UserMigrationRecord
from migration_sdk.program import DISCRIMINATOR_SIZE, ProgramSchema, to_snake_case


logger = logging.getLogger(__name__)


_INTEGER_SIZES = {
    "u8": (1, False), "u16": (2, False), "u32": (4, False), "u64": (8, False), "u128": (16, False),
    "i8": (1, True), "i16": (2, True), "i32": (4, True), "i64": (8, True), "i128": (16, True),
}
_FLOAT_FORMATS = {"f32": "<f", "f64": "<d"}


def _defined_name(type_spec: dict[str, Any]) -> str:
    defined = type_spec["defined"]
    return defined["name"] if isinstance(defined, dict) else defined


def _struct_field_value(value: Any, name: str) -> Any:
    if not isinstance(value, dict):
        raise SchemaError(f"Expected a mapping for struct with field {name!r}", type_name=name)
    snake = to_snake_case(name)
    if snake in value:
        return value[snake]
    if name in value:
        return value[name]
    raise SchemaError(f"Missing field {name!r}", type_name=name)


class BorshReader:
    """Sequential Borsh decoder over a byte buffer."""

    def __init__(self, data: bytes, schema: Optional[ProgramSchema] = None) -> None:
        self._data = bytes(data)
        self._offset = 0
        self._schema = schema

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int) -> bytes:
        if self._offset + size > len(self._data):
            raise SchemaError(
                f"Account data truncated: need {size} bytes at offset {self._offset}, "
                f"have {self.remaining}"
            )
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def read(self, type_spec: Any) -> Any:
        if isinstance(type_spec, str):
            return self._read_primitive(type_spec)

        if "option" in type_spec:
            flag = self._take(1)[0]
            return self.read(type_spec["option"]) if flag else None
        if "vec" in type_spec:
            length = int.from_bytes(self._take(4), "little")
            return [self.read(type_spec["vec"]) for _ in range(length)]
        if "array" in type_spec:
            inner, length = type_spec["array"]
            if inner == "u8":
                return self._take(length)
            return [self.read(inner) for _ in range(length)]
        if "defined" in type_spec:
            return self.read_defined(_defined_name(type_spec))

        raise SchemaError(f"Unsupported IDL type {type_spec!r}")

    def _read_primitive(self, name: str) -> Any:
        if name in _INTEGER_SIZES:
            size, signed = _INTEGER_SIZES[name]
            return int.from_bytes(self._take(size), "little", signed=signed)
        if name == "bool":
            return self._take(1)[0] != 0
        if name in ("pubkey", "publicKey"):
            return Pubkey.from_bytes(self._take(32))
        if name == "string":
            length = int.from_bytes(self._take(4), "little")
            raw = self._take(length)
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise SchemaError("Invalid UTF-8 in string field", original_error=e)
        if name == "bytes":
            length = int.from_bytes(self._take(4), "little")
            return self._take(length)
        if name in _FLOAT_FORMATS:
            fmt = _FLOAT_FORMATS[name]
            return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]
        raise SchemaError(f"Unsupported IDL type {name!r}", type_name=name)

    def read_defined(self, name: str) -> Any:
        if self._schema is None:
            raise SchemaError(f"Cannot decode defined type {name!r} without a program schema", type_name=name)
        body = self._schema.type_definition(name)
        kind = body.get("kind")
        if kind == "struct":
            return self.read_fields(body.get("fields") or [])
        if kind == "enum":
            variants = body.get("variants") or []
            index = self._take(1)[0]
            if index >= len(variants):
                raise SchemaError(f"Invalid variant index {index} for enum {name!r}", type_name=name)
            variant = variants[index]
            if not variant.get("fields"):
                return variant["name"]
            return {variant["name"]: self.read_fields(variant["fields"])}
        raise SchemaError(f"Unsupported type kind {kind!r} for {name!r}", type_name=name)

    def read_fields(self, fields: list[Any]) -> Union[dict[str, Any], list[Any]]:
        # tuple structs declare bare types instead of named fields
        if fields and (not isinstance(fields[0], dict) or "name" not in fields[0]):
            return [self.read(f) for f in fields]
        return {to_snake_case(f["name"]): self.read(f["type"]) for f in fields}


class BorshWriter:
    """Borsh encoder; mirrors BorshReader."""

    def __init__(self, schema: Optional[ProgramSchema] = None) -> None:
        self._buffer = bytearray()
        self._schema = schema

    def getvalue(self) -> bytes:
        return bytes(self._buffer)

    def write(self, type_spec: Any, value: Any) -> None:
        if isinstance(type_spec, str):
            self._write_primitive(type_spec, value)
            return

        if "option" in type_spec:
            if value is None:
                self._buffer.append(0)
            else:
                self._buffer.append(1)
                self.write(type_spec["option"], value)
            return
        if "vec" in type_spec:
            items = list(value)
            self._buffer += len(items).to_bytes(4, "little")
            for item in items:
                self.write(type_spec["vec"], item)
            return
        if "array" in type_spec:
            inner, length = type_spec["array"]
            items = bytes(value) if inner == "u8" else list(value)
            if len(items) != length:
                raise SchemaError(f"Expected array of length {length}, got {len(items)}")
            if inner == "u8":
                self._buffer += items
            else:
                for item in items:
                    self.write(inner, item)
            return
        if "defined" in type_spec:
            self.write_defined(_defined_name(type_spec), value)
            return

        raise SchemaError(f"Unsupported IDL type {type_spec!r}")

    def _write_primitive(self, name: str, value: Any) -> None:
        if name in _INTEGER_SIZES:
            size, signed = _INTEGER_SIZES[name]
            try:
                self._buffer += int(value).to_bytes(size, "little", signed=signed)
            except OverflowError as e:
                raise SchemaError(f"Value {value} does not fit in {name}", type_name=name, original_error=e)
            return
        if name == "bool":
            self._buffer.append(1 if value else 0)
            return
        if name in ("pubkey", "publicKey"):
            key = value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))
            self._buffer += bytes(key)
            return
        if name == "string":
            raw = str(value).encode("utf-8")
            self._buffer += len(raw).to_bytes(4, "little") + raw
            return
        if name == "bytes":
            raw = bytes(value)
            self._buffer += len(raw).to_bytes(4, "little") + raw
            return
        if name in _FLOAT_FORMATS:
            self._buffer += struct.pack(_FLOAT_FORMATS[name], value)
            return
        raise SchemaError(f"Unsupported IDL type {name!r}", type_name=name)

    def write_defined(self, name: str, value: Any) -> None:
        if self._schema is None:
            raise SchemaError(f"Cannot encode defined type {name!r} without a program schema", type_name=name)
        body = self._schema.type_definition(name)
        kind = body.get("kind")
        if kind == "struct":
            self.write_fields(body.get("fields") or [], value)
            return
        if kind == "enum":
            variants = body.get("variants") or []
            variant_name, payload = (value, None) if isinstance(value, str) else next(iter(value.items()))
            for index, variant in enumerate(variants):
                if variant["name"].lower() == str(variant_name).lower():
                    self._buffer.append(index)
                    if variant.get("fields"):
                        self.write_fields(variant["fields"], payload)
                    return
            raise SchemaError(f"Unknown variant {variant_name!r} of enum {name!r}", type_name=name)
        raise SchemaError(f"Unsupported type kind {kind!r} for {name!r}", type_name=name)

    def write_fields(self, fields: list[Any], value: Any) -> None:
        if fields and (not isinstance(fields[0], dict) or "name" not in fields[0]):
            for type_spec, item in zip(fields, value):
                self.write(type_spec, item)
            return
        for f in fields:
            self.write(f["type"], _struct_field_value(value, f["name"]))


# ============================================================
# ACCOUNTS AND INSTRUCTIONS
# ============================================================

def decode_account(schema: ProgramSchema, name: str, data: bytes) -> dict[str, Any]:
    """
    Decode raw account data into a field dict.

    Raises:
        SchemaError: If the discriminator does not match or data is short
    """
    expected = schema.account_discriminator(name)
    if bytes(data[:DISCRIMINATOR_SIZE]) != expected:
        raise SchemaError(f"Account discriminator mismatch for {name!r}", type_name=name)
    reader = BorshReader(data[DISCRIMINATOR_SIZE:], schema)
    return reader.read_fields(schema.account_layout(name))


def encode_account(schema: ProgramSchema, name: str, fields: dict[str, Any]) -> bytes:
    """Discriminator followed by the Borsh-encoded account fields."""
    writer = BorshWriter(schema)
    writer.write_fields(schema.account_layout(name), fields)
    return schema.account_discriminator(name) + writer.getvalue()


def encode_instruction_data(
    schema: ProgramSchema,
    name: str,
    args: Union[dict[str, Any], list[Any], tuple],
) -> bytes:
    """Discriminator followed by the Borsh-encoded instruction args."""
    instruction = schema.instruction(name)
    writer = BorshWriter(schema)
    if isinstance(args, dict):
        for arg_name, type_spec in instruction.args:
            if arg_name not in args:
                raise SchemaError(f"Missing argument {arg_name!r} for {instruction.name}", type_name=arg_name)
            writer.write(type_spec, args[arg_name])
    else:
        values = list(args)
        if len(values) != len(instruction.args):
            raise SchemaError(
                f"{instruction.name} takes {len(instruction.args)} arguments, got {len(values)}"
            )
        for (_, type_spec), value in zip(instruction.args, values):
            writer.write(type_spec, value)
    return instruction.discriminator + writer.getvalue()


# ============================================================
# TYPED RECORDS
# ============================================================

DEFAULT_EXCHANGE_RATE_BPS = 10_000

_CLAIM_CONFIG_FIELDS = ("merkle_root", "late_claim_haircut_bps", "migration_failed")


@dataclass(frozen=True)
class ProjectConfigRecord:
    """Decoded project config account."""
    old_token_mint: Pubkey
    new_token_mint: Pubkey
    start_ts: int
    end_ts: int
    exchange_rate_bps: int
    is_paused: bool
    claims_enabled: bool
    project_id: Optional[str] = None
    claim_config: Optional[ClaimConfig] = None


def _require(fields: dict[str, Any], key: str, type_name: str) -> Any:
    if key not in fields or fields[key] is None:
        raise SchemaError(f"{type_name} is missing field {key!r}", type_name=type_name)
    return fields[key]


def decode_project_config(fields: dict[str, Any]) -> ProjectConfigRecord:
    """Build a ProjectConfigRecord from decoded account fields."""
    type_name = "ProjectConfig"

    claim_config = None
    if any(key in fields for key in _CLAIM_CONFIG_FIELDS):
        merkle_root = fields.get("merkle_root")
        claim_config = ClaimConfig(
            merkle_root=bytes(merkle_root) if merkle_root is not None else None,
            late_claim_haircut_bps=int(fields.get("late_claim_haircut_bps") or 0),
            migration_failed=bool(fields.get("migration_failed", False)),
        )

    exchange_rate = fields.get("exchange_rate_basis_points", fields.get("exchange_rate_bps"))
    return ProjectConfigRecord(
        old_token_mint=_require(fields, "old_token_mint", type_name),
        new_token_mint=_require(fields, "new_token_mint", type_name),
        start_ts=int(_require(fields, "start_ts", type_name)),
        end_ts=int(_require(fields, "end_ts", type_name)),
        exchange_rate_bps=int(exchange_rate) if exchange_rate is not None else DEFAULT_EXCHANGE_RATE_BPS,
        is_paused=bool(fields.get("is_paused", False)),
        claims_enabled=bool(fields.get("claims_enabled", False)),
        project_id=fields.get("project_id"),
        claim_config=claim_config,
    )


def decode_user_migration(fields: dict[str, Any]) -> UserMigrationRecord:
    """Build a UserMigrationRecord from decoded account fields."""
    return UserMigrationRecord(
        amount_migrated=int(fields.get("amount_migrated") or 0),
        has_claimed_refund=bool(fields.get("has_claimed_refund", False)),
        migrated_at=int(fields.get("migrated_at") or 0),
    )
