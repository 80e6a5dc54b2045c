"""
Migration SDK - Error Normalization.

============================================================
PURPOSE
============================================================
Maps raw failures (ledger RPC errors, program errors surfaced through
simulation logs, arbitrary exceptions from injected collaborators) into
the closed ErrorCode taxonomy with recoverability hints.

============================================================
MATCHING ORDER
============================================================
1. Already a MigrationSdkError  -> returned unchanged
2. Numeric program error code   -> PROGRAM_ERROR_MAP
3. Anchor error name in logs    -> PROGRAM_ERROR_MAP (by name)
4. Message signatures           -> account / balance / mint / tx / rpc
5. Anything else                -> fallback (UNKNOWN by default)

============================================================
"""

import json
import logging
import re
import traceback
from dataclasses import dataclass, field
from typing import Any, Optional

from migration_sdk.exceptions import (
    ErrorCode,
    MigrationSdkError,
    RETRYABLE_CODES,
)


logger = logging.getLogger(__name__)


# ============================================================
# PROGRAM ERROR TABLE
# ============================================================

@dataclass(frozen=True)
class ProgramErrorInfo:
    """Metadata for one custom error of the migration program."""

    name: str
    code: ErrorCode
    message: str
    user_message: str = ""
    recovery_actions: tuple[str, ...] = ()


PROGRAM_ERROR_MAP: dict[int, ProgramErrorInfo] = {
    6000: ProgramErrorInfo(
        "MigrationWindowClosed",
        ErrorCode.WINDOW_CLOSED,
        "Migration window has closed",
        "The migration period for this project has ended. New migrations are no longer accepted.",
        (
            "Check if there is an extension period",
            "Look for receipt token claiming options if you already migrated",
            "Contact the project team for assistance",
        ),
    ),
    6001: ProgramErrorInfo("MigrationNotEnded", ErrorCode.INVALID_PHASE, "Migration has not ended yet"),
    6002: ProgramErrorInfo("MigrationAlreadyStarted", ErrorCode.INVALID_PHASE, "Migration already started"),
    6003: ProgramErrorInfo("AlreadyFinalized", ErrorCode.INVALID_PHASE, "Migration already finalized"),
    6004: ProgramErrorInfo("CannotFinalizeEarly", ErrorCode.INVALID_PHASE, "Cannot finalize before the window ends"),
    6005: ProgramErrorInfo("AlreadyEvaluated", ErrorCode.INVALID_PHASE, "Migration already evaluated"),
    6006: ProgramErrorInfo(
        "NoMigration",
        ErrorCode.ACCOUNT_NOT_FOUND,
        "No migration record found",
        "You have not migrated any tokens for this project yet.",
        (
            "Complete a migration first",
            "Check if you are using the correct wallet",
            "Verify you are on the right network",
        ),
    ),
    6007: ProgramErrorInfo("MigrationNotEvaluated", ErrorCode.INVALID_PHASE, "Migration not evaluated yet"),
    6008: ProgramErrorInfo(
        "MigrationFailed",
        ErrorCode.TRANSACTION_FAILED,
        "Migration evaluation failed",
        "This migration did not meet success criteria. You can claim a refund of your tokens and fees.",
        (
            "Check the refund claim interface",
            "Your original tokens will be returned",
            "Contact support if you need assistance with the refund",
        ),
    ),
    6009: ProgramErrorInfo(
        "InvalidProjectId",
        ErrorCode.NOT_FOUND,
        "Invalid project ID",
        "The project ID format is invalid. It must be lowercase, 16 characters or less, with no spaces.",
        (
            "Check the project ID format",
            "Ensure all characters are lowercase",
            "Remove any spaces or special characters",
        ),
    ),
    6010: ProgramErrorInfo("InvalidProjectName", ErrorCode.UNKNOWN, "Invalid project name"),
    6011: ProgramErrorInfo(
        "ProjectNotInitialized",
        ErrorCode.NOT_FOUND,
        "Project not initialized",
        "This migration project does not exist or has not been initialized.",
        (
            "Verify the project ID is correct",
            "Check if the project is on the correct network (devnet/mainnet)",
            "Browse available projects to find the right one",
        ),
    ),
    6012: ProgramErrorInfo("ProjectAlreadyExists", ErrorCode.UNKNOWN, "Project already exists"),
    6013: ProgramErrorInfo("ProjectNotFinalized", ErrorCode.INVALID_PHASE, "Project not finalized"),
    6014: ProgramErrorInfo("ProjectIdMismatch", ErrorCode.NOT_FOUND, "Project ID mismatch"),
    6015: ProgramErrorInfo(
        "ProjectPaused",
        ErrorCode.PAUSED,
        "Project is paused",
        "This migration project is temporarily paused by the administrator.",
        (
            "Wait for the project to be unpaused",
            "Check project announcements for updates",
            "Contact the project administrator",
        ),
    ),
    6016: ProgramErrorInfo("ProjectFinalized", ErrorCode.INVALID_PHASE, "Project already finalized"),
    6017: ProgramErrorInfo(
        "ProjectNotActive",
        ErrorCode.INVALID_PHASE,
        "Project is not in active migration phase",
        "This project is not currently accepting migrations.",
        (
            "Check the project status and phase",
            "Wait for the active migration period to begin",
            "Verify you have the correct project",
        ),
    ),
    6018: ProgramErrorInfo("InvalidProject", ErrorCode.NOT_FOUND, "Invalid project"),
    6019: ProgramErrorInfo("InvalidTimeRange", ErrorCode.INVALID_PHASE, "Invalid time range"),
}

_PROGRAM_ERRORS_BY_NAME = {info.name: number for number, info in PROGRAM_ERROR_MAP.items()}

_ERROR_NUMBER_PATTERNS = (
    re.compile(r"Error Number: (\d+)", re.IGNORECASE),
    re.compile(r"Error Code: (\d+)", re.IGNORECASE),
)
_ERROR_NAME_PATTERN = re.compile(r"Error Code: ([A-Za-z]\w*)")
_CUSTOM_HEX_PATTERN = re.compile(r"custom program error: 0x([0-9a-f]+)", re.IGNORECASE)

RATE_LIMIT_MARKERS = ("429", "403", "rate limit", "too many requests")
NETWORK_MARKERS = ("rpc", "network", "timeout", "timed out", "connection")


# ============================================================
# NORMALIZED ERROR
# ============================================================

@dataclass
class NormalizedError:
    """
    Caller-facing view of any failure.

    Mirrors the code/message/retryable triple callers switch on, plus
    display helpers for UI collaborators.
    """

    code: ErrorCode
    message: str
    retryable: bool
    title: str = "Error"
    actions: list[str] = field(default_factory=list)
    original_error: Optional[Any] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "title": self.title,
            "actions": self.actions,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


# ============================================================
# PARSING
# ============================================================

def _message_of(raw: Any) -> str:
    if raw is None:
        return "Unknown error"
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        message = raw.get("message")
        return str(message) if message else json.dumps(raw, default=str)
    message = getattr(raw, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(raw) or raw.__class__.__name__


def _logs_of(raw: Any) -> list[str]:
    logs = raw.get("logs") if isinstance(raw, dict) else getattr(raw, "logs", None)
    if isinstance(logs, (list, tuple)):
        return [str(line) for line in logs]
    return []


def _custom_code_in(value: Any) -> Optional[int]:
    """Find {"Custom": N} inside a ledger InstructionError structure."""
    if isinstance(value, dict):
        custom = value.get("Custom")
        if isinstance(custom, int) and not isinstance(custom, bool):
            return custom
        for nested in value.values():
            found = _custom_code_in(nested)
            if found is not None:
                return found
    elif isinstance(value, (list, tuple)):
        for nested in value:
            found = _custom_code_in(nested)
            if found is not None:
                return found
    return None


def extract_program_error_code(raw: Any) -> Optional[int]:
    """
    Extract a numeric program error code from a raw failure.

    Looks at, in order: an integer `code` attribute/key, ledger
    InstructionError structures, program logs, and the message text.
    """
    code = raw.get("code") if isinstance(raw, dict) else getattr(raw, "code", None)
    if isinstance(code, int) and not isinstance(code, bool) and code in PROGRAM_ERROR_MAP:
        return code

    structured = raw.get("err", raw) if isinstance(raw, dict) else getattr(raw, "err", None)
    custom = _custom_code_in(structured)
    if custom is not None:
        return custom

    texts = _logs_of(raw) + [_message_of(raw)]
    for text in texts:
        for pattern in _ERROR_NUMBER_PATTERNS:
            match = pattern.search(text)
            if match:
                return int(match.group(1))
        match = _ERROR_NAME_PATTERN.search(text)
        if match and match.group(1) in _PROGRAM_ERRORS_BY_NAME:
            return _PROGRAM_ERRORS_BY_NAME[match.group(1)]
        match = _CUSTOM_HEX_PATTERN.search(text)
        if match:
            return int(match.group(1), 16)

    return None


def _parse_program_error(raw: Any) -> Optional[MigrationSdkError]:
    number = extract_program_error_code(raw)
    if number is None:
        return None

    info = PROGRAM_ERROR_MAP.get(number)
    if info is None:
        return None

    return MigrationSdkError(
        info.code,
        info.user_message or info.message,
        raw,
        {"program_error": info.name, "program_error_code": number},
    )


def parse_error(
    raw: Any,
    fallback: ErrorCode = ErrorCode.UNKNOWN,
    fallback_message: Optional[str] = None,
) -> MigrationSdkError:
    """
    Map any raw failure into a MigrationSdkError.

    Args:
        raw: Exception, ledger error dict, or message string
        fallback: Code used when nothing matches
        fallback_message: Message used with the fallback code

    Returns:
        MigrationSdkError with the original failure preserved
    """
    if isinstance(raw, MigrationSdkError):
        return raw

    program_error = _parse_program_error(raw)
    if program_error is not None:
        return program_error

    message = _message_of(raw)
    lower = message.lower()

    if "account does not exist" in lower or "accountnotfound" in lower or "could not find account" in lower:
        return MigrationSdkError(ErrorCode.ACCOUNT_NOT_FOUND, "Account not found on-chain", raw)

    if "insufficient" in lower and ("balance" in lower or "funds" in lower):
        return MigrationSdkError(
            ErrorCode.INSUFFICIENT_BALANCE,
            "Insufficient token balance for this operation",
            raw,
        )

    if "invalid mint" in lower or "mint mismatch" in lower:
        return MigrationSdkError(
            ErrorCode.INVALID_MINT,
            "Token mint address does not match expected value",
            raw,
        )

    if "simulation failed" in lower:
        return MigrationSdkError(
            ErrorCode.SIMULATION_FAILED,
            "Transaction simulation failed - the transaction would likely fail on-chain",
            raw,
        )

    if "transaction" in lower and "failed" in lower:
        return MigrationSdkError(ErrorCode.TRANSACTION_FAILED, "Transaction failed to execute", raw)

    if any(marker in lower for marker in RATE_LIMIT_MARKERS):
        return MigrationSdkError(
            ErrorCode.RATE_LIMITED,
            "RPC rate limit exceeded - please wait and try again",
            raw,
        )

    if any(marker in lower for marker in NETWORK_MARKERS):
        return MigrationSdkError(
            ErrorCode.RPC_ERROR,
            "RPC request failed - check your network connection",
            raw,
        )

    if "invalid public key" in lower or "invalid address" in lower:
        return MigrationSdkError(ErrorCode.INVALID_ADDRESS, "Invalid public key format", raw)

    if "invalid amount" in lower:
        return MigrationSdkError(ErrorCode.INVALID_AMOUNT, "Invalid token amount", raw)

    return MigrationSdkError(fallback, fallback_message or message, raw)


# ============================================================
# NORMALIZATION
# ============================================================

def _title_for(code: ErrorCode) -> str:
    if code in (ErrorCode.NOT_FOUND, ErrorCode.PAUSED, ErrorCode.WINDOW_CLOSED, ErrorCode.INVALID_PHASE):
        return "Migration Unavailable"
    if code in (ErrorCode.ACCOUNT_NOT_FOUND, ErrorCode.INSUFFICIENT_BALANCE, ErrorCode.INVALID_MINT):
        return "Account Error"
    if code in (ErrorCode.TRANSACTION_FAILED, ErrorCode.SIMULATION_FAILED):
        return "Transaction Failed"
    if code in (ErrorCode.RPC_ERROR, ErrorCode.RATE_LIMITED):
        return "Network Error"
    if code in (ErrorCode.INVALID_AMOUNT, ErrorCode.INVALID_ADDRESS):
        return "Validation Error"
    return "Error"


def _default_actions(code: ErrorCode) -> list[str]:
    if code in (ErrorCode.RPC_ERROR, ErrorCode.RATE_LIMITED):
        return [
            "Wait a moment and try again",
            "Check your internet connection",
            "Try a different RPC endpoint if available",
        ]
    if code == ErrorCode.INSUFFICIENT_BALANCE:
        return [
            "Check your token balance",
            "Reduce the migration amount",
            "Ensure you have enough SOL for transaction fees",
        ]
    if code == ErrorCode.INVALID_AMOUNT:
        return [
            "Enter a valid amount",
            "Make sure the amount is greater than zero",
            "Check the token decimals",
        ]
    if code == ErrorCode.INVALID_ADDRESS:
        return [
            "Check the address format",
            "Ensure you are using a valid Solana address",
            "Copy the address again to avoid typos",
        ]
    return [
        "Try again in a few moments",
        "Check the logs for more details",
        "Contact support if the problem persists",
    ]


def normalize_error(raw: Any) -> NormalizedError:
    """
    Reduce any failure to {code, message, retryable} plus display hints.

    Unrecognized failures map to UNKNOWN and keep the original object.
    """
    error = parse_error(raw)
    info = None
    program_code = error.context.get("program_error_code")
    if program_code is not None:
        info = PROGRAM_ERROR_MAP.get(program_code)

    actions = list(info.recovery_actions) if info and info.recovery_actions else _default_actions(error.code)

    return NormalizedError(
        code=error.code,
        message=error.message,
        retryable=error.code in RETRYABLE_CODES,
        title=_title_for(error.code),
        actions=actions,
        original_error=error.original_error if error.original_error is not None else raw,
    )


def is_retryable_error(raw: Any) -> bool:
    """Check whether a failure is worth retrying unchanged."""
    return parse_error(raw).retryable


def format_error_for_log(raw: Any) -> str:
    """Render a failure with its cause and traceback for log output."""
    error = parse_error(raw)
    parts = [f"[{error.code.value}] {error.message}"]

    original = error.original_error
    if original is not None:
        if isinstance(original, BaseException):
            parts.append(f"Original error: {original!r}")
        else:
            parts.append(f"Original error: {json.dumps(original, default=str, indent=2)}")

    source = raw if isinstance(raw, BaseException) else None
    if source is not None and source.__traceback__ is not None:
        parts.append("Stack trace:")
        parts.append("".join(traceback.format_exception(type(source), source, source.__traceback__)))

    return "\n".join(parts)
