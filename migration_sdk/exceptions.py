"""
Migration SDK Exceptions - Closed error taxonomy and exception hierarchy.

Every failure that leaves the SDK is a MigrationSdkError carrying one
ErrorCode. Local validation errors are raised by the component that
detects them; remote failures are re-wrapped once at the boundary of
each public operation (see migration_sdk.errors).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    """Closed set of error codes exposed to SDK callers."""

    # Project errors
    NOT_FOUND = "PROJECT_NOT_FOUND"
    PAUSED = "PROJECT_PAUSED"
    WINDOW_CLOSED = "MIGRATION_WINDOW_CLOSED"
    INVALID_PHASE = "INVALID_PHASE"

    # Account errors
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_MINT = "INVALID_MINT"

    # Transaction errors
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    SIMULATION_FAILED = "SIMULATION_FAILED"

    # RPC errors
    RPC_ERROR = "RPC_ERROR"
    RATE_LIMITED = "RATE_LIMIT"

    # Validation errors
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_ADDRESS = "INVALID_PUBLIC_KEY"

    UNKNOWN = "UNKNOWN"


RETRYABLE_CODES = frozenset({
    ErrorCode.RPC_ERROR,
    ErrorCode.RATE_LIMITED,
    ErrorCode.SIMULATION_FAILED,
    ErrorCode.TRANSACTION_FAILED,
    ErrorCode.UNKNOWN,
})


class MigrationSdkError(Exception):
    """Base exception for all SDK errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        original_error: Optional[Any] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry without changing anything."""
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class ValidationError(MigrationSdkError):
    """Local input validation failure. Never retried automatically."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INVALID_AMOUNT,
        field_name: Optional[str] = None,
        value: Optional[Any] = None,
        original_error: Optional[Any] = None,
    ) -> None:
        super().__init__(code, message, original_error)
        self.field_name = field_name
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "field_name": self.field_name,
            "value": str(self.value) if self.value is not None else None,
        })
        return data


class AmountOverflowError(ValidationError):
    """A token amount would exceed the u64 range of the ledger."""

    def __init__(self, message: str, value: Optional[int] = None) -> None:
        super().__init__(message, ErrorCode.INVALID_AMOUNT, "amount", value)


class ProjectNotFoundError(MigrationSdkError):
    """The project config account does not exist on chain."""

    def __init__(
        self,
        project_id: str,
        network: Optional[str] = None,
        original_error: Optional[Any] = None,
    ) -> None:
        super().__init__(
            ErrorCode.NOT_FOUND,
            f'Project "{project_id}" not found on chain',
            original_error,
            {"project_id": project_id, "network": network},
        )
        self.project_id = project_id


class RateLimitError(MigrationSdkError):
    """The remote endpoint signalled throttling."""

    def __init__(
        self,
        message: str = "RPC rate limit reached. Please try again in a moment.",
        retry_after_seconds: Optional[int] = None,
        endpoint: Optional[str] = None,
        original_error: Optional[Any] = None,
    ) -> None:
        super().__init__(ErrorCode.RATE_LIMITED, message, original_error)
        self.retry_after_seconds = retry_after_seconds
        self.endpoint = endpoint

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "retry_after_seconds": self.retry_after_seconds,
            "endpoint": self.endpoint,
        })
        return data


class FetchError(MigrationSdkError):
    """Error talking to the ledger RPC endpoint."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        rpc_code: Optional[int] = None,
        response_body: Optional[str] = None,
        endpoint: Optional[str] = None,
        original_error: Optional[Any] = None,
    ) -> None:
        super().__init__(ErrorCode.RPC_ERROR, message, original_error)
        self.status_code = status_code
        self.rpc_code = rpc_code
        self.response_body = response_body
        self.endpoint = endpoint

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "status_code": self.status_code,
            "rpc_code": self.rpc_code,
            "response_body": self.response_body,
            "endpoint": self.endpoint,
        })
        return data


class SchemaError(MigrationSdkError):
    """Program schema (IDL) is missing something or data does not match it."""

    def __init__(
        self,
        message: str,
        type_name: Optional[str] = None,
        original_error: Optional[Any] = None,
    ) -> None:
        super().__init__(ErrorCode.UNKNOWN, message, original_error)
        self.type_name = type_name
