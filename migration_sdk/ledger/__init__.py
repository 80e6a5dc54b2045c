"""
Ledger access layer.

BaseLedgerReader is the boundary every SDK read goes through;
JsonRpcLedgerReader is the bundled aiohttp implementation.
"""

from migration_sdk.ledger.base import (
    AccountInfo,
    BaseLedgerReader,
    ProgramAccount,
    RecentBlockhash,
    SimulationResult,
)
from migration_sdk.ledger.jsonrpc import (
    EndpointHealth,
    EndpointStatus,
    JsonRpcLedgerReader,
)


__all__ = [
    "AccountInfo",
    "BaseLedgerReader",
    "ProgramAccount",
    "RecentBlockhash",
    "SimulationResult",
    "EndpointHealth",
    "EndpointStatus",
    "JsonRpcLedgerReader",
]
