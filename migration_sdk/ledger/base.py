"""
Base Ledger Reader - Abstract interface to the remote ledger.

Every SDK read goes through a BaseLedgerReader. Implementations must:
- Return None (not raise) for accounts that do not exist
- Raise RateLimitError when the endpoint signals throttling
- Raise FetchError for every other transport or RPC failure
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction


@dataclass(frozen=True)
class AccountInfo:
    """Raw account as stored on the ledger."""
    data: bytes
    owner: Pubkey
    lamports: int = 0
    executable: bool = False


@dataclass(frozen=True)
class ProgramAccount:
    """An account returned by a program-accounts scan."""
    address: Pubkey
    account: AccountInfo


@dataclass(frozen=True)
class RecentBlockhash:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of a transaction simulation."""
    err: Optional[Any] = None
    logs: list[str] = field(default_factory=list)
    units_consumed: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.err is None


class BaseLedgerReader(ABC):
    """
    Abstract base class for ledger access.

    The bundled implementation is JsonRpcLedgerReader; tests inject an
    in-memory reader.
    """

    @abstractmethod
    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        """Raw account data, or None if the account does not exist."""
        pass

    @abstractmethod
    async def get_parsed_account_info(self, address: Pubkey) -> Optional[dict[str, Any]]:
        """
        Server-parsed account (jsonParsed encoding).

        Returns:
            {"owner": str, "data": {"parsed": {...}, "program": str}, ...}
            or None if the account does not exist
        """
        pass

    @abstractmethod
    async def get_balance(self, address: Pubkey) -> int:
        """Native balance in lamports."""
        pass

    @abstractmethod
    async def get_token_account_balance(self, address: Pubkey) -> Optional[int]:
        """Token account balance in base units, or None if the account does not exist."""
        pass

    @abstractmethod
    async def get_latest_blockhash(self) -> RecentBlockhash:
        pass

    @abstractmethod
    async def get_program_accounts(
        self,
        program_id: Pubkey,
        discriminator: Optional[bytes] = None,
    ) -> list[ProgramAccount]:
        """All accounts owned by a program, optionally filtered by leading bytes."""
        pass

    @abstractmethod
    async def simulate_transaction(self, transaction: Transaction) -> SimulationResult:
        pass

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None

    async def __aenter__(self) -> "BaseLedgerReader":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
