"""
JSON-RPC Ledger Reader - aiohttp client for Solana JSON-RPC endpoints.

Features:
- One shared aiohttp session (created lazily, closed with the reader)
- Per-endpoint health tracking (healthy / degraded / rate limited / unavailable)
- Failover to backup endpoints on transport errors, 5xx and throttling
- Demoted endpoints retried after a backoff (Retry-After when given)
- Optional periodic getLatestBlockhash pings via health_check()

RPC-level errors that describe the request (bad params, missing
account) are not endpoint failures and are raised without failover.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import count
from typing import Any, Optional, Sequence

import aiohttp
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from migration_sdk.clock import ClockProtocol, get_clock
from migration_sdk.exceptions import FetchError, MigrationSdkError, RateLimitError
from migration_sdk.ledger.base import (
    AccountInfo,
    BaseLedgerReader,
    ProgramAccount,
    RecentBlockhash,
    SimulationResult,
)


logger = logging.getLogger(__name__)


# JSON-RPC error codes
RPC_RATE_LIMITED = 429
RPC_INVALID_PARAMS = -32602
RPC_SERVER_ERROR_MIN = -32099
RPC_SERVER_ERROR_MAX = -32000


class EndpointStatus(Enum):
    """Health status of an RPC endpoint."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


@dataclass
class EndpointHealth:
    """Health state of one RPC endpoint."""
    url: str
    status: EndpointStatus = EndpointStatus.UNKNOWN
    consecutive_failures: int = 0
    error_count: int = 0
    latency_ms: Optional[float] = None
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    retry_at: Optional[float] = None  # unix time a demoted endpoint may be tried again

    def is_usable(self, now: Optional[float] = None) -> bool:
        if self.status in (EndpointStatus.HEALTHY, EndpointStatus.DEGRADED, EndpointStatus.UNKNOWN):
            return True
        return now is not None and self.retry_at is not None and now >= self.retry_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "error_count": self.error_count,
            "latency_ms": self.latency_ms,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
            "retry_at": self.retry_at,
        }


class JsonRpcLedgerReader(BaseLedgerReader):
    """
    Ledger reader over Solana JSON-RPC.

    Usage:
        async with JsonRpcLedgerReader(
            "https://api.devnet.solana.com",
            backup_urls=["https://devnet.helius-rpc.com/?api-key=..."],
        ) as reader:
            balance = await reader.get_balance(wallet)
    """

    DEFAULT_TIMEOUT = 30.0
    DEGRADED_THRESHOLD = 3
    UNAVAILABLE_THRESHOLD = 5
    LATENCY_THRESHOLD_MS = 5000.0
    RATE_LIMIT_BACKOFF = 10.0
    UNAVAILABLE_BACKOFF = 30.0
    HEALTH_CHECK_INTERVAL = 30.0

    def __init__(
        self,
        url: str,
        backup_urls: Optional[Sequence[str]] = None,
        commitment: str = "confirmed",
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        urls = [url] + [u for u in (backup_urls or []) if u and u != url]
        self._endpoints = [EndpointHealth(url=u) for u in urls]
        self._commitment = commitment
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._ids = count(1)
        self._clock = clock or get_clock()
        self._monitor_task: Optional[asyncio.Task] = None

    # ─────────────────────────────────────────────────────────────
    # HTTP Helpers
    # ─────────────────────────────────────────────────────────────

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _post(self, endpoint: EndpointHealth, payload: dict[str, Any]) -> Any:
        session = await self._get_session()
        start_time = time.monotonic()
        try:
            async with session.post(endpoint.url, json=payload) as response:
                endpoint.latency_ms = (time.monotonic() - start_time) * 1000

                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimitError(
                        retry_after_seconds=int(retry_after) if retry_after and retry_after.isdigit() else None,
                        endpoint=endpoint.url,
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise FetchError(
                        message=f"HTTP {response.status} from RPC endpoint",
                        status_code=response.status,
                        response_body=body[:500],
                        endpoint=endpoint.url,
                    )

                body = await response.json(content_type=None)

        except aiohttp.ClientError as e:
            raise FetchError(
                message=f"RPC connection error: {e}",
                endpoint=endpoint.url,
                original_error=e,
            )
        except asyncio.TimeoutError as e:
            raise FetchError(
                message=f"RPC request timed out after {self._timeout}s",
                endpoint=endpoint.url,
                original_error=e,
            )

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            rpc_code = error.get("code")
            message = error.get("message", "Unknown RPC error")
            if rpc_code == RPC_RATE_LIMITED or "rate limit" in message.lower():
                raise RateLimitError(message=message, endpoint=endpoint.url, original_error=error)
            raise FetchError(
                message=message,
                rpc_code=rpc_code,
                response_body=str(error.get("data"))[:500] if error.get("data") else None,
                endpoint=endpoint.url,
                original_error=error,
            )

        return body.get("result")

    def _is_endpoint_failure(self, error: MigrationSdkError) -> bool:
        if isinstance(error, RateLimitError):
            return True
        if not isinstance(error, FetchError):
            return False
        if error.status_code is not None:
            return error.status_code >= 500
        if error.rpc_code is not None:
            # node-side errors (unhealthy node, behind slot) rather than bad params
            return RPC_SERVER_ERROR_MIN <= error.rpc_code <= RPC_SERVER_ERROR_MAX
        return True

    def _ordered_endpoints(self) -> list[EndpointHealth]:
        now = self._clock.timestamp()
        usable = [e for e in self._endpoints if e.is_usable(now)]
        unusable = [e for e in self._endpoints if not e.is_usable(now)]
        # endpoints still backing off stay as a last resort
        return usable + unusable

    async def _call(self, method: str, params: list[Any]) -> Any:
        """Issue one JSON-RPC call, failing over between endpoints."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        last_error: Optional[MigrationSdkError] = None

        for endpoint in self._ordered_endpoints():
            try:
                result = await self._post(endpoint, payload)
            except (RateLimitError, FetchError) as e:
                if not self._is_endpoint_failure(e):
                    self._on_success(endpoint)
                    raise
                self._on_error(endpoint, e)
                last_error = e
                logger.warning(f"[rpc] {method} failed on {endpoint.url}: {e}")
                continue

            self._on_success(endpoint)
            return result

        raise last_error or FetchError(message=f"No RPC endpoint available for {method}")

    # ─────────────────────────────────────────────────────────────
    # Health Tracking
    # ─────────────────────────────────────────────────────────────

    def _on_success(self, endpoint: EndpointHealth) -> None:
        endpoint.consecutive_failures = 0
        endpoint.retry_at = None
        endpoint.last_success_time = self._clock.now()

        if endpoint.latency_ms is not None and endpoint.latency_ms > self.LATENCY_THRESHOLD_MS:
            if endpoint.status != EndpointStatus.DEGRADED:
                endpoint.status = EndpointStatus.DEGRADED
                logger.warning(f"[rpc] {endpoint.url} marked DEGRADED (latency {endpoint.latency_ms:.0f}ms)")
            return

        if endpoint.status != EndpointStatus.HEALTHY:
            if endpoint.status != EndpointStatus.UNKNOWN:
                logger.info(f"[rpc] {endpoint.url} recovered to HEALTHY status")
            endpoint.status = EndpointStatus.HEALTHY

    def _on_error(self, endpoint: EndpointHealth, error: MigrationSdkError) -> None:
        endpoint.error_count += 1
        endpoint.consecutive_failures += 1
        endpoint.last_error = error.message
        endpoint.last_error_time = self._clock.now()

        backoff = self.UNAVAILABLE_BACKOFF
        if isinstance(error, RateLimitError):
            endpoint.status = EndpointStatus.RATE_LIMITED
            if error.retry_after_seconds is not None:
                backoff = float(error.retry_after_seconds)
            else:
                backoff = self.RATE_LIMIT_BACKOFF
        elif endpoint.consecutive_failures >= self.UNAVAILABLE_THRESHOLD:
            if endpoint.status != EndpointStatus.UNAVAILABLE:
                endpoint.status = EndpointStatus.UNAVAILABLE
                logger.error(f"[rpc] {endpoint.url} marked UNAVAILABLE")
        elif endpoint.consecutive_failures >= self.DEGRADED_THRESHOLD:
            if endpoint.status != EndpointStatus.DEGRADED:
                endpoint.status = EndpointStatus.DEGRADED
                logger.warning(f"[rpc] {endpoint.url} marked DEGRADED")

        if not endpoint.is_usable():
            endpoint.retry_at = self._clock.timestamp() + backoff

    def get_health(self) -> list[EndpointHealth]:
        """Health of every configured endpoint, primary first."""
        return list(self._endpoints)

    def is_healthy(self) -> bool:
        return any(e.status == EndpointStatus.HEALTHY for e in self._endpoints)

    async def health_check(self) -> list[EndpointHealth]:
        """
        Ping every endpoint with getLatestBlockhash.

        A successful ping brings a demoted endpoint back to HEALTHY
        without waiting for its backoff.

        Returns:
            Health of every endpoint after the pings
        """
        await asyncio.gather(*(self._check_endpoint(endpoint) for endpoint in self._endpoints))
        return self.get_health()

    async def _check_endpoint(self, endpoint: EndpointHealth) -> None:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "getLatestBlockhash",
            "params": [{"commitment": self._commitment}],
        }
        try:
            await self._post(endpoint, payload)
        except (RateLimitError, FetchError) as e:
            self._on_error(endpoint, e)
            logger.debug(f"[rpc] health check failed on {endpoint.url}: {e}")
            return
        self._on_success(endpoint)

    def start_health_monitor(self, interval: float = HEALTH_CHECK_INTERVAL) -> None:
        """Run health_check() every `interval` seconds until close()."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.ensure_future(self._monitor(interval))

    async def stop_health_monitor(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _monitor(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.health_check()
            except Exception as e:
                logger.warning(f"[rpc] health check round failed: {e}")

    # ─────────────────────────────────────────────────────────────
    # Ledger reads
    # ─────────────────────────────────────────────────────────────

    async def get_account_info(self, address: Pubkey) -> Optional[AccountInfo]:
        result = await self._call(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self._commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return _account_from_json(value)

    async def get_parsed_account_info(self, address: Pubkey) -> Optional[dict[str, Any]]:
        result = await self._call(
            "getAccountInfo",
            [str(address), {"encoding": "jsonParsed", "commitment": self._commitment}],
        )
        return (result or {}).get("value")

    async def get_balance(self, address: Pubkey) -> int:
        result = await self._call("getBalance", [str(address), {"commitment": self._commitment}])
        return int((result or {}).get("value") or 0)

    async def get_token_account_balance(self, address: Pubkey) -> Optional[int]:
        try:
            result = await self._call(
                "getTokenAccountBalance",
                [str(address), {"commitment": self._commitment}],
            )
        except FetchError as e:
            if e.rpc_code == RPC_INVALID_PARAMS and "could not find account" in e.message.lower():
                return None
            raise
        value = (result or {}).get("value")
        if value is None:
            return None
        return int(value.get("amount") or 0)

    async def get_latest_blockhash(self) -> RecentBlockhash:
        result = await self._call("getLatestBlockhash", [{"commitment": self._commitment}])
        value = (result or {}).get("value") or {}
        try:
            return RecentBlockhash(
                blockhash=Hash.from_string(value["blockhash"]),
                last_valid_block_height=int(value["lastValidBlockHeight"]),
            )
        except (KeyError, ValueError) as e:
            raise FetchError(message="Malformed getLatestBlockhash response", original_error=e)

    async def get_program_accounts(
        self,
        program_id: Pubkey,
        discriminator: Optional[bytes] = None,
    ) -> list[ProgramAccount]:
        config: dict[str, Any] = {"encoding": "base64", "commitment": self._commitment}
        if discriminator:
            config["filters"] = [{
                "memcmp": {
                    "offset": 0,
                    "bytes": base64.b64encode(discriminator).decode(),
                    "encoding": "base64",
                },
            }]
        result = await self._call("getProgramAccounts", [str(program_id), config])
        return [
            ProgramAccount(
                address=Pubkey.from_string(item["pubkey"]),
                account=_account_from_json(item["account"]),
            )
            for item in result or []
        ]

    async def simulate_transaction(self, transaction: Transaction) -> SimulationResult:
        encoded = base64.b64encode(bytes(transaction)).decode()
        result = await self._call(
            "simulateTransaction",
            [encoded, {
                "encoding": "base64",
                "sigVerify": False,
                "replaceRecentBlockhash": False,
                "commitment": self._commitment,
            }],
        )
        value = (result or {}).get("value") or {}
        return SimulationResult(
            err=value.get("err"),
            logs=list(value.get("logs") or []),
            units_consumed=value.get("unitsConsumed"),
        )

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close resources."""
        await self.stop_health_monitor()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def __repr__(self) -> str:
        primary = self._endpoints[0]
        return f"<{self.__class__.__name__}(url={primary.url}, status={primary.status.value})>"


def _account_from_json(value: dict[str, Any]) -> AccountInfo:
    data = value.get("data") or ["", "base64"]
    raw = base64.b64decode(data[0]) if isinstance(data, list) else b""
    return AccountInfo(
        data=raw,
        owner=Pubkey.from_string(value["owner"]),
        lamports=int(value.get("lamports") or 0),
        executable=bool(value.get("executable", False)),
    )
