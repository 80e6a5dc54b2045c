"""
Tests for the JSON-RPC ledger reader.

============================================================
PURPOSE
============================================================
The HTTP layer (_post) is patched; these tests cover endpoint
failover, health tracking and response decoding.

============================================================
"""

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from solders.compute_budget import set_compute_unit_limit
from solders.message import Message
from solders.transaction import Transaction

from migration_sdk.clock import MockClock
from migration_sdk.exceptions import FetchError, RateLimitError
from migration_sdk.ledger.jsonrpc import EndpointHealth, EndpointStatus, JsonRpcLedgerReader

from tests.fakes import BLOCKHASH, NOW, PROGRAM_ID, USER


PRIMARY = "https://primary.example"
BACKUP = "https://backup.example"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def rpc():
    return JsonRpcLedgerReader(PRIMARY, backup_urls=[BACKUP])


def responder(routes):
    """
    Build a _post side effect. `routes` maps url -> result or exception.

    Every call is appended to `calls` as (url, payload).
    """
    calls = []

    async def _post(endpoint, payload):
        calls.append((endpoint.url, payload))
        outcome = routes[endpoint.url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return _post, calls


def server_error() -> FetchError:
    return FetchError("HTTP 503 from RPC endpoint", status_code=503)


# ============================================================
# FAILOVER
# ============================================================

class TestFailover:
    """Test endpoint failover."""

    def test_backup_urls_deduplicated(self):
        reader = JsonRpcLedgerReader(PRIMARY, backup_urls=[PRIMARY, "", BACKUP])
        assert [e.url for e in reader.get_health()] == [PRIMARY, BACKUP]

    @pytest.mark.asyncio
    async def test_fails_over_on_server_error(self, rpc):
        """Test a 5xx on the primary is retried on the backup."""
        post, calls = responder({PRIMARY: server_error(), BACKUP: {"value": 42}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            assert await rpc.get_balance(USER) == 42

        assert [url for url, _ in calls] == [PRIMARY, BACKUP]
        primary, backup = rpc.get_health()
        assert primary.consecutive_failures == 1
        assert primary.last_error == "HTTP 503 from RPC endpoint"
        assert backup.status == EndpointStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_rate_limited_endpoint_tried_last(self, rpc):
        """Test a throttled primary is moved behind the backup."""
        post, calls = responder({PRIMARY: RateLimitError(), BACKUP: {"value": 1}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            await rpc.get_balance(USER)
            await rpc.get_balance(USER)

        assert rpc.get_health()[0].status == EndpointStatus.RATE_LIMITED
        assert [url for url, _ in calls] == [PRIMARY, BACKUP, BACKUP]

    @pytest.mark.asyncio
    async def test_request_errors_do_not_fail_over(self, rpc):
        """Test an invalid-params error is raised straight away."""
        error = FetchError("Invalid param: WrongSize", rpc_code=-32602)
        post, calls = responder({PRIMARY: error, BACKUP: {"value": 1}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            with pytest.raises(FetchError) as exc_info:
                await rpc.get_balance(USER)

        assert exc_info.value is error
        assert [url for url, _ in calls] == [PRIMARY]
        assert rpc.get_health()[0].status == EndpointStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_node_errors_fail_over(self, rpc):
        post, calls = responder({
            PRIMARY: FetchError("Node is behind by 120 slots", rpc_code=-32005),
            BACKUP: {"value": 7},
        })

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            assert await rpc.get_balance(USER) == 7

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self, rpc):
        """Test the last endpoint error is raised when every endpoint fails."""
        last = FetchError("RPC connection error: refused")
        post, _ = responder({PRIMARY: server_error(), BACKUP: last})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            with pytest.raises(FetchError) as exc_info:
                await rpc.get_balance(USER)

        assert exc_info.value is last


# ============================================================
# HEALTH
# ============================================================

class TestEndpointHealth:
    """Test health status transitions."""

    @pytest.mark.asyncio
    async def test_degraded_then_unavailable(self):
        """Test status after 3 and 5 consecutive failures."""
        reader = JsonRpcLedgerReader(PRIMARY)
        post, _ = responder({PRIMARY: server_error()})

        with patch.object(reader, "_post", AsyncMock(side_effect=post)):
            for attempt in range(1, 6):
                with pytest.raises(FetchError):
                    await reader.get_balance(USER)
                if attempt == 3:
                    assert reader.get_health()[0].status == EndpointStatus.DEGRADED

        health = reader.get_health()[0]
        assert health.status == EndpointStatus.UNAVAILABLE
        assert health.error_count == 5
        assert not reader.is_healthy()

    @pytest.mark.asyncio
    async def test_recovers_after_success(self):
        reader = JsonRpcLedgerReader(PRIMARY)
        routes = {PRIMARY: server_error()}
        post, _ = responder(routes)

        with patch.object(reader, "_post", AsyncMock(side_effect=post)):
            for _ in range(3):
                with pytest.raises(FetchError):
                    await reader.get_balance(USER)
            routes[PRIMARY] = {"value": 3}
            await reader.get_balance(USER)

        health = reader.get_health()[0]
        assert health.status == EndpointStatus.HEALTHY
        assert health.consecutive_failures == 0
        assert reader.is_healthy()

    def test_slow_success_is_degraded(self, rpc):
        endpoint = rpc.get_health()[0]
        endpoint.latency_ms = 6_000

        rpc._on_success(endpoint)

        assert endpoint.status == EndpointStatus.DEGRADED

    def test_to_dict(self):
        health = EndpointHealth(url=PRIMARY, status=EndpointStatus.RATE_LIMITED)

        assert health.to_dict()["status"] == "rate_limited"
        assert not health.is_usable()


# ============================================================
# RECOVERY
# ============================================================

class TestEndpointRecovery:
    """Test demoted endpoints are retried once their backoff expires."""

    @pytest.fixture
    def clock(self):
        return MockClock.at(NOW)

    @pytest.fixture
    def rpc(self, clock):
        return JsonRpcLedgerReader(PRIMARY, backup_urls=[BACKUP], clock=clock)

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self, rpc, clock):
        """Test a throttled primary is tried first again after Retry-After."""
        routes = {PRIMARY: RateLimitError(retry_after_seconds=5), BACKUP: {"value": 1}}
        post, calls = responder(routes)

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            await rpc.get_balance(USER)
            await rpc.get_balance(USER)
            assert rpc.get_health()[0].retry_at == NOW + 5

            routes[PRIMARY] = {"value": 2}
            clock.advance(5)
            assert await rpc.get_balance(USER) == 2

        assert [url for url, _ in calls] == [PRIMARY, BACKUP, BACKUP, PRIMARY]
        primary = rpc.get_health()[0]
        assert primary.status == EndpointStatus.HEALTHY
        assert primary.retry_at is None

    @pytest.mark.asyncio
    async def test_rate_limit_default_backoff(self, rpc, clock):
        post, _ = responder({PRIMARY: RateLimitError(), BACKUP: {"value": 1}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            await rpc.get_balance(USER)

        primary = rpc.get_health()[0]
        assert primary.retry_at == NOW + JsonRpcLedgerReader.RATE_LIMIT_BACKOFF
        assert not primary.is_usable(clock.timestamp())

        clock.advance(JsonRpcLedgerReader.RATE_LIMIT_BACKOFF)
        assert primary.is_usable(clock.timestamp())

    @pytest.mark.asyncio
    async def test_unavailable_backoff(self, rpc, clock):
        """Test an unavailable endpoint is skipped until its backoff expires."""
        routes = {PRIMARY: server_error(), BACKUP: {"value": 1}}
        post, calls = responder(routes)

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            for _ in range(5):
                await rpc.get_balance(USER)
            assert rpc.get_health()[0].status == EndpointStatus.UNAVAILABLE

            calls.clear()
            await rpc.get_balance(USER)
            assert [url for url, _ in calls] == [BACKUP]

            calls.clear()
            routes[PRIMARY] = {"value": 9}
            clock.advance(JsonRpcLedgerReader.UNAVAILABLE_BACKOFF)
            assert await rpc.get_balance(USER) == 9
            assert [url for url, _ in calls] == [PRIMARY]

    @pytest.mark.asyncio
    async def test_health_check_restores_endpoint(self, rpc):
        """Test a successful ping brings a demoted endpoint back without waiting."""
        routes = {PRIMARY: RateLimitError(), BACKUP: {"value": 1}}
        post, calls = responder(routes)

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            await rpc.get_balance(USER)
            routes[PRIMARY] = {"value": {"blockhash": str(BLOCKHASH), "lastValidBlockHeight": 1}}
            calls.clear()

            health = await rpc.health_check()

        assert sorted(url for url, _ in calls) == [BACKUP, PRIMARY]
        assert all(payload["method"] == "getLatestBlockhash" for _, payload in calls)
        assert health[0].status == EndpointStatus.HEALTHY
        assert health[0].retry_at is None

    @pytest.mark.asyncio
    async def test_health_check_records_failure(self, rpc):
        post, _ = responder({PRIMARY: server_error(), BACKUP: {"value": {}}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            primary, backup = await rpc.health_check()

        assert primary.consecutive_failures == 1
        assert primary.last_error == "HTTP 503 from RPC endpoint"
        assert backup.status == EndpointStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_health_monitor_runs_until_close(self, rpc):
        """Test the background monitor pings endpoints and stops on close()."""
        post, calls = responder({PRIMARY: {"value": {}}, BACKUP: {"value": {}}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            rpc.start_health_monitor(interval=0.01)
            for _ in range(100):
                if calls:
                    break
                await asyncio.sleep(0.01)
            await rpc.close()

        assert calls
        assert rpc._monitor_task is None


# ============================================================
# DECODING
# ============================================================

class TestDecoding:
    """Test JSON-RPC response decoding."""

    @pytest.mark.asyncio
    async def test_account_info(self, rpc):
        value = {
            "data": [base64.b64encode(b"\x01\x02\x03").decode(), "base64"],
            "owner": str(PROGRAM_ID),
            "lamports": 1_500,
            "executable": False,
        }
        post, calls = responder({PRIMARY: {"value": value}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            account = await rpc.get_account_info(USER)

        assert account.data == b"\x01\x02\x03"
        assert account.owner == PROGRAM_ID
        assert account.lamports == 1_500
        payload = calls[0][1]
        assert payload["method"] == "getAccountInfo"
        assert payload["params"][0] == str(USER)
        assert payload["params"][1]["commitment"] == "confirmed"

    @pytest.mark.asyncio
    async def test_missing_account(self, rpc):
        post, _ = responder({PRIMARY: {"value": None}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            assert await rpc.get_account_info(USER) is None

    @pytest.mark.asyncio
    async def test_token_balance(self, rpc):
        post, _ = responder({PRIMARY: {"value": {"amount": "12345", "decimals": 6}}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            assert await rpc.get_token_account_balance(USER) == 12_345

    @pytest.mark.asyncio
    async def test_token_account_missing(self, rpc):
        """Test a missing token account reads as None instead of raising."""
        error = FetchError("Invalid param: could not find account", rpc_code=-32602)
        post, _ = responder({PRIMARY: error})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            assert await rpc.get_token_account_balance(USER) is None

    @pytest.mark.asyncio
    async def test_latest_blockhash(self, rpc):
        post, _ = responder({PRIMARY: {"value": {"blockhash": str(BLOCKHASH), "lastValidBlockHeight": 99}}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            recent = await rpc.get_latest_blockhash()

        assert recent.blockhash == BLOCKHASH
        assert recent.last_valid_block_height == 99

    @pytest.mark.asyncio
    async def test_malformed_blockhash(self, rpc):
        post, _ = responder({PRIMARY: {"value": {}}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            with pytest.raises(FetchError):
                await rpc.get_latest_blockhash()

    @pytest.mark.asyncio
    async def test_program_accounts_filter(self, rpc):
        """Test the discriminator is sent as a base64 memcmp at offset 0."""
        item = {
            "pubkey": str(USER),
            "account": {"data": [base64.b64encode(b"\xaa").decode(), "base64"], "owner": str(PROGRAM_ID)},
        }
        post, calls = responder({PRIMARY: [item]})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            accounts = await rpc.get_program_accounts(PROGRAM_ID, discriminator=b"\xaa\xbb")

        assert accounts[0].address == USER
        assert accounts[0].account.data == b"\xaa"
        memcmp = calls[0][1]["params"][1]["filters"][0]["memcmp"]
        assert memcmp == {"offset": 0, "bytes": base64.b64encode(b"\xaa\xbb").decode(), "encoding": "base64"}

    @pytest.mark.asyncio
    async def test_simulation(self, rpc):
        message = Message.new_with_blockhash([set_compute_unit_limit(200_000)], USER, BLOCKHASH)
        transaction = Transaction.new_unsigned(message)
        value = {"err": {"InstructionError": [0, {"Custom": 6001}]}, "logs": ["a", "b"], "unitsConsumed": 900}
        post, calls = responder({PRIMARY: {"value": value}})

        with patch.object(rpc, "_post", AsyncMock(side_effect=post)):
            result = await rpc.simulate_transaction(transaction)

        assert not result.succeeded
        assert result.logs == ["a", "b"]
        assert result.units_consumed == 900
        params = calls[0][1]["params"]
        assert base64.b64decode(params[0]) == bytes(transaction)
        assert params[1]["sigVerify"] is False


# ============================================================
# LIFECYCLE
# ============================================================

class TestLifecycle:
    """Test session ownership."""

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        session = MagicMock()
        session.close = AsyncMock()
        reader = JsonRpcLedgerReader(PRIMARY, session=session)

        await reader.close()

        session.close.assert_not_awaited()

    def test_repr(self, rpc):
        assert PRIMARY in repr(rpc)
