"""Tests for the chain RPC client."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import MONAD, REGISTRY, tx
from web3 import Web3
from web3.exceptions import Web3Exception

from rebalance_indexer.chain.client import ChainClient, RateLimiter, RPCError


def _eth(**methods) -> MagicMock:
    w3 = MagicMock()
    for name, mock in methods.items():
        setattr(w3.eth, name, mock)
    return w3


@pytest.fixture
def client() -> ChainClient:
    return ChainClient(
        MONAD,
        "http://localhost:8545",
        max_requests_per_second=1000,
        max_retries=2,
        retry_delay_seconds=0,
    )


class TestRetryAndFailover:
    async def test_latest_block_number(self, client) -> None:
        client._w3 = _eth(get_block=AsyncMock(return_value={"number": 42}))
        assert await client.get_latest_block_number() == 42
        client._w3.eth.get_block.assert_awaited_once_with("latest")

    async def test_retries_transient_errors(self, client) -> None:
        client._w3 = _eth(get_block=AsyncMock(side_effect=[Web3Exception("503"), {"number": 7}]))
        assert await client.get_latest_block_number() == 7
        assert client._w3.eth.get_block.await_count == 2

    async def test_fails_over_to_fallback(self) -> None:
        client = ChainClient(
            MONAD,
            "http://primary:8545",
            fallback_rpc_url="http://fallback:8545",
            max_requests_per_second=1000,
            max_retries=2,
            retry_delay_seconds=0,
        )
        client._w3 = _eth(get_block=AsyncMock(side_effect=Web3Exception("down")))
        client._w3_fallback = _eth(get_block=AsyncMock(return_value={"number": 9}))

        assert await client.get_latest_block_number() == 9
        assert client._w3.eth.get_block.await_count == 2
        assert client._primary_healthy is False

        # Primary is skipped until the recovery interval passes.
        await client.get_latest_block_number()
        assert client._w3.eth.get_block.await_count == 2

    async def test_raises_rpc_error_when_exhausted(self, client) -> None:
        client._w3 = _eth(get_block=AsyncMock(side_effect=OSError("connection refused")))
        with pytest.raises(RPCError):
            await client.get_latest_block_number()
        assert await client.health_check() is False


class TestQueries:
    async def test_get_logs_checksums_addresses(self, client) -> None:
        client._w3 = _eth(get_logs=AsyncMock(return_value=[{"logIndex": 0}]))

        logs = await client.get_logs(10, 20, [REGISTRY])

        assert logs == [{"logIndex": 0}]
        params = client._w3.eth.get_logs.await_args.args[0]
        assert params == {
            "fromBlock": 10,
            "toBlock": 20,
            "address": [Web3.to_checksum_address(REGISTRY)],
        }

    async def test_block_timestamp_cached_in_process(self, client) -> None:
        client._w3 = _eth(get_block=AsyncMock(return_value={"timestamp": 1_700_000_000}))

        assert await client.get_block_timestamp(5) == 1_700_000_000
        assert await client.get_block_timestamp(5) == 1_700_000_000
        client._w3.eth.get_block.assert_awaited_once_with(5)

    async def test_block_timestamp_cache_evicts_oldest(self) -> None:
        client = ChainClient(MONAD, "http://localhost:8545", timestamp_cache_size=1, retry_delay_seconds=0)
        client._w3 = _eth(get_block=AsyncMock(return_value={"timestamp": 1}))

        await client.get_block_timestamp(1)
        await client.get_block_timestamp(2)
        await client.get_block_timestamp(1)
        assert client._w3.eth.get_block.await_count == 3

    async def test_block_timestamp_uses_redis(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=[b"1234", None])
        redis.set = AsyncMock()
        client = ChainClient(MONAD, "http://localhost:8545", redis=redis, retry_delay_seconds=0)
        client._w3 = _eth(get_block=AsyncMock(return_value={"timestamp": 99}))

        assert await client.get_block_timestamp(1) == 1234
        client._w3.eth.get_block.assert_not_awaited()

        assert await client.get_block_timestamp(2) == 99
        key, value = redis.set.await_args.args
        assert key == f"chain:{MONAD}:block_ts:2"
        assert value == "99"
        assert redis.set.await_args.kwargs["ex"] == 24 * 3600

    async def test_redis_errors_fall_through_to_rpc(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        client = ChainClient(MONAD, "http://localhost:8545", redis=redis, retry_delay_seconds=0)
        client._w3 = _eth(get_block=AsyncMock(return_value={"timestamp": 5}))

        assert await client.get_block_timestamp(3) == 5

    async def test_gas_price_from_receipt(self, client) -> None:
        client._w3 = _eth(
            get_transaction_receipt=AsyncMock(return_value={"effectiveGasPrice": 50}),
            get_transaction=AsyncMock(),
        )
        assert await client.get_transaction_gas_price(tx(1)) == 50
        client._w3.eth.get_transaction.assert_not_awaited()

    async def test_gas_price_falls_back_to_transaction(self, client) -> None:
        client._w3 = _eth(
            get_transaction_receipt=AsyncMock(return_value={"status": 1}),
            get_transaction=AsyncMock(return_value={"gasPrice": 30}),
        )
        assert await client.get_transaction_gas_price(tx(1)) == 30

        client._w3.eth.get_transaction = AsyncMock(return_value={})
        assert await client.get_transaction_gas_price(tx(1)) is None


class TestRateLimiter:
    async def test_acquire_consumes_tokens(self) -> None:
        limiter = RateLimiter.create(5)
        await limiter.acquire()
        await limiter.acquire(2)
        assert limiter.tokens == pytest.approx(2, abs=0.1)

    async def test_acquire_waits_for_refill(self) -> None:
        limiter = RateLimiter.create(100)
        limiter.tokens = 0
        await limiter.acquire()
        assert limiter.tokens < 1
