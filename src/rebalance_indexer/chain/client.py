"""EVM chain client with retry, rate limiting and block caching.

This module provides the RPC client used by the backfill scanner and the
live subscriber:
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to a secondary RPC URL
- Block timestamp caching (in-process, optionally mirrored to Redis)
"""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from rebalance_indexer.errors import IndexerError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TIMESTAMP_CACHE_SIZE = 4096

# Block timestamps never change once final; cache them for a day in Redis.
BLOCK_TIMESTAMP_CACHE_TTL_SECONDS = 24 * 3600

# Transport-level failures worth retrying alongside JSON-RPC errors.
_RETRYABLE = (Web3Exception, OSError, asyncio.TimeoutError)


class ChainClientError(IndexerError):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """RPC client for a single EVM chain.

    Example:
        ```python
        client = ChainClient(
            chain_id=10143,
            rpc_url="https://testnet-rpc.monad.xyz",
            fallback_rpc_url="https://monad-testnet.example.org",
        )
        head = await client.get_latest_block_number()
        logs = await client.get_logs(head - 100, head, ["0x..."])
        ```
    """

    def __init__(
        self,
        chain_id: int,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timestamp_cache_size: int = DEFAULT_TIMESTAMP_CACHE_SIZE,
    ) -> None:
        """Initialize the chain client.

        Args:
            chain_id: EVM chain id this client talks to.
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block timestamps.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            timestamp_cache_size: In-process block timestamp cache entries.
        """
        self.chain_id = chain_id
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._timestamps: OrderedDict[int, int] = OrderedDict()
        self._timestamp_cache_size = timestamp_cache_size
        self._cache_prefix = f"chain:{chain_id}:"

    @property
    def codec(self) -> Any:
        """ABI codec of the underlying web3 instance."""
        return self._w3.codec

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call(self, w3: AsyncWeb3[AsyncHTTPProvider], label: str, func_name: str, *args: Any) -> Any:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return await method(*args)
            except _RETRYABLE as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed on chain %d (attempt %d/%d): %s",
                    label,
                    func_name,
                    self.chain_id,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        assert last_error is not None
        raise last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth method to call.
            *args: Positional arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            try:
                result = await self._call(self._w3, "Primary", func_name, *args)
                self._primary_healthy = True
                return result
            except _RETRYABLE as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            try:
                result = await self._call(self._w3_fallback, "Fallback", func_name, *args)
                logger.info("Fallback RPC succeeded for %s on chain %d", func_name, self.chain_id)
                return result
            except _RETRYABLE as e:
                last_error = e

        raise RPCError(f"RPC call {func_name} failed on chain {self.chain_id} after all retries: {last_error}")

    async def get_latest_block_number(self) -> int:
        """Current chain head."""
        block = await self._execute_with_retry("get_block", "latest")
        return int(block["number"])

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        addresses: Sequence[str],
        *,
        topics: Sequence[Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs`` for an inclusive block range."""
        filter_params: dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [AsyncWeb3.to_checksum_address(a) for a in addresses],
        }
        if topics:
            filter_params["topics"] = list(topics)
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        """Timestamp (unix seconds) of a block, cached."""
        cached = self._timestamps.get(block_number)
        if cached is not None:
            self._timestamps.move_to_end(block_number)
            return cached

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        redis_value = await self._get_cached(cache_key)
        if redis_value is not None:
            timestamp = int(redis_value)
        else:
            block = await self._execute_with_retry("get_block", block_number)
            timestamp = int(block["timestamp"])
            await self._set_cached(cache_key, str(timestamp), BLOCK_TIMESTAMP_CACHE_TTL_SECONDS)

        self._timestamps[block_number] = timestamp
        if len(self._timestamps) > self._timestamp_cache_size:
            self._timestamps.popitem(last=False)
        return timestamp

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        receipt = await self._execute_with_retry("get_transaction_receipt", tx_hash)
        return dict(receipt)

    async def get_transaction_gas_price(self, tx_hash: str) -> int | None:
        """Effective gas price paid by a transaction (wei).

        Prefers the receipt's ``effectiveGasPrice`` and falls back to the
        transaction's ``gasPrice`` for pre-London style receipts.
        """
        receipt = await self.get_transaction_receipt(tx_hash)
        price = receipt.get("effectiveGasPrice")
        if price is None:
            tx = await self._execute_with_retry("get_transaction", tx_hash)
            price = dict(tx).get("gasPrice")
        return int(price) if price is not None else None

    async def health_check(self) -> bool:
        """Check if the client can read the chain head.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self.get_latest_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
