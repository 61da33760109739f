"""Chain access - RPC client, contract ABIs and log decoding."""

from rebalance_indexer.chain.abis import ALL_EVENTS, REBALANCE_EXECUTOR_EVENTS, STRATEGY_REGISTRY_EVENTS
from rebalance_indexer.chain.client import ChainClient, ChainClientError, RateLimiter, RPCError
from rebalance_indexer.chain.decoder import LogDecoder, event_topic

__all__ = [
    "ALL_EVENTS",
    "REBALANCE_EXECUTOR_EVENTS",
    "STRATEGY_REGISTRY_EVENTS",
    "ChainClient",
    "ChainClientError",
    "LogDecoder",
    "RPCError",
    "RateLimiter",
    "event_topic",
]
