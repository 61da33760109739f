"""Data ingestion layer - raw contract events and the ingestion queue."""

from rebalance_indexer.ingestor.models import (
    KNOWN_EVENTS,
    ChainEvent,
    RawEvent,
    StrategyEvent,
    decode_event,
)
from rebalance_indexer.ingestor.queue import (
    IngestionQueue,
    InMemoryIngestionQueue,
    QueueItem,
    RedisIngestionQueue,
    RetryPolicy,
)

__all__ = [
    "KNOWN_EVENTS",
    "ChainEvent",
    "InMemoryIngestionQueue",
    "IngestionQueue",
    "QueueItem",
    "RawEvent",
    "RedisIngestionQueue",
    "RetryPolicy",
    "StrategyEvent",
    "decode_event",
]
