"""Reducer module - folds contract events into the canonical state."""

from rebalance_indexer.reducer.reducer import (
    EventReducer,
    RebalanceStatus,
    ReducerStats,
    ReductionOutcome,
    SystemEventType,
    daily_key,
)

__all__ = [
    "EventReducer",
    "RebalanceStatus",
    "ReducerStats",
    "ReductionOutcome",
    "SystemEventType",
    "daily_key",
]
