"""Notification channel names and alert severities."""

from enum import Enum


class Channel(str, Enum):
    """Pub/sub channels downstream consumers (UI push, alerting) listen on."""

    STRATEGY_CREATED = "strategy:created"
    STRATEGY_UPDATED = "strategy:updated"
    STRATEGY_PAUSED = "strategy:paused"
    STRATEGY_RESUMED = "strategy:resumed"
    STRATEGY_DELETED = "strategy:deleted"
    REBALANCE_COMPLETED = "rebalance:completed"
    REBALANCE_FAILED = "rebalance:failed"
    SWAP_EXECUTED = "swap:executed"
    EVENT_INDEXED = "event:indexed"
    GAS_UPDATED = "gas:updated"
    SYSTEM_ALERT = "system:alert"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
