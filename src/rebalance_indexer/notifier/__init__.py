"""Change notification layer - post-reduction pub/sub."""

from rebalance_indexer.notifier.channels import AlertSeverity, Channel
from rebalance_indexer.notifier.notifier import ChangeNotifier, Subscription

__all__ = [
    "AlertSeverity",
    "ChangeNotifier",
    "Channel",
    "Subscription",
]
