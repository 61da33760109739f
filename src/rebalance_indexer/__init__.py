"""Multi-chain indexer for portfolio rebalancing contract events."""

__version__ = "0.1.0"
