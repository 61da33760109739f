"""Exception hierarchy shared across the indexer."""


class IndexerError(Exception):
    """Base exception for indexer errors."""


class UnknownChainError(IndexerError):
    """Raised when a chain name or id is not configured."""


class AlreadyRunningError(IndexerError):
    """Raised when a backfill is started for a chain that already has one running."""

    def __init__(self, chain: str) -> None:
        super().__init__(f"Backfill already in progress for {chain}")
        self.chain = chain


class EventDecodeError(IndexerError):
    """Raised when a raw event payload cannot be decoded into a typed event.

    Decode failures are permanent: retrying the same payload cannot succeed.
    """
