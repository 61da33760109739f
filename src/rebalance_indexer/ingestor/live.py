"""Live head follower.

Polls the chain head and enqueues events from newly observed blocks,
decoded the same way the backfill scanner decodes them. Overlap with a
backfill (or a reorg replay) produces duplicate deliveries, which the
reducer absorbs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from rebalance_indexer.chain.client import ChainClientError
from rebalance_indexer.chain.decoder import LogDecoder
from rebalance_indexer.ingestor.fetch import FetchResult, fetch_raw_events, store_undecodable
from rebalance_indexer.storage.repos import ScanProgressRepository

if TYPE_CHECKING:
    from rebalance_indexer.chain.client import ChainClient
    from rebalance_indexer.config import ChainSettings
    from rebalance_indexer.ingestor.queue import IngestionQueue
    from rebalance_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_RANGE_BLOCKS = 1000
MAX_BACKOFF_SECONDS = 30.0


class LiveSubscriber:
    """Follows one chain's head and feeds the ingestion queue."""

    def __init__(
        self,
        *,
        db: DatabaseManager,
        queue: IngestionQueue,
        chain: ChainSettings,
        client: ChainClient,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_range_blocks: int = DEFAULT_MAX_RANGE_BLOCKS,
        max_backoff_seconds: float = MAX_BACKOFF_SECONDS,
    ) -> None:
        self._db = db
        self._queue = queue
        self.chain = chain
        self._client = client
        self._decoder = LogDecoder(chain.chain_id, codec=client.codec)
        self._poll_interval = poll_interval_seconds
        self._max_range = max(1, max_range_blocks)
        self._max_backoff = max_backoff_seconds
        self._cursor: int | None = None
        self._failures = 0
        self.events_enqueued = 0

    @property
    def cursor(self) -> int | None:
        """Last block whose logs were enqueued."""
        return self._cursor

    def next_delay(self) -> float:
        if self._failures == 0:
            return self._poll_interval
        return min(self._poll_interval * (2**self._failures), self._max_backoff)

    async def poll_once(self) -> int:
        """Fetch logs for blocks above the cursor.

        The first poll only records the current head: live delivery starts
        with the next block.

        Returns:
            Number of events enqueued.
        """
        head = await self._client.get_latest_block_number()
        if self._cursor is None:
            self._cursor = head
            await self._record_cursor(head)
            logger.info("Live subscriber for %s starting above block %d", self.chain.name, head)
            return 0
        if head <= self._cursor:
            return 0

        from_block = self._cursor + 1
        to_block = min(head, self._cursor + self._max_range)
        fetched = await fetch_raw_events(
            self._client, self._decoder, self.chain.contract_addresses, from_block, to_block
        )
        for raw in fetched.events:
            await self._queue.enqueue(raw)

        self._cursor = to_block
        await self._record_cursor(to_block, fetched)
        self.events_enqueued += len(fetched.events)
        if fetched.events:
            logger.debug(
                "Live %s: blocks %d-%d, %d event(s)", self.chain.name, from_block, to_block, len(fetched.events)
            )
        return len(fetched.events)

    async def _record_cursor(self, block_number: int, fetched: FetchResult | None = None) -> None:
        async with self._db.get_async_session() as session:
            if fetched is not None:
                await store_undecodable(session, fetched)
            await ScanProgressRepository(session).set_live_block(self.chain.chain_id, block_number)

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set."""
        if not self.chain.contract_addresses:
            logger.warning("No contract addresses configured for %s; live subscriber idle", self.chain.name)
            return

        while not stop.is_set():
            try:
                await self.poll_once()
                self._failures = 0
            except ChainClientError as e:
                self._failures += 1
                logger.warning(
                    "Live poll on %s failed (retry in %.1fs): %s", self.chain.name, self.next_delay(), e
                )
            except Exception:
                self._failures += 1
                logger.exception("Unexpected error in live poll on %s", self.chain.name)

            try:
                await asyncio.wait_for(stop.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass

        logger.info("Live subscriber for %s stopped at block %s", self.chain.name, self._cursor)

    async def health_check(self) -> bool:
        return await self._client.health_check()
