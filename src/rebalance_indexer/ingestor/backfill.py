"""Historical backfill of contract events.

The scanner walks a block range in fixed-size batches, enqueues every
decoded event and persists its cursor after each batch, so an interrupted
run can be resumed without re-scanning completed batches. Only one
backfill per chain runs at a time: the run holds a lease stored in the
chain's ``scan_progress`` row, renewed after each batch and released when
the run ends.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rebalance_indexer.chain.decoder import LogDecoder
from rebalance_indexer.errors import AlreadyRunningError, UnknownChainError
from rebalance_indexer.ingestor.fetch import fetch_raw_events, store_undecodable
from rebalance_indexer.storage.repos import ScanProgressRepository

if TYPE_CHECKING:
    from rebalance_indexer.chain.client import ChainClient
    from rebalance_indexer.config import ChainSettings
    from rebalance_indexer.ingestor.queue import IngestionQueue
    from rebalance_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_PAUSE_SECONDS = 0.1
DEFAULT_LEASE_TTL_SECONDS = 300


@dataclass
class BackfillResult:
    events_processed: int = 0
    blocks_scanned: int = 0
    decode_errors: int = 0
    paused: bool = False


@dataclass(frozen=True)
class BackfillProgress:
    chain_id: int
    chain: str
    is_backfilling: bool
    current_block: int | None
    latest_indexed_block: int | None
    target_block: int | None
    remaining_blocks: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class BackfillScanner:
    """Scans historical blocks for indexed events and feeds the queue.

    Example:
        ```python
        scanner = BackfillScanner(db=db, queue=queue, chains=settings.chains, clients=clients)
        result = await scanner.run("monad")
        progress = await scanner.get_progress("monad")
        ```
    """

    def __init__(
        self,
        *,
        db: DatabaseManager,
        queue: IngestionQueue,
        chains: Iterable[ChainSettings],
        clients: Mapping[int, ChainClient],
        batch_size: int = DEFAULT_BATCH_SIZE,
        pause_seconds: float = DEFAULT_PAUSE_SECONDS,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
        owner: str | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._db = db
        self._queue = queue
        self._chains = list(chains)
        self._clients = clients
        self._batch_size = batch_size
        self._pause_seconds = pause_seconds
        self._lease_ttl_seconds = lease_ttl_seconds
        self.owner = owner or _default_owner()
        self._decoders: dict[int, LogDecoder] = {}
        self._active: set[int] = set()
        self._pause_requested: set[int] = set()

    def _resolve(self, chain: str | int) -> ChainSettings:
        for cfg in self._chains:
            if chain in (cfg.name, cfg.chain_id) or str(chain) == str(cfg.chain_id):
                return cfg
        raise UnknownChainError(f"Unknown or disabled chain: {chain}")

    def _client(self, cfg: ChainSettings) -> ChainClient:
        client = self._clients.get(cfg.chain_id)
        if client is None:
            raise UnknownChainError(f"No RPC client configured for {cfg.name}")
        return client

    def _decoder(self, cfg: ChainSettings, client: ChainClient) -> LogDecoder:
        decoder = self._decoders.get(cfg.chain_id)
        if decoder is None:
            decoder = LogDecoder(cfg.chain_id, codec=client.codec)
            self._decoders[cfg.chain_id] = decoder
        return decoder

    def is_running(self, chain: str | int) -> bool:
        return self._resolve(chain).chain_id in self._active

    async def run(
        self,
        chain: str | int,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> BackfillResult:
        """Backfill every configured contract of a chain.

        Args:
            chain: Chain name or id.
            from_block: First block (default: the chain's deployment block).
            to_block: Last block, inclusive (default: head at invocation).

        Raises:
            AlreadyRunningError: If a backfill for the chain is already running.
        """
        cfg = self._resolve(chain)
        return await self._scan(cfg, cfg.contract_addresses, from_block, to_block, advance_indexed=True)

    async def backfill_chain(
        self,
        chain: str | int,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> BackfillResult:
        return await self.run(chain, from_block, to_block)

    async def backfill_contract(
        self,
        chain: str | int,
        contract: str,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> BackfillResult:
        """Re-index a single contract address.

        Shares the chain lease with full backfills but never moves the
        chain's ``latest_indexed_block``: other contracts were not scanned.
        """
        cfg = self._resolve(chain)
        return await self._scan(cfg, [contract.lower()], from_block, to_block, advance_indexed=False)

    async def resume(self, chain: str | int, to_block: int | None = None) -> BackfillResult:
        """Continue a chain's backfill from ``latest_indexed_block + 1``."""
        cfg = self._resolve(chain)
        async with self._db.get_async_session() as session:
            progress = await ScanProgressRepository(session).get(cfg.chain_id)
        if progress is None or progress.latest_indexed_block is None:
            from_block = cfg.start_block
        else:
            from_block = progress.latest_indexed_block + 1
        logger.info("Resuming %s backfill from block %d", cfg.name, from_block)
        return await self._scan(cfg, cfg.contract_addresses, from_block, to_block, advance_indexed=True)

    def pause(self, chain: str | int | None = None) -> None:
        """Ask running backfills to stop before their next batch."""
        if chain is None:
            targets = set(self._active)
        else:
            targets = {self._resolve(chain).chain_id}
        self._pause_requested |= targets
        for chain_id in targets:
            logger.info("Pause requested for backfill on chain %d", chain_id)

    async def get_progress(self, chain: str | int) -> BackfillProgress:
        cfg = self._resolve(chain)
        async with self._db.get_async_session() as session:
            progress = await ScanProgressRepository(session).get(cfg.chain_id)

        if progress is None:
            return BackfillProgress(
                chain_id=cfg.chain_id,
                chain=cfg.name,
                is_backfilling=cfg.chain_id in self._active,
                current_block=None,
                latest_indexed_block=None,
                target_block=None,
                remaining_blocks=0,
            )

        lease_held = False
        if progress.lease_owner is not None and progress.lease_expires_at is not None:
            expires = progress.lease_expires_at
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=UTC)
            lease_held = expires > datetime.now(UTC)

        remaining = 0
        if progress.target_block is not None and progress.current_block is not None:
            remaining = max(progress.target_block - progress.current_block, 0)

        return BackfillProgress(
            chain_id=cfg.chain_id,
            chain=cfg.name,
            is_backfilling=lease_held or cfg.chain_id in self._active,
            current_block=progress.current_block,
            latest_indexed_block=progress.latest_indexed_block,
            target_block=progress.target_block,
            remaining_blocks=remaining,
        )

    async def _acquire(self, cfg: ChainSettings) -> None:
        if cfg.chain_id in self._active:
            raise AlreadyRunningError(cfg.name)
        self._active.add(cfg.chain_id)
        try:
            async with self._db.get_async_session() as session:
                acquired = await ScanProgressRepository(session).acquire_lease(
                    cfg.chain_id, owner=self.owner, ttl_seconds=self._lease_ttl_seconds
                )
        except Exception:
            self._active.discard(cfg.chain_id)
            raise
        if not acquired:
            self._active.discard(cfg.chain_id)
            raise AlreadyRunningError(cfg.name)

    async def _release(self, cfg: ChainSettings) -> None:
        try:
            async with self._db.get_async_session() as session:
                await ScanProgressRepository(session).release_lease(cfg.chain_id, owner=self.owner)
        finally:
            self._active.discard(cfg.chain_id)
            self._pause_requested.discard(cfg.chain_id)

    async def _scan(
        self,
        cfg: ChainSettings,
        addresses: list[str],
        from_block: int | None,
        to_block: int | None,
        *,
        advance_indexed: bool,
    ) -> BackfillResult:
        client = self._client(cfg)
        await self._acquire(cfg)
        self._pause_requested.discard(cfg.chain_id)
        result = BackfillResult()
        try:
            start = cfg.start_block if from_block is None else from_block
            end = await client.get_latest_block_number() if to_block is None else to_block
            if end < start:
                logger.info("Nothing to backfill on %s (from %d > to %d)", cfg.name, start, end)
                return result
            if not addresses:
                logger.warning("No contract addresses configured for %s; skipping backfill", cfg.name)
                return result

            async with self._db.get_async_session() as session:
                await ScanProgressRepository(session).set_window(
                    cfg.chain_id, current_block=start, target_block=end
                )
            logger.info("Backfilling %s blocks %d-%d (%d contract(s))", cfg.name, start, end, len(addresses))

            decoder = self._decoder(cfg, client)
            batch_start = start
            while batch_start <= end:
                if cfg.chain_id in self._pause_requested:
                    logger.info("Backfill on %s paused before block %d", cfg.name, batch_start)
                    result.paused = True
                    break

                batch_end = min(batch_start + self._batch_size - 1, end)
                fetched = await fetch_raw_events(client, decoder, addresses, batch_start, batch_end)
                for raw in fetched.events:
                    await self._queue.enqueue(raw)

                async with self._db.get_async_session() as session:
                    await store_undecodable(session, fetched)
                    progress = ScanProgressRepository(session)
                    await progress.record_batch(cfg.chain_id, to_block=batch_end, advance_indexed=advance_indexed)
                    renewed = await progress.renew_lease(
                        cfg.chain_id, owner=self.owner, ttl_seconds=self._lease_ttl_seconds
                    )

                result.events_processed += len(fetched.events)
                result.decode_errors += fetched.decode_errors
                result.blocks_scanned += batch_end - batch_start + 1
                logger.debug(
                    "Backfill %s: blocks %d-%d, %d event(s)",
                    cfg.name,
                    batch_start,
                    batch_end,
                    len(fetched.events),
                )
                if not renewed:
                    logger.error("Lost backfill lease for %s at block %d; stopping", cfg.name, batch_end)
                    break

                batch_start = batch_end + 1
                if batch_start <= end and self._pause_seconds > 0:
                    await asyncio.sleep(self._pause_seconds)

            logger.info(
                "Backfill on %s finished: %d event(s) over %d block(s)",
                cfg.name,
                result.events_processed,
                result.blocks_scanned,
            )
            return result
        finally:
            await self._release(cfg)
