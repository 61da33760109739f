"""Main pipeline orchestrator for the rebalance indexer.

This module provides the IndexerPipeline class that wires the chain
clients, ingestion queue, reducer and notifier together and runs the
reducer consumers, live subscribers and retry promoter as asyncio tasks.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from rebalance_indexer.chain.client import ChainClient
from rebalance_indexer.config import Settings, get_settings
from rebalance_indexer.errors import EventDecodeError
from rebalance_indexer.ingestor.backfill import BackfillScanner
from rebalance_indexer.ingestor.live import LiveSubscriber
from rebalance_indexer.ingestor.queue import (
    InMemoryIngestionQueue,
    QueueItem,
    RedisIngestionQueue,
    RetryPolicy,
)
from rebalance_indexer.notifier.channels import AlertSeverity, Channel
from rebalance_indexer.notifier.notifier import ChangeNotifier
from rebalance_indexer.reducer.reducer import EventReducer, ReductionOutcome
from rebalance_indexer.storage.database import DatabaseManager
from rebalance_indexer.storage.repos import DeadLetterDTO, DeadLetterRepository

if TYPE_CHECKING:
    from rebalance_indexer.ingestor.queue import IngestionQueue

logger = logging.getLogger(__name__)

PROMOTE_INTERVAL_SECONDS = 1.0
DRAIN_POLL_SECONDS = 0.05


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    events_processed: int = 0
    events_applied: int = 0
    retries: int = 0
    dead_lettered: int = 0
    errors: int = 0
    last_event_time: datetime | None = None
    last_error: str | None = None


class IndexerPipeline:
    """Runs the ingestion queue consumers and live subscribers.

    Pipeline flow:
        Chain Client → {Backfill Scanner | Live Subscriber} → Ingestion Queue
        → Event Reducer → Canonical State Store → Change Notifier

    Components not passed in are built from settings in ``start()``.

    Example:
        ```python
        from rebalance_indexer.config import get_settings
        from rebalance_indexer.pipeline import IndexerPipeline

        pipeline = IndexerPipeline(get_settings())
        await pipeline.start()
        result = await pipeline.scanner.run("monad")
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        queue: IngestionQueue | None = None,
        clients: Mapping[int, ChainClient] | None = None,
        notifier: ChangeNotifier | None = None,
        redis: Redis | None = None,
        live: bool | None = None,
        consumers: int | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db: Database manager (built from settings when omitted).
            queue: Ingestion queue (built from ``QUEUE_BACKEND`` when omitted).
            clients: Chain clients keyed by chain id.
            notifier: Change notifier shared with the reducer.
            redis: Redis client for the queue, cache and notifier mirror.
            live: Run live subscribers. Overrides ``LIVE_ENABLED``.
            consumers: Reducer consumer count. Overrides ``QUEUE_CONSUMERS``.
        """
        self._settings = settings or get_settings()
        self._live_enabled = live if live is not None else self._settings.live.enabled
        self._consumer_count = consumers or self._settings.queue.consumers

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._db = db
        self._owns_db = db is None
        self._queue = queue
        self._clients: dict[int, ChainClient] = dict(clients or {})
        self._owns_clients = clients is None
        self._notifier = notifier
        self._redis = redis
        self._owns_redis = redis is None

        self._reducer: EventReducer | None = None
        self._scanner: BackfillScanner | None = None
        self._subscribers: list[LiveSubscriber] = []
        self._in_flight = 0

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._consumer_tasks: list[asyncio.Task[None]] = []
        self._live_tasks: list[asyncio.Task[None]] = []
        self._promoter_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def scanner(self) -> BackfillScanner:
        if self._scanner is None:
            raise RuntimeError("Pipeline is not started")
        return self._scanner

    @property
    def reducer(self) -> EventReducer:
        if self._reducer is None:
            raise RuntimeError("Pipeline is not started")
        return self._reducer

    @property
    def subscribers(self) -> list[LiveSubscriber]:
        return list(self._subscribers)

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info(
                "Pipeline started: %d consumer(s), %d live subscriber(s)",
                len(self._consumer_tasks),
                len(self._live_tasks),
            )
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Consumers finish the item they are reducing before exiting and
        running backfills stop before their next batch.
        """
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()
        if self._scanner:
            self._scanner.pause()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Signal ``run()`` to stop (safe to call from a signal handler)."""
        if self._stop_event:
            self._stop_event.set()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until the queue is empty and no item is being reduced.

        Returns:
            True if drained, False on timeout.
        """
        if self._queue is None:
            return True

        async def _wait() -> None:
            assert self._queue is not None
            while await self._queue.size() > 0 or self._in_flight > 0:
                await asyncio.sleep(DRAIN_POLL_SECONDS)

        try:
            await asyncio.wait_for(_wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        if self._db is None:
            logger.debug("Initializing database manager...")
            self._db = DatabaseManager(settings.database.url)
        await self._db.ping()

        needs_redis = (self._queue is None and settings.queue.backend == "redis") or (
            self._notifier is None and settings.notifier_redis_enabled
        )
        if self._redis is None and needs_redis:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._notifier is None:
            mirror = self._redis if settings.notifier_redis_enabled else None
            self._notifier = ChangeNotifier(mirror)

        if self._queue is None:
            policy = RetryPolicy(
                max_attempts=settings.queue.max_attempts,
                base_delay=settings.queue.backoff_base_seconds,
                max_delay=settings.queue.backoff_max_seconds,
            )
            if settings.queue.backend == "memory":
                self._queue = InMemoryIngestionQueue(policy=policy, on_dead_letter=self._on_dead_letter)
            else:
                assert self._redis is not None
                self._queue = RedisIngestionQueue(
                    self._redis,
                    key_prefix=settings.queue.key_prefix,
                    policy=policy,
                    on_dead_letter=self._on_dead_letter,
                )
        elif self._queue.on_dead_letter is None:
            self._queue.on_dead_letter = self._on_dead_letter
        await self._queue.start()

        if not self._clients:
            for chain in settings.chains:
                logger.debug("Initializing chain client for %s...", chain.name)
                self._clients[chain.chain_id] = ChainClient(
                    chain.chain_id,
                    chain.rpc_url,
                    fallback_rpc_url=chain.fallback_rpc_url,
                    redis=self._redis,
                )

        self._reducer = EventReducer(self._db, notifier=self._notifier)
        self._scanner = BackfillScanner(
            db=self._db,
            queue=self._queue,
            chains=settings.chains,
            clients=self._clients,
            batch_size=settings.backfill.batch_size,
            pause_seconds=settings.backfill.pause_seconds,
            lease_ttl_seconds=settings.backfill.lease_ttl_seconds,
        )

        if self._live_enabled:
            self._subscribers = [
                LiveSubscriber(
                    db=self._db,
                    queue=self._queue,
                    chain=chain,
                    client=self._clients[chain.chain_id],
                    poll_interval_seconds=settings.live.poll_interval_seconds,
                    max_range_blocks=settings.live.max_range_blocks,
                )
                for chain in settings.chains
                if chain.chain_id in self._clients
            ]

    async def _start_background_services(self) -> None:
        """Start consumer, live and promoter tasks."""
        assert self._stop_event is not None
        for i in range(self._consumer_count):
            self._consumer_tasks.append(asyncio.create_task(self._run_consumer(i), name=f"consumer-{i}"))
        for subscriber in self._subscribers:
            logger.debug("Starting live subscriber for %s...", subscriber.chain.name)
            self._live_tasks.append(
                asyncio.create_task(subscriber.run(self._stop_event), name=f"live-{subscriber.chain.name}")
            )
        self._promoter_task = asyncio.create_task(self._run_promoter(), name="queue-promoter")

    async def _stop_background_services(self) -> None:
        """Let consumers, subscribers and the promoter exit on the stop event."""
        tasks = [*self._consumer_tasks, *self._live_tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer_tasks = []
        self._live_tasks = []

        if self._promoter_task:
            # Exits on the stop event once the current promotion has finished.
            await self._promoter_task
            self._promoter_task = None

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._owns_clients:
            for client in self._clients.values():
                await client.aclose()
            self._clients = {}

        if self._db and self._owns_db:
            await self._db.dispose_async()
            self._db = None

        if self._redis and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def _run_consumer(self, index: int) -> None:
        assert self._queue is not None and self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                async for item in self._queue.consume(self._stop_event):
                    await self._process_item(item)
            except Exception as e:
                self._stats.errors += 1
                self._stats.last_error = str(e)
                logger.exception("Consumer %d failed reading the queue", index)
                await asyncio.sleep(PROMOTE_INTERVAL_SECONDS)
        logger.debug("Consumer %d drained", index)

    async def _process_item(self, item: QueueItem) -> None:
        """Reduce one queue item and settle it (ack, retry or dead-letter)."""
        assert self._queue is not None and self._reducer is not None
        self._in_flight += 1
        try:
            try:
                outcome = await self._reducer.reduce(item.event)
            except EventDecodeError as e:
                self._record_error(e)
                logger.error("Undecodable event %s: %s", item.event.event_id, e)
                await self._queue.nack(item, e, retryable=False)
            except Exception as e:
                self._record_error(e)
                logger.error(
                    "Failed to reduce %s %s: %s", item.event.event_name, item.event.event_id, e, exc_info=True
                )
                if await self._queue.nack(item, e, retryable=True):
                    self._stats.retries += 1
            else:
                await self._queue.ack(item)
                self._stats.events_processed += 1
                self._stats.last_event_time = datetime.now(UTC)
                if outcome is ReductionOutcome.APPLIED:
                    self._stats.events_applied += 1
        finally:
            self._in_flight -= 1

    def _record_error(self, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error)

    async def _run_promoter(self) -> None:
        """Move due retries back onto the pending list."""
        assert self._queue is not None and self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                promoted = await self._queue.promote_due()
                if promoted:
                    logger.debug("Promoted %d retry item(s)", promoted)
            except Exception as e:
                logger.warning("Retry promotion failed: %s", e)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=PROMOTE_INTERVAL_SECONDS)

    async def _on_dead_letter(self, item: QueueItem) -> None:
        self._stats.dead_lettered += 1
        event = item.event
        if self._db is not None:
            async with self._db.get_async_session() as session:
                await DeadLetterRepository(session).insert(
                    DeadLetterDTO(
                        chain_id=event.chain_id,
                        event_name=event.event_name,
                        tx_hash=event.transaction_hash,
                        log_index=event.log_index,
                        payload=json.dumps(event.to_dict(), sort_keys=True),
                        attempts=item.attempts,
                        error_type=item.error_type or "Exception",
                        message=item.last_error or "",
                    )
                )
        if self._notifier is not None:
            await self._notifier.publish(
                Channel.SYSTEM_ALERT,
                {
                    "chainId": event.chain_id,
                    "type": "DEAD_LETTER",
                    "severity": AlertSeverity.WARNING.value,
                    "message": f"{event.event_name} {event.event_id} dead-lettered after {item.attempts} attempt(s)",
                    "errorType": item.error_type,
                },
            )

    async def run(self) -> None:
        """Start the pipeline and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> IndexerPipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
