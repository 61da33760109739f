"""At-least-once ingestion queue between the chain readers and the reducer.

Two implementations share one protocol:

- ``RedisIngestionQueue``: durable lists in Redis. Items move atomically
  from ``pending`` to ``processing`` while a consumer handles them and are
  only removed on ``ack``; failed items wait in a ``delayed`` sorted set
  (scored by due time) and end up in ``dead`` after their last attempt.
- ``InMemoryIngestionQueue``: asyncio-based, single process, for local
  runs and tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
import time
import uuid
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from rebalance_indexer.ingestor.models import RawEvent

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_MAX_SECONDS = 60.0
DEFAULT_POLL_TIMEOUT_SECONDS = 1.0

# KEYS[1]=delayed zset, KEYS[2]=pending list, ARGV[1]=now.
_PROMOTE_DUE_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, member in ipairs(due) do
    redis.call('ZREM', KEYS[1], member)
    redis.call('LPUSH', KEYS[2], member)
end
return #due
"""


@dataclass
class QueueItem:
    """A raw event in flight, with its delivery bookkeeping."""

    event: RawEvent
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    enqueued_at: float = field(default_factory=time.time)
    last_error: str | None = None
    error_type: str | None = None
    # Exact serialized form as stored in Redis (needed to LREM it on ack).
    raw: str | None = field(default=None, compare=False, repr=False)

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "attempts": self.attempts,
                "enqueued_at": self.enqueued_at,
                "last_error": self.last_error,
                "error_type": self.error_type,
                "event": self.event.to_dict(),
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> QueueItem:
        text = raw.decode() if isinstance(raw, bytes) else raw
        data = json.loads(text)
        return cls(
            event=RawEvent.from_dict(data["event"]),
            id=str(data["id"]),
            attempts=int(data.get("attempts", 0)),
            enqueued_at=float(data.get("enqueued_at", 0.0)),
            last_error=data.get("last_error"),
            error_type=data.get("error_type"),
            raw=text,
        )


DeadLetterCallback = Callable[[QueueItem], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(base * 2**(attempt-1), max_delay)``."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BACKOFF_BASE_SECONDS
    max_delay: float = DEFAULT_BACKOFF_MAX_SECONDS

    def delay_for(self, attempt: int) -> float:
        return float(min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay))

    def should_retry(self, attempts: int, *, retryable: bool) -> bool:
        return retryable and attempts < self.max_attempts


class IngestionQueue(Protocol):
    """Queue interface consumed by the pipeline."""

    on_dead_letter: DeadLetterCallback | None

    async def start(self) -> None: ...

    async def enqueue(self, event: RawEvent) -> QueueItem: ...

    async def get(self, timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS) -> QueueItem | None: ...

    def consume(
        self,
        stop: asyncio.Event | None = None,
        *,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> AsyncIterator[QueueItem]: ...

    async def ack(self, item: QueueItem) -> None: ...

    async def nack(self, item: QueueItem, error: BaseException, *, retryable: bool = True) -> bool: ...

    async def promote_due(self) -> int: ...

    async def dead_letters(self, limit: int = 100) -> list[QueueItem]: ...

    async def size(self) -> int: ...


def _record_failure(item: QueueItem, error: BaseException) -> None:
    item.attempts += 1
    item.last_error = str(error) or type(error).__name__
    item.error_type = type(error).__name__


class InMemoryIngestionQueue:
    """Process-local queue with the same retry and dead-letter semantics."""

    def __init__(
        self,
        *,
        policy: RetryPolicy | None = None,
        on_dead_letter: DeadLetterCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.on_dead_letter = on_dead_letter
        self._clock = clock
        self._pending: deque[QueueItem] = deque()
        self._processing: dict[str, QueueItem] = {}
        self._delayed: list[tuple[float, int, QueueItem]] = []
        self._dead: list[QueueItem] = []
        self._seq = itertools.count()
        self._available = asyncio.Condition()

    async def start(self) -> None:
        """Nothing survives a restart in memory; present for protocol parity."""

    async def enqueue(self, event: RawEvent) -> QueueItem:
        item = QueueItem(event=event, enqueued_at=self._clock())
        async with self._available:
            self._pending.append(item)
            self._available.notify()
        return item

    async def get(self, timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS) -> QueueItem | None:
        await self.promote_due()
        async with self._available:
            if not self._pending:
                try:
                    await asyncio.wait_for(self._available.wait_for(lambda: bool(self._pending)), timeout)
                except asyncio.TimeoutError:
                    return None
            item = self._pending.popleft()
            self._processing[item.id] = item
            return item

    async def consume(
        self,
        stop: asyncio.Event | None = None,
        *,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> AsyncIterator[QueueItem]:
        while stop is None or not stop.is_set():
            item = await self.get(timeout=poll_timeout)
            if item is not None:
                yield item

    async def ack(self, item: QueueItem) -> None:
        self._processing.pop(item.id, None)

    async def nack(self, item: QueueItem, error: BaseException, *, retryable: bool = True) -> bool:
        """Record a failed attempt.

        Returns:
            True if the item was scheduled for retry, False if dead-lettered.
        """
        self._processing.pop(item.id, None)
        _record_failure(item, error)
        if self.policy.should_retry(item.attempts, retryable=retryable):
            due = self._clock() + self.policy.delay_for(item.attempts)
            heapq.heappush(self._delayed, (due, next(self._seq), item))
            logger.warning(
                "Retrying %s %s in %.1fs (attempt %d/%d): %s",
                item.event.event_name,
                item.event.event_id,
                due - self._clock(),
                item.attempts,
                self.policy.max_attempts,
                item.last_error,
            )
            return True
        self._dead.append(item)
        logger.error(
            "Dead-lettered %s %s after %d attempt(s): %s",
            item.event.event_name,
            item.event.event_id,
            item.attempts,
            item.last_error,
        )
        if self.on_dead_letter is not None:
            await self.on_dead_letter(item)
        return False

    async def promote_due(self) -> int:
        now = self._clock()
        promoted = 0
        async with self._available:
            while self._delayed and self._delayed[0][0] <= now:
                _, _, item = heapq.heappop(self._delayed)
                self._pending.append(item)
                promoted += 1
            if promoted:
                self._available.notify(promoted)
        return promoted

    async def dead_letters(self, limit: int = 100) -> list[QueueItem]:
        return list(reversed(self._dead))[:limit]

    async def size(self) -> int:
        return len(self._pending) + len(self._delayed)

    @property
    def in_flight(self) -> int:
        return len(self._processing)


class RedisIngestionQueue:
    """Redis-backed queue (lists + a sorted set for delayed retries).

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        queue = RedisIngestionQueue(redis, key_prefix="rebalance_indexer:queue:")
        await queue.start()
        await queue.enqueue(raw_event)
        async for item in queue.consume(stop_event):
            ...
            await queue.ack(item)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key_prefix: str = "rebalance_indexer:queue:",
        policy: RetryPolicy | None = None,
        on_dead_letter: DeadLetterCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.policy = policy or RetryPolicy()
        self.on_dead_letter = on_dead_letter
        self._clock = clock
        self.pending_key = f"{key_prefix}pending"
        self.processing_key = f"{key_prefix}processing"
        self.delayed_key = f"{key_prefix}delayed"
        self.dead_key = f"{key_prefix}dead"
        self._promote_script = redis.register_script(_PROMOTE_DUE_LUA)

    async def start(self) -> None:
        """Requeue items left in ``processing`` by a crashed consumer.

        Recovered items go back to the consuming end of ``pending`` in their
        original order. Must run before any consumer of this key prefix starts.
        """
        recovered = 0
        while await self._redis.lmove(self.processing_key, self.pending_key, "LEFT", "RIGHT") is not None:
            recovered += 1
        if recovered:
            logger.warning("Requeued %d orphaned in-flight queue item(s)", recovered)

    async def enqueue(self, event: RawEvent) -> QueueItem:
        item = QueueItem(event=event, enqueued_at=self._clock())
        await self._redis.lpush(self.pending_key, item.to_json())
        return item

    async def get(self, timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS) -> QueueItem | None:
        await self.promote_due()
        raw = await self._redis.blmove(self.pending_key, self.processing_key, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        return QueueItem.from_json(raw)

    async def consume(
        self,
        stop: asyncio.Event | None = None,
        *,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    ) -> AsyncIterator[QueueItem]:
        while stop is None or not stop.is_set():
            item = await self.get(timeout=poll_timeout)
            if item is not None:
                yield item

    async def ack(self, item: QueueItem) -> None:
        await self._redis.lrem(self.processing_key, 1, item.raw or item.to_json())

    async def nack(self, item: QueueItem, error: BaseException, *, retryable: bool = True) -> bool:
        """Record a failed attempt.

        Returns:
            True if the item was scheduled for retry, False if dead-lettered.
        """
        in_flight = item.raw or item.to_json()
        _record_failure(item, error)
        updated = item.to_json()

        pipe = self._redis.pipeline(transaction=True)
        pipe.lrem(self.processing_key, 1, in_flight)
        if self.policy.should_retry(item.attempts, retryable=retryable):
            delay = self.policy.delay_for(item.attempts)
            pipe.zadd(self.delayed_key, {updated: self._clock() + delay})
            await pipe.execute()
            item.raw = updated
            logger.warning(
                "Retrying %s %s in %.1fs (attempt %d/%d): %s",
                item.event.event_name,
                item.event.event_id,
                delay,
                item.attempts,
                self.policy.max_attempts,
                item.last_error,
            )
            return True

        pipe.lpush(self.dead_key, updated)
        await pipe.execute()
        item.raw = updated
        logger.error(
            "Dead-lettered %s %s after %d attempt(s): %s",
            item.event.event_name,
            item.event.event_id,
            item.attempts,
            item.last_error,
        )
        if self.on_dead_letter is not None:
            await self.on_dead_letter(item)
        return False

    async def promote_due(self) -> int:
        """Move retries whose backoff elapsed back onto ``pending``.

        The move runs as one server-side script, and the call is shielded
        so cancelling the caller cannot interrupt a promotion midway.
        """
        promoted = await asyncio.shield(
            self._promote_script(keys=[self.delayed_key, self.pending_key], args=[self._clock()])
        )
        return int(promoted)

    async def dead_letters(self, limit: int = 100) -> list[QueueItem]:
        raws = await self._redis.lrange(self.dead_key, 0, limit - 1)
        return [QueueItem.from_json(r) for r in raws]

    async def size(self) -> int:
        pending = await self._redis.llen(self.pending_key)
        delayed = await self._redis.zcard(self.delayed_key)
        return int(pending) + int(delayed)
