"""In-process publish/subscribe for post-reduction change notifications.

Handlers run independently of each other: an exception raised by one is
logged and never reaches the publisher or its siblings. When a Redis
client is configured every payload is also published as JSON on the
Redis channel of the same name, so out-of-process consumers (websocket
gateways, alerting) can follow along.
"""

from __future__ import annotations

import inspect
import itertools
import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "indexer"

Handler = Callable[[dict[str, Any]], Awaitable[None] | None]


def _json_default(value: object) -> object:
    """Serialize payload values that stdlib json can't encode."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _channel_name(channel: str | Enum) -> str:
    return str(channel.value) if isinstance(channel, Enum) else str(channel)


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``subscribe``; pass it to ``unsubscribe``."""

    id: int
    channel: str
    handler: Handler


class ChangeNotifier:
    """Fans out domain changes to in-process handlers and, optionally, Redis."""

    def __init__(self, redis: Redis | None = None, *, source: str = DEFAULT_SOURCE) -> None:
        """Initialize the notifier.

        Args:
            redis: Optional Redis client; payloads are mirrored to Redis pub/sub.
            source: Value of the ``source`` field stamped on every payload.
        """
        self._redis = redis
        self._source = source
        self._subscriptions: dict[str, dict[int, Subscription]] = defaultdict(dict)
        self._ids = itertools.count(1)
        self.published = 0
        self.handler_errors = 0

    def subscribe(self, channel: str | Enum, handler: Handler) -> Subscription:
        name = _channel_name(channel)
        subscription = Subscription(id=next(self._ids), channel=name, handler=handler)
        self._subscriptions[name][subscription.id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        handlers = self._subscriptions.get(subscription.channel)
        if not handlers or subscription.id not in handlers:
            return False
        del handlers[subscription.id]
        if not handlers:
            del self._subscriptions[subscription.channel]
        return True

    def active_channels(self) -> list[str]:
        """Channels with at least one in-process subscriber."""
        return sorted(name for name, handlers in self._subscriptions.items() if handlers)

    async def publish(self, channel: str | Enum, payload: dict[str, Any]) -> dict[str, Any]:
        """Publish a payload stamped with ``timestamp`` and ``source``.

        Returns:
            The payload as delivered.
        """
        name = _channel_name(channel)
        message = {
            **payload,
            "timestamp": datetime.now(UTC).isoformat(),
            "source": self._source,
        }
        self.published += 1

        for subscription in list(self._subscriptions.get(name, {}).values()):
            try:
                result = subscription.handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.handler_errors += 1
                logger.exception("Notification handler %d failed on %s", subscription.id, name)

        if self._redis is not None:
            try:
                await self._redis.publish(name, json.dumps(message, default=_json_default))
            except Exception as e:
                logger.warning("Redis publish failed on %s: %s", name, e)

        return message
