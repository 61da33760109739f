"""Tests for the change notifier."""

import json
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from rebalance_indexer.notifier import AlertSeverity, ChangeNotifier, Channel


class TestChangeNotifier:
    async def test_publish_stamps_timestamp_and_source(self) -> None:
        notifier = ChangeNotifier(source="test")
        received = []
        notifier.subscribe(Channel.STRATEGY_CREATED, received.append)

        message = await notifier.publish(Channel.STRATEGY_CREATED, {"strategyId": 1})

        assert received == [message]
        assert message["strategyId"] == 1
        assert message["source"] == "test"
        assert datetime.fromisoformat(message["timestamp"]).tzinfo == UTC
        assert notifier.published == 1

    async def test_channels_are_isolated(self) -> None:
        notifier = ChangeNotifier()
        created, paused = [], []
        notifier.subscribe(Channel.STRATEGY_CREATED, created.append)
        notifier.subscribe("strategy:paused", paused.append)

        await notifier.publish("strategy:paused", {"strategyId": 2})

        assert created == []
        assert len(paused) == 1

    async def test_async_handlers_awaited(self) -> None:
        notifier = ChangeNotifier()
        handler = AsyncMock()
        notifier.subscribe(Channel.SWAP_EXECUTED, handler)

        await notifier.publish(Channel.SWAP_EXECUTED, {"amountIn": 5})
        handler.assert_awaited_once()

    async def test_handler_failure_is_isolated(self, caplog) -> None:
        notifier = ChangeNotifier()
        received = []

        def broken(_msg):
            raise RuntimeError("boom")

        notifier.subscribe(Channel.SYSTEM_ALERT, broken)
        notifier.subscribe(Channel.SYSTEM_ALERT, received.append)

        await notifier.publish(Channel.SYSTEM_ALERT, {"severity": AlertSeverity.CRITICAL.value})

        assert len(received) == 1
        assert notifier.handler_errors == 1
        assert "Notification handler" in caplog.text

    async def test_unsubscribe(self) -> None:
        notifier = ChangeNotifier()
        received = []
        sub = notifier.subscribe(Channel.GAS_UPDATED, received.append)
        assert notifier.active_channels() == ["gas:updated"]

        assert notifier.unsubscribe(sub) is True
        assert notifier.unsubscribe(sub) is False
        assert notifier.active_channels() == []

        await notifier.publish(Channel.GAS_UPDATED, {"gasPrice": 1})
        assert received == []

    async def test_redis_mirror_serializes_payload(self) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock()
        notifier = ChangeNotifier(redis)

        await notifier.publish(
            Channel.REBALANCE_COMPLETED,
            {"driftPercentage": Decimal("2.5"), "txHash": b"\x01\x02", "severity": AlertSeverity.INFO},
        )

        channel, body = redis.publish.await_args.args
        assert channel == "rebalance:completed"
        payload = json.loads(body)
        assert payload["driftPercentage"] == "2.5"
        assert payload["txHash"] == "0x0102"
        assert payload["severity"] == "info"

    async def test_redis_failure_does_not_raise(self, caplog) -> None:
        redis = MagicMock()
        redis.publish = AsyncMock(side_effect=ConnectionError("down"))
        notifier = ChangeNotifier(redis)
        received = []
        notifier.subscribe(Channel.EVENT_INDEXED, received.append)

        await notifier.publish(Channel.EVENT_INDEXED, {"chainId": 1})

        assert len(received) == 1
        assert "Redis publish failed" in caplog.text

    @pytest.mark.parametrize("channel", list(Channel))
    def test_channel_names(self, channel) -> None:
        group, _, action = channel.value.partition(":")
        assert group and action
