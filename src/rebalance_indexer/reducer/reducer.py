"""Event reducer: folds typed contract events into the canonical state.

Each raw event is decoded once into a typed variant and dispatched to one
handler per event kind. A handler runs inside a single database
transaction and only uses keyed upserts / guarded updates, so replaying
an event leaves the stored state unchanged and concurrent reductions
cannot lose updates.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from rebalance_indexer.ingestor.models import (
    ChainEvent,
    DexApprovalUpdated,
    EmergencyPaused,
    EmergencyUnpaused,
    ExecutorUpdated,
    LastRebalanceTimeUpdated,
    RebalanceExecuted,
    RebalanceFailed,
    StrategyCreated,
    StrategyDeleted,
    StrategyEvent,
    StrategyPaused,
    StrategyResumed,
    StrategyUpdated,
    SwapExecuted,
    decode_event,
)
from rebalance_indexer.notifier.channels import AlertSeverity, Channel
from rebalance_indexer.storage.repos import (
    DailyStatsRepository,
    RebalanceDTO,
    RebalanceRepository,
    StrategyRepository,
    SwapDTO,
    SwapRepository,
    SystemEventDTO,
    SystemEventRepository,
    UserRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from rebalance_indexer.ingestor.models import RawEvent
    from rebalance_indexer.notifier.notifier import ChangeNotifier
    from rebalance_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class ReductionOutcome(str, Enum):
    """What a reduction did to the stored state."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"  # already reflected (replay or stale lifecycle event)
    DROPPED = "dropped"  # ordering violation, logged and discarded
    IGNORED = "ignored"  # event kind not handled by the indexer


class SystemEventType(str, Enum):
    DEX_APPROVAL = "DEX_APPROVAL"
    DEX_REVOCATION = "DEX_REVOCATION"
    EMERGENCY_PAUSE = "EMERGENCY_PAUSE"
    EMERGENCY_UNPAUSE = "EMERGENCY_UNPAUSE"
    EXECUTOR_UPDATED = "EXECUTOR_UPDATED"


class RebalanceStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def daily_key(block_timestamp: int) -> str:
    """UTC calendar date (``YYYY-MM-DD``) of a block timestamp."""
    return datetime.fromtimestamp(block_timestamp, tz=UTC).strftime("%Y-%m-%d")


Notification = tuple[Channel, dict[str, Any]]


@dataclass
class _Result:
    outcome: ReductionOutcome
    notifications: list[Notification] = field(default_factory=list)


@dataclass
class ReducerStats:
    """Outcome counters since the reducer was created."""

    applied: int = 0
    duplicate: int = 0
    dropped: int = 0
    ignored: int = 0

    def record(self, outcome: ReductionOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


def _strategy_payload(event: StrategyEvent) -> dict[str, Any]:
    return {
        "chainId": event.chain_id,
        "user": event.user,
        "strategyId": event.strategy_id,
        "blockNumber": event.block_number,
        "transactionHash": event.tx_hash,
    }


class EventReducer:
    """Reduces raw events into the canonical state store.

    Example:
        ```python
        reducer = EventReducer(db, notifier=notifier)
        outcome = await reducer.reduce(raw_event)
        ```
    """

    def __init__(self, db: DatabaseManager, *, notifier: ChangeNotifier | None = None) -> None:
        self._db = db
        self._notifier = notifier
        self._locks: weakref.WeakValueDictionary[Hashable, asyncio.Lock] = weakref.WeakValueDictionary()
        self.stats = ReducerStats()
        self._handlers: dict[type[ChainEvent], Callable[[AsyncSession, Any], Awaitable[_Result]]] = {
            StrategyCreated: self._on_strategy_created,
            StrategyUpdated: self._on_strategy_updated,
            StrategyPaused: self._on_strategy_paused,
            StrategyResumed: self._on_strategy_resumed,
            StrategyDeleted: self._on_strategy_deleted,
            LastRebalanceTimeUpdated: self._on_last_rebalance_time,
            RebalanceExecuted: self._on_rebalance_executed,
            RebalanceFailed: self._on_rebalance_failed,
            SwapExecuted: self._on_swap_executed,
            DexApprovalUpdated: self._on_dex_approval,
            EmergencyPaused: self._on_emergency_paused,
            EmergencyUnpaused: self._on_emergency_unpaused,
            ExecutorUpdated: self._on_executor_updated,
        }

    def _lock(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _lock_keys(self, event: ChainEvent) -> list[Hashable]:
        # Transaction lock first, strategy lock second: a fixed order for every kind.
        keys: list[Hashable] = []
        if isinstance(event, (RebalanceExecuted, RebalanceFailed, SwapExecuted)):
            keys.append(("tx", event.chain_id, event.tx_hash))
        if isinstance(event, StrategyEvent):
            keys.append(("strategy", event.key))
        return keys

    async def reduce(self, raw: RawEvent) -> ReductionOutcome:
        """Reduce one raw event.

        Raises:
            EventDecodeError: If the payload of a known event kind is malformed.
        """
        event = decode_event(raw)
        if event is None:
            logger.warning("Ignoring unknown event %s (%s)", raw.event_name, raw.event_id)
            self.stats.record(ReductionOutcome.IGNORED)
            return ReductionOutcome.IGNORED

        handler = self._handlers[type(event)]
        async with contextlib.AsyncExitStack() as stack:
            # Locks are taken before the first suspension point so that items
            # popped in FIFO order are serialized in that order.
            for key in self._lock_keys(event):
                await stack.enter_async_context(self._lock(key))
            async with self._db.get_async_session() as session:
                result = await handler(session, event)

        self.stats.record(result.outcome)
        if result.outcome is ReductionOutcome.APPLIED:
            logger.debug("Applied %s %s", raw.event_name, raw.event_id)
            await self._notify(raw, result.notifications)
        return result.outcome

    async def _notify(self, raw: RawEvent, notifications: list[Notification]) -> None:
        if self._notifier is None:
            return
        for channel, payload in notifications:
            await self._notifier.publish(channel, payload)
        await self._notifier.publish(
            Channel.EVENT_INDEXED,
            {
                "chainId": raw.chain_id,
                "eventName": raw.event_name,
                "blockNumber": raw.block_number,
                "transactionHash": raw.transaction_hash,
                "logIndex": raw.log_index,
            },
        )

    # ------------------------------------------------------------------
    # Strategy lifecycle
    # ------------------------------------------------------------------

    async def _on_strategy_created(self, session: AsyncSession, event: StrategyCreated) -> _Result:
        strategies = StrategyRepository(session)
        inserted = await strategies.insert_if_absent(
            event.key,
            name=event.name,
            tokens=list(event.tokens),
            weights=list(event.weights),
            rebalance_interval=event.rebalance_interval,
            block_number=event.block_number,
            log_index=event.log_index,
            block_timestamp=event.block_timestamp,
        )
        if not inserted:
            existing = await strategies.get(event.key)
            if existing is not None and (
                existing.created_block != event.block_number or existing.name != event.name
            ):
                logger.warning(
                    "Conflicting duplicate StrategyCreated for %s at block %d (first seen at block %d); keeping first",
                    event.key,
                    event.block_number,
                    existing.created_block,
                )
            return _Result(ReductionOutcome.DUPLICATE)

        await UserRepository(session).record_activity(
            event.user, timestamp=event.block_timestamp, strategies_created=1
        )
        daily = DailyStatsRepository(session)
        day = daily_key(event.block_timestamp)
        await daily.increment(event.chain_id, day, strategies_created=1)
        await daily.add_participant(event.chain_id, day, kind="user", participant=event.user)
        await daily.add_participant(event.chain_id, day, kind="strategy", participant=str(event.key))

        payload = {
            **_strategy_payload(event),
            "name": event.name,
            "tokens": list(event.tokens),
            "weights": list(event.weights),
            "rebalanceInterval": event.rebalance_interval,
        }
        return _Result(ReductionOutcome.APPLIED, [(Channel.STRATEGY_CREATED, payload)])

    async def _apply_lifecycle(
        self,
        session: AsyncSession,
        event: StrategyEvent,
        values: dict[str, Any],
        channel: Channel,
        payload: dict[str, Any],
    ) -> _Result:
        strategies = StrategyRepository(session)
        applied = await strategies.apply_lifecycle(
            event.key,
            block_number=event.block_number,
            log_index=event.log_index,
            block_timestamp=event.block_timestamp,
            values=values,
        )
        if not applied:
            return await self._not_applied(strategies, event)
        await UserRepository(session).record_activity(event.user, timestamp=event.block_timestamp)
        return _Result(ReductionOutcome.APPLIED, [(channel, payload)])

    async def _not_applied(self, strategies: StrategyRepository, event: StrategyEvent) -> _Result:
        if await strategies.get(event.key) is None:
            logger.warning(
                "Dropping %s for unknown strategy %s (%s:%d)",
                type(event).__name__,
                event.key,
                event.tx_hash,
                event.log_index,
            )
            return _Result(ReductionOutcome.DROPPED)
        logger.debug("%s for %s already reflected or stale", type(event).__name__, event.key)
        return _Result(ReductionOutcome.DUPLICATE)

    async def _on_strategy_updated(self, session: AsyncSession, event: StrategyUpdated) -> _Result:
        values: dict[str, Any] = {"tokens": list(event.tokens), "weights": list(event.weights)}
        if event.rebalance_interval is not None:
            values["rebalance_interval"] = event.rebalance_interval
        payload = {**_strategy_payload(event), "tokens": list(event.tokens), "weights": list(event.weights)}
        return await self._apply_lifecycle(session, event, values, Channel.STRATEGY_UPDATED, payload)

    async def _on_strategy_paused(self, session: AsyncSession, event: StrategyPaused) -> _Result:
        return await self._apply_lifecycle(
            session, event, {"is_paused": True}, Channel.STRATEGY_PAUSED, _strategy_payload(event)
        )

    async def _on_strategy_resumed(self, session: AsyncSession, event: StrategyResumed) -> _Result:
        return await self._apply_lifecycle(
            session, event, {"is_paused": False}, Channel.STRATEGY_RESUMED, _strategy_payload(event)
        )

    async def _on_strategy_deleted(self, session: AsyncSession, event: StrategyDeleted) -> _Result:
        strategies = StrategyRepository(session)
        if not await strategies.deactivate(event.key, block_timestamp=event.block_timestamp):
            return await self._not_applied(strategies, event)
        users = UserRepository(session)
        await users.decrement_strategy_count(event.user)
        await users.record_activity(event.user, timestamp=event.block_timestamp)
        return _Result(ReductionOutcome.APPLIED, [(Channel.STRATEGY_DELETED, _strategy_payload(event))])

    async def _on_last_rebalance_time(self, session: AsyncSession, event: LastRebalanceTimeUpdated) -> _Result:
        strategies = StrategyRepository(session)
        if not await strategies.advance_last_rebalance_time(event.key, event.timestamp):
            return await self._not_applied(strategies, event)
        payload = {**_strategy_payload(event), "lastRebalanceTime": event.timestamp}
        return _Result(ReductionOutcome.APPLIED, [(Channel.STRATEGY_UPDATED, payload)])

    # ------------------------------------------------------------------
    # Rebalances and swaps
    # ------------------------------------------------------------------

    async def _on_rebalance_executed(self, session: AsyncSession, event: RebalanceExecuted) -> _Result:
        strategies = StrategyRepository(session)
        if await strategies.get(event.key) is None:
            return await self._not_applied(strategies, event)

        inserted = await RebalanceRepository(session).insert_if_absent(
            RebalanceDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                chain_id=event.chain_id,
                user_address=event.user,
                strategy_id=event.strategy_id,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                status=RebalanceStatus.SUCCESS.value,
                drift_bps=event.drift_bps,
                drift_percentage=event.drift_percentage,
                gas_reimbursed_wei=event.gas_reimbursed_wei,
                gas_price_wei=event.gas_price_wei,
            )
        )
        if not inserted:
            return _Result(ReductionOutcome.DUPLICATE)

        await strategies.record_rebalance(
            event.key,
            drift_bps=event.drift_bps,
            gas_spent_wei=event.gas_reimbursed_wei,
            block_timestamp=event.timestamp,
        )
        await UserRepository(session).record_activity(
            event.user,
            timestamp=event.block_timestamp,
            rebalances=1,
            gas_spent_wei=event.gas_reimbursed_wei,
        )
        daily = DailyStatsRepository(session)
        day = daily_key(event.block_timestamp)
        await daily.record_rebalance(
            event.chain_id, day, drift_bps=event.drift_bps, gas_spent_wei=event.gas_reimbursed_wei
        )
        await daily.add_participant(event.chain_id, day, kind="user", participant=event.user)
        await daily.add_participant(event.chain_id, day, kind="strategy", participant=str(event.key))

        notifications: list[Notification] = [
            (
                Channel.REBALANCE_COMPLETED,
                {
                    **_strategy_payload(event),
                    "logIndex": event.log_index,
                    "drift": event.drift_bps,
                    "driftPercentage": event.drift_percentage,
                    "gasReimbursed": event.gas_reimbursed_wei,
                },
            )
        ]
        if event.gas_price_wei is not None:
            notifications.append(
                (
                    Channel.GAS_UPDATED,
                    {
                        "chainId": event.chain_id,
                        "gasPrice": event.gas_price_wei,
                        "blockNumber": event.block_number,
                    },
                )
            )
        return _Result(ReductionOutcome.APPLIED, notifications)

    async def _on_rebalance_failed(self, session: AsyncSession, event: RebalanceFailed) -> _Result:
        strategies = StrategyRepository(session)
        if await strategies.get(event.key) is None:
            return await self._not_applied(strategies, event)

        inserted = await RebalanceRepository(session).insert_if_absent(
            RebalanceDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                chain_id=event.chain_id,
                user_address=event.user,
                strategy_id=event.strategy_id,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                status=RebalanceStatus.FAILED.value,
                failure_reason=event.reason,
            )
        )
        if not inserted:
            return _Result(ReductionOutcome.DUPLICATE)

        await strategies.record_failed_rebalance(event.key)
        await UserRepository(session).record_activity(event.user, timestamp=event.block_timestamp)
        await DailyStatsRepository(session).increment(
            event.chain_id, daily_key(event.block_timestamp), failed_rebalances=1
        )
        payload = {**_strategy_payload(event), "logIndex": event.log_index, "reason": event.reason}
        return _Result(ReductionOutcome.APPLIED, [(Channel.REBALANCE_FAILED, payload)])

    async def _on_swap_executed(self, session: AsyncSession, event: SwapExecuted) -> _Result:
        rebalances = RebalanceRepository(session)
        parent = await rebalances.find_parent(event.chain_id, event.tx_hash, event.log_index)
        if parent is None:
            logger.warning(
                "Dropping SwapExecuted %s:%d on chain %d: no preceding rebalance in the transaction",
                event.tx_hash,
                event.log_index,
                event.chain_id,
            )
            return _Result(ReductionOutcome.DROPPED)

        inserted = await SwapRepository(session).insert_if_absent(
            SwapDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                swap_index=event.swap_index,
                chain_id=event.chain_id,
                rebalance_tx_hash=parent.tx_hash,
                rebalance_log_index=parent.log_index,
                user_address=event.user,
                token_in=event.token_in,
                token_out=event.token_out,
                amount_in=event.amount_in,
                amount_out=event.amount_out,
                price_impact=event.price_impact,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
            )
        )
        if not inserted:
            return _Result(ReductionOutcome.DUPLICATE)

        await rebalances.record_swap(
            parent.tx_hash,
            parent.log_index,
            amount_in=event.amount_in,
            amount_out=event.amount_out,
            price_impact=event.price_impact,
        )
        await StrategyRepository(session).record_swap(parent.strategy_key, amount_in=event.amount_in)
        await DailyStatsRepository(session).record_swap(
            event.chain_id,
            daily_key(event.block_timestamp),
            amount_in=event.amount_in,
            price_impact=event.price_impact,
        )
        payload = {
            "chainId": event.chain_id,
            "user": event.user,
            "strategyId": parent.strategy_id,
            "transactionHash": event.tx_hash,
            "logIndex": event.log_index,
            "rebalanceLogIndex": parent.log_index,
            "tokenIn": event.token_in,
            "tokenOut": event.token_out,
            "amountIn": event.amount_in,
            "amountOut": event.amount_out,
            "priceImpact": event.price_impact,
        }
        return _Result(ReductionOutcome.APPLIED, [(Channel.SWAP_EXECUTED, payload)])

    # ------------------------------------------------------------------
    # System events
    # ------------------------------------------------------------------

    async def _record_system_event(
        self,
        session: AsyncSession,
        event: ChainEvent,
        event_type: SystemEventType,
        severity: AlertSeverity,
        message: str,
        **fields: Any,
    ) -> _Result:
        inserted = await SystemEventRepository(session).insert_if_absent(
            SystemEventDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                chain_id=event.chain_id,
                event_type=event_type.value,
                block_number=event.block_number,
                block_timestamp=event.block_timestamp,
                **fields,
            )
        )
        if not inserted:
            return _Result(ReductionOutcome.DUPLICATE)
        payload = {
            "chainId": event.chain_id,
            "type": event_type.value,
            "severity": severity.value,
            "message": message,
            "blockNumber": event.block_number,
            "transactionHash": event.tx_hash,
            **fields,
        }
        return _Result(ReductionOutcome.APPLIED, [(Channel.SYSTEM_ALERT, payload)])

    async def _on_dex_approval(self, session: AsyncSession, event: DexApprovalUpdated) -> _Result:
        event_type = SystemEventType.DEX_APPROVAL if event.approved else SystemEventType.DEX_REVOCATION
        verb = "approved" if event.approved else "revoked"
        return await self._record_system_event(
            session,
            event,
            event_type,
            AlertSeverity.INFO,
            f"DEX {event.dex} {verb}",
            dex_address=event.dex,
            approved=event.approved,
        )

    async def _on_emergency_paused(self, session: AsyncSession, event: EmergencyPaused) -> _Result:
        return await self._record_system_event(
            session,
            event,
            SystemEventType.EMERGENCY_PAUSE,
            AlertSeverity.CRITICAL,
            f"Emergency pause triggered by {event.caller}",
            actor=event.caller,
        )

    async def _on_emergency_unpaused(self, session: AsyncSession, event: EmergencyUnpaused) -> _Result:
        return await self._record_system_event(
            session,
            event,
            SystemEventType.EMERGENCY_UNPAUSE,
            AlertSeverity.WARNING,
            f"Emergency pause lifted by {event.caller}",
            actor=event.caller,
        )

    async def _on_executor_updated(self, session: AsyncSession, event: ExecutorUpdated) -> _Result:
        return await self._record_system_event(
            session,
            event,
            SystemEventType.EXECUTOR_UPDATED,
            AlertSeverity.WARNING,
            f"Rebalance executor rotated from {event.old_executor} to {event.new_executor}",
            old_executor=event.old_executor,
            new_executor=event.new_executor,
        )
