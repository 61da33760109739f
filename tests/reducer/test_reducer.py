"""Tests for the event reducer."""

from decimal import Decimal

import pytest
from factories import (
    BASE_SEPOLIA,
    DAY_ONE,
    DAY_TWO,
    EXECUTOR,
    MONAD,
    OTHER_USER,
    TOKEN_A,
    USER,
    created_data,
    rebalance_data,
    strategy_data,
    swap_data,
    tx,
)

from rebalance_indexer.errors import EventDecodeError
from rebalance_indexer.notifier import Channel, ChangeNotifier
from rebalance_indexer.reducer import EventReducer, ReductionOutcome, daily_key
from rebalance_indexer.storage.repos import (
    DailyStatsRepository,
    RebalanceRepository,
    StrategyKey,
    StrategyRepository,
    SwapRepository,
    SystemEventRepository,
    UserRepository,
)

KEY = StrategyKey(MONAD, USER, 1)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def notifier() -> ChangeNotifier:
    return ChangeNotifier()


@pytest.fixture
def published(notifier: ChangeNotifier) -> list[tuple[str, dict]]:
    """Every notification delivered, as (channel, payload)."""
    seen: list[tuple[str, dict]] = []
    for channel in Channel:
        notifier.subscribe(channel, lambda msg, c=channel.value: seen.append((c, msg)))
    return seen


@pytest.fixture
def reducer(db, notifier) -> EventReducer:
    return EventReducer(db, notifier=notifier)


async def _strategy(db, key: StrategyKey = KEY):
    async with db.get_async_session() as session:
        return await StrategyRepository(session).get(key)


async def _daily(db, chain_id: int = MONAD, ts: int = DAY_ONE):
    async with db.get_async_session() as session:
        return await DailyStatsRepository(session).get(chain_id, daily_key(ts))


async def _user(db, address: str = USER):
    async with db.get_async_session() as session:
        return await UserRepository(session).get(address)


# ============================================================================
# Helpers
# ============================================================================


def test_daily_key_is_utc_date() -> None:
    assert daily_key(DAY_ONE) == "2026-01-01"
    assert daily_key(DAY_ONE + 86_399) == "2026-01-01"
    assert daily_key(DAY_TWO) == "2026-01-02"


# ============================================================================
# Strategy lifecycle
# ============================================================================


class TestStrategyCreated:
    async def test_creates_strategy_user_and_daily_stats(self, db, reducer, make_event) -> None:
        outcome = await reducer.reduce(make_event("StrategyCreated", created_data()))
        assert outcome is ReductionOutcome.APPLIED

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.name == "Blue chips"
        assert strategy.weights == [6000, 4000]
        assert strategy.is_active is True
        assert strategy.is_paused is False
        assert strategy.created_at == DAY_ONE

        user = await _user(db)
        assert user is not None
        assert user.strategy_count == 1
        assert user.first_seen_at == DAY_ONE

        daily = await _daily(db)
        assert daily is not None
        assert daily.strategies_created == 1
        assert daily.unique_users == 1
        assert daily.active_strategies == 1

    async def test_replay_is_duplicate_and_leaves_counters(self, db, reducer, make_event) -> None:
        event = make_event("StrategyCreated", created_data())
        assert await reducer.reduce(event) is ReductionOutcome.APPLIED
        assert await reducer.reduce(event) is ReductionOutcome.DUPLICATE

        user = await _user(db)
        assert user is not None and user.strategy_count == 1
        daily = await _daily(db)
        assert daily is not None and daily.strategies_created == 1

    async def test_conflicting_duplicate_keeps_first(self, db, reducer, make_event, caplog) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(name="First")))
        outcome = await reducer.reduce(make_event("StrategyCreated", created_data(name="Second")))

        assert outcome is ReductionOutcome.DUPLICATE
        strategy = await _strategy(db)
        assert strategy is not None and strategy.name == "First"
        assert "Conflicting duplicate StrategyCreated" in caplog.text

    async def test_notifies_only_when_applied(self, reducer, make_event, published) -> None:
        event = make_event("StrategyCreated", created_data())
        await reducer.reduce(event)
        await reducer.reduce(event)

        channels = [c for c, _ in published]
        assert channels == ["strategy:created", "event:indexed"]
        payload = published[0][1]
        assert payload["strategyId"] == 1
        assert payload["chainId"] == MONAD
        assert payload["source"] == "indexer"
        assert "timestamp" in payload


class TestLifecycle:
    async def test_update_replaces_allocation(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        update = make_event(
            "StrategyUpdated",
            {**strategy_data(), "tokens": [TOKEN_A], "weights": [10_000]},
        )
        assert await reducer.reduce(update) is ReductionOutcome.APPLIED
        assert await reducer.reduce(update) is ReductionOutcome.DUPLICATE

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.tokens == [TOKEN_A]
        assert strategy.weights == [10_000]
        assert strategy.rebalance_interval == 3600

    async def test_pause_then_resume(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        paused = make_event("StrategyPaused", strategy_data())
        resumed = make_event("StrategyResumed", strategy_data())

        assert await reducer.reduce(paused) is ReductionOutcome.APPLIED
        assert await reducer.reduce(paused) is ReductionOutcome.DUPLICATE
        assert (await _strategy(db)).is_paused is True

        assert await reducer.reduce(resumed) is ReductionOutcome.APPLIED
        assert await reducer.reduce(resumed) is ReductionOutcome.DUPLICATE
        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.is_paused is False
        assert strategy.lifecycle_block == resumed.block_number

    async def test_pause_resume_order_tolerant(self, db, reducer, make_event) -> None:
        created = make_event("StrategyCreated", created_data(), block_number=10)
        paused = make_event("StrategyPaused", strategy_data(), block_number=11)
        unrelated = make_event("StrategyCreated", created_data(strategy_id=2), block_number=12)
        resumed = make_event("StrategyResumed", strategy_data(), block_number=13)

        await reducer.reduce(created)
        await reducer.reduce(resumed)
        await reducer.reduce(unrelated)
        # Older than the applied resume.
        assert await reducer.reduce(paused) is ReductionOutcome.DUPLICATE

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.is_paused is False
        assert strategy.lifecycle_block == 13

    async def test_same_block_uses_log_index(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(), block_number=10))
        paused = make_event("StrategyPaused", strategy_data(), block_number=20, log_index=1)
        resumed = make_event("StrategyResumed", strategy_data(), block_number=20, log_index=2)

        await reducer.reduce(resumed)
        assert await reducer.reduce(paused) is ReductionOutcome.DUPLICATE
        assert (await _strategy(db)).is_paused is False

    async def test_delete_is_terminal(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        deleted = make_event("StrategyDeleted", strategy_data())
        assert await reducer.reduce(deleted) is ReductionOutcome.APPLIED
        assert await reducer.reduce(deleted) is ReductionOutcome.DUPLICATE

        later = [
            make_event("StrategyResumed", strategy_data()),
            make_event("StrategyUpdated", {**strategy_data(), "tokens": [TOKEN_A], "weights": [10_000]}),
            make_event("StrategyPaused", strategy_data()),
        ]
        for event in later:
            assert await reducer.reduce(event) is ReductionOutcome.DUPLICATE

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.is_active is False
        assert strategy.tokens != [TOKEN_A]
        user = await _user(db)
        assert user is not None and user.strategy_count == 0

    async def test_lifecycle_for_unknown_strategy_is_dropped(self, reducer, make_event, caplog) -> None:
        outcome = await reducer.reduce(make_event("StrategyPaused", strategy_data(strategy_id=99)))
        assert outcome is ReductionOutcome.DROPPED
        assert "unknown strategy" in caplog.text

    async def test_last_rebalance_time_only_moves_forward(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        later = make_event("LastRebalanceTimeUpdated", {**strategy_data(), "timestamp": DAY_ONE + 500})
        earlier = make_event("LastRebalanceTimeUpdated", {**strategy_data(), "timestamp": DAY_ONE + 100})

        assert await reducer.reduce(later) is ReductionOutcome.APPLIED
        assert await reducer.reduce(earlier) is ReductionOutcome.DUPLICATE
        assert await reducer.reduce(later) is ReductionOutcome.DUPLICATE
        assert (await _strategy(db)).last_rebalance_time == DAY_ONE + 500


# ============================================================================
# Rebalances
# ============================================================================


class TestRebalances:
    async def test_weighted_mean_drift(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))

        await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(drift=150)))
        assert (await _strategy(db)).average_drift == Decimal(150)

        await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(drift=250)))
        assert (await _strategy(db)).average_drift == Decimal(200)

        await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(drift=100)))
        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.total_rebalances == 3
        assert strategy.average_drift != round(strategy.average_drift)
        assert abs(strategy.average_drift - Decimal("166.666667")) < Decimal("0.001")

    async def test_replayed_rebalance_does_not_skew_mean(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        first = make_event("RebalanceExecuted", rebalance_data(drift=150, gas=1_000))
        second = make_event("RebalanceExecuted", rebalance_data(drift=250, gas=2_000))

        for event in (first, second, first, second):
            await reducer.reduce(event)

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.total_rebalances == 2
        assert strategy.average_drift == Decimal(200)
        assert strategy.total_gas_spent_wei == 3_000

        user = await _user(db)
        assert user is not None
        assert user.total_rebalances == 2
        assert user.total_gas_spent_wei == 3_000

        daily = await _daily(db)
        assert daily is not None
        assert daily.total_rebalances == 2
        assert daily.average_drift == Decimal(200)

    async def test_rebalance_records_row_and_last_time(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        event = make_event(
            "RebalanceExecuted", rebalance_data(drift=250, timestamp=DAY_ONE + 60), gas_price=3_000_000_000
        )
        assert await reducer.reduce(event) is ReductionOutcome.APPLIED

        async with db.get_async_session() as session:
            row = await RebalanceRepository(session).get(event.transaction_hash, event.log_index)
        assert row is not None
        assert row.status == "SUCCESS"
        assert row.drift_bps == 250
        assert row.drift_percentage == Decimal("2.5")
        assert row.gas_price_wei == 3_000_000_000
        assert (await _strategy(db)).last_rebalance_time == DAY_ONE + 60

    async def test_gas_updated_published_with_gas_price(self, reducer, make_event, published) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        published.clear()
        await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(), gas_price=42))

        channels = [c for c, _ in published]
        assert channels == ["rebalance:completed", "gas:updated", "event:indexed"]
        assert published[1][1]["gasPrice"] == 42

    async def test_gas_used_alias_accepted(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        data = {**strategy_data(), "drift": 120, "gasUsed": 7_777}
        assert await reducer.reduce(make_event("RebalanceExecuted", data)) is ReductionOutcome.APPLIED
        assert (await _strategy(db)).total_gas_spent_wei == 7_777

    async def test_rebalance_for_unknown_strategy_is_dropped(self, reducer, make_event) -> None:
        outcome = await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(strategy_id=42)))
        assert outcome is ReductionOutcome.DROPPED

    async def test_failed_rebalance(self, db, reducer, make_event, published) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data()))
        failed = make_event("RebalanceFailed", {**strategy_data(), "reason": "slippage"})

        assert await reducer.reduce(failed) is ReductionOutcome.APPLIED
        assert await reducer.reduce(failed) is ReductionOutcome.DUPLICATE

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.failed_rebalances == 1
        assert strategy.total_rebalances == 0
        daily = await _daily(db)
        assert daily is not None and daily.failed_rebalances == 1

        async with db.get_async_session() as session:
            row = await RebalanceRepository(session).get(failed.transaction_hash, failed.log_index)
        assert row is not None
        assert row.status == "FAILED"
        assert row.failure_reason == "slippage"
        assert "rebalance:failed" in [c for c, _ in published]

    async def test_malformed_rebalance_raises(self, reducer, make_event) -> None:
        with pytest.raises(EventDecodeError):
            await reducer.reduce(make_event("RebalanceExecuted", {**strategy_data(), "gasReimbursed": 1}))


# ============================================================================
# Swaps
# ============================================================================


class TestSwaps:
    async def test_swap_attaches_to_most_recent_prior_rebalance(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(), block_number=10))
        await reducer.reduce(make_event("StrategyCreated", created_data(strategy_id=2), block_number=11))
        tx_hash = tx(777)

        r5 = make_event("RebalanceExecuted", rebalance_data(1), block_number=20, log_index=5, tx_hash=tx_hash)
        r9 = make_event("RebalanceExecuted", rebalance_data(2), block_number=20, log_index=9, tx_hash=tx_hash)
        swap = make_event("SwapExecuted", swap_data(), block_number=20, log_index=11, tx_hash=tx_hash)

        await reducer.reduce(r5)
        await reducer.reduce(r9)
        assert await reducer.reduce(swap) is ReductionOutcome.APPLIED

        async with db.get_async_session() as session:
            stored = await SwapRepository(session).get(tx_hash, 11)
            parent9 = await RebalanceRepository(session).get(tx_hash, 9)
            parent5 = await RebalanceRepository(session).get(tx_hash, 5)
        assert stored is not None
        assert stored.rebalance_log_index == 9
        assert parent9 is not None and parent9.total_swaps == 1
        assert parent5 is not None and parent5.total_swaps == 0

        assert (await _strategy(db, StrategyKey(MONAD, USER, 2))).total_swaps == 1
        assert (await _strategy(db)).total_swaps == 0

    async def test_swap_between_rebalances_uses_earlier(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(), block_number=10))
        tx_hash = tx(778)
        await reducer.reduce(
            make_event("RebalanceExecuted", rebalance_data(), block_number=20, log_index=5, tx_hash=tx_hash)
        )
        await reducer.reduce(
            make_event("RebalanceExecuted", rebalance_data(), block_number=20, log_index=9, tx_hash=tx_hash)
        )
        swap = make_event("SwapExecuted", swap_data(), block_number=20, log_index=7, tx_hash=tx_hash)
        await reducer.reduce(swap)

        async with db.get_async_session() as session:
            stored = await SwapRepository(session).get(tx_hash, 7)
        assert stored is not None and stored.rebalance_log_index == 5

    async def test_swap_without_parent_is_dropped(self, reducer, make_event, caplog) -> None:
        outcome = await reducer.reduce(make_event("SwapExecuted", swap_data()))
        assert outcome is ReductionOutcome.DROPPED
        assert "no preceding rebalance" in caplog.text

    async def test_swap_rollups_and_price_impact(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(), block_number=10))
        tx_hash = tx(900)
        rebalance = make_event("RebalanceExecuted", rebalance_data(), block_number=20, log_index=1, tx_hash=tx_hash)
        swaps = [
            make_event(
                "SwapExecuted",
                swap_data(amount_in=1_000, amount_out=990, price_impact="0.5"),
                block_number=20,
                log_index=2,
                tx_hash=tx_hash,
            ),
            make_event(
                "SwapExecuted",
                swap_data(amount_in=3_000, amount_out=2_950, price_impact="1.5"),
                block_number=20,
                log_index=3,
                tx_hash=tx_hash,
            ),
            make_event(
                "SwapExecuted",
                swap_data(amount_in=500, amount_out=499),
                block_number=20,
                log_index=4,
                tx_hash=tx_hash,
            ),
        ]
        await reducer.reduce(rebalance)
        for swap in swaps:
            assert await reducer.reduce(swap) is ReductionOutcome.APPLIED
        # Replays change nothing.
        for swap in swaps:
            assert await reducer.reduce(swap) is ReductionOutcome.DUPLICATE

        async with db.get_async_session() as session:
            parent = await RebalanceRepository(session).get(tx_hash, 1)
        assert parent is not None
        assert parent.total_swaps == 3
        assert parent.total_volume_in == 4_500
        assert parent.total_volume_out == 4_439
        assert parent.price_impact_samples == 2
        assert parent.average_price_impact == Decimal(1)

        strategy = await _strategy(db)
        assert strategy is not None
        assert strategy.total_swaps == 3
        assert strategy.total_volume == 4_500

        daily = await _daily(db)
        assert daily is not None
        assert daily.total_swaps == 3
        assert daily.total_volume == 4_500


# ============================================================================
# System events
# ============================================================================


class TestSystemEvents:
    async def test_dex_approval_and_revocation(self, db, reducer, make_event, published) -> None:
        approve = make_event("DEXApprovalUpdated", {"dex": EXECUTOR, "approved": True})
        revoke = make_event("DEXApprovalUpdated", {"dex": EXECUTOR, "approved": False})

        assert await reducer.reduce(approve) is ReductionOutcome.APPLIED
        assert await reducer.reduce(revoke) is ReductionOutcome.APPLIED
        assert await reducer.reduce(approve) is ReductionOutcome.DUPLICATE

        async with db.get_async_session() as session:
            repo = SystemEventRepository(session)
            first = await repo.get(approve.transaction_hash, approve.log_index)
            second = await repo.get(revoke.transaction_hash, revoke.log_index)
        assert first is not None and first.event_type == "DEX_APPROVAL"
        assert second is not None and second.event_type == "DEX_REVOCATION"

        alerts = [p for c, p in published if c == "system:alert"]
        assert [a["severity"] for a in alerts] == ["info", "info"]

    async def test_emergency_pause_is_critical(self, reducer, make_event, published) -> None:
        await reducer.reduce(make_event("EmergencyPaused", {"caller": OTHER_USER}))
        await reducer.reduce(make_event("EmergencyUnpaused", {"caller": OTHER_USER}))

        alerts = [p for c, p in published if c == "system:alert"]
        assert [a["type"] for a in alerts] == ["EMERGENCY_PAUSE", "EMERGENCY_UNPAUSE"]
        assert [a["severity"] for a in alerts] == ["critical", "warning"]

    @pytest.mark.parametrize(
        ("event_name", "data", "event_type"),
        [
            ("EmergencyPaused", {"caller": OTHER_USER}, "EMERGENCY_PAUSE"),
            ("EmergencyUnpaused", {"caller": OTHER_USER}, "EMERGENCY_UNPAUSE"),
            (
                "RebalanceExecutorUpdated",
                {"oldExecutor": EXECUTOR, "newExecutor": OTHER_USER},
                "EXECUTOR_UPDATED",
            ),
        ],
    )
    async def test_replayed_system_event_is_duplicate(
        self, db, reducer, make_event, published, event_name, data, event_type
    ) -> None:
        event = make_event(event_name, data)

        assert await reducer.reduce(event) is ReductionOutcome.APPLIED
        async with db.get_async_session() as session:
            before = await SystemEventRepository(session).list_system_events(chain_id=MONAD)

        assert await reducer.reduce(event) is ReductionOutcome.DUPLICATE
        async with db.get_async_session() as session:
            after = await SystemEventRepository(session).list_system_events(chain_id=MONAD)

        assert after == before
        assert [r.event_type for r in after] == [event_type]
        alerts = [p for c, p in published if c == "system:alert"]
        assert [a["type"] for a in alerts] == [event_type]

    async def test_executor_rotation(self, db, reducer, make_event) -> None:
        event = make_event("RebalanceExecutorUpdated", {"oldExecutor": EXECUTOR, "newExecutor": OTHER_USER})
        assert await reducer.reduce(event) is ReductionOutcome.APPLIED

        async with db.get_async_session() as session:
            row = await SystemEventRepository(session).get(event.transaction_hash, event.log_index)
        assert row is not None
        assert row.event_type == "EXECUTOR_UPDATED"
        assert row.old_executor == EXECUTOR
        assert row.new_executor == OTHER_USER


# ============================================================================
# Cross-cutting
# ============================================================================


class TestIsolationAndStats:
    async def test_chains_do_not_collide(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(), chain_id=MONAD))
        await reducer.reduce(make_event("StrategyCreated", created_data(name="Base"), chain_id=BASE_SEPOLIA))

        await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(drift=300), chain_id=MONAD))
        await reducer.reduce(make_event("StrategyPaused", strategy_data(), chain_id=MONAD))

        monad = await _strategy(db, StrategyKey(MONAD, USER, 1))
        base = await _strategy(db, StrategyKey(BASE_SEPOLIA, USER, 1))
        assert monad is not None and base is not None
        assert monad.total_rebalances == 1 and monad.is_paused is True
        assert base.total_rebalances == 0 and base.is_paused is False
        assert base.name == "Base"

        # Users are chain-agnostic.
        user = await _user(db)
        assert user is not None and user.strategy_count == 2

        assert (await _daily(db, MONAD)).total_rebalances == 1
        assert (await _daily(db, BASE_SEPOLIA)).total_rebalances == 0

    async def test_unique_daily_participants(self, db, reducer, make_event) -> None:
        await reducer.reduce(make_event("StrategyCreated", created_data(strategy_id=1)))
        await reducer.reduce(make_event("StrategyCreated", created_data(strategy_id=2)))
        await reducer.reduce(make_event("StrategyCreated", created_data(strategy_id=1, user=OTHER_USER)))
        await reducer.reduce(make_event("RebalanceExecuted", rebalance_data(strategy_id=1)))

        daily = await _daily(db)
        assert daily is not None
        assert daily.unique_users == 2
        assert daily.active_strategies == 3

    async def test_unknown_event_ignored(self, reducer, make_event, caplog) -> None:
        outcome = await reducer.reduce(make_event("OwnershipTransferred", {"previousOwner": USER}))
        assert outcome is ReductionOutcome.IGNORED
        assert reducer.stats.ignored == 1
        assert "Ignoring unknown event" in caplog.text

    async def test_stats_count_outcomes(self, reducer, make_event) -> None:
        event = make_event("StrategyCreated", created_data())
        await reducer.reduce(event)
        await reducer.reduce(event)
        await reducer.reduce(make_event("StrategyPaused", strategy_data(strategy_id=5)))

        assert reducer.stats.applied == 1
        assert reducer.stats.duplicate == 1
        assert reducer.stats.dropped == 1

    async def test_failing_subscriber_does_not_fail_reduction(self, db, notifier, make_event) -> None:
        def boom(_: dict) -> None:
            raise RuntimeError("subscriber bug")

        notifier.subscribe(Channel.STRATEGY_CREATED, boom)
        reducer = EventReducer(db, notifier=notifier)

        assert await reducer.reduce(make_event("StrategyCreated", created_data())) is ReductionOutcome.APPLIED
        assert notifier.handler_errors == 1
        assert await _strategy(db) is not None
