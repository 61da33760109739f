"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from factories import DAY_ONE, DAY_TWO, MONAD, TOKEN_A, TOKEN_B, USER, tx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rebalance_indexer.storage.models import Base, ScanProgressModel
from rebalance_indexer.storage.repos import (
    DailyStatsRepository,
    DeadLetterDTO,
    DeadLetterRepository,
    RebalanceDTO,
    RebalanceRepository,
    ScanProgressRepository,
    StrategyKey,
    StrategyRepository,
    SwapDTO,
    SwapRepository,
    SystemEventDTO,
    SystemEventRepository,
    UserRepository,
)

KEY = StrategyKey(MONAD, USER, 1)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


async def _create_strategy(session: AsyncSession, key: StrategyKey = KEY, *, block: int = 10) -> bool:
    return await StrategyRepository(session).insert_if_absent(
        key,
        name="Blue chips",
        tokens=[TOKEN_A.upper().replace("0X", "0x"), TOKEN_B],
        weights=[6000, 4000],
        rebalance_interval=3600,
        block_number=block,
        log_index=0,
        block_timestamp=DAY_ONE,
    )


def _rebalance(log_index: int, *, tx_hash: str | None = None, strategy_id: int = 1) -> RebalanceDTO:
    return RebalanceDTO(
        tx_hash=tx_hash or tx(1),
        log_index=log_index,
        chain_id=MONAD,
        user_address=USER,
        strategy_id=strategy_id,
        block_number=20,
        block_timestamp=DAY_ONE,
        status="SUCCESS",
        drift_bps=150,
        drift_percentage=Decimal("1.5"),
        gas_reimbursed_wei=21_000,
    )


# ============================================================================
# UserRepository Tests
# ============================================================================


class TestUserRepository:
    async def test_record_activity_creates_user(self, async_session) -> None:
        repo = UserRepository(async_session)
        await repo.record_activity(USER.upper().replace("0X", "0x"), timestamp=DAY_ONE, strategies_created=1)

        user = await repo.get(USER)
        assert user is not None
        assert user.address == USER
        assert user.strategy_count == 1
        assert user.first_seen_at == DAY_ONE
        assert user.last_activity_at == DAY_ONE

    async def test_activity_window_is_order_independent(self, async_session) -> None:
        repo = UserRepository(async_session)
        await repo.record_activity(USER, timestamp=DAY_TWO, rebalances=1, gas_spent_wei=500)
        await repo.record_activity(USER, timestamp=DAY_ONE, rebalances=1, gas_spent_wei=700)

        user = await repo.get(USER)
        assert user is not None
        assert user.first_seen_at == DAY_ONE
        assert user.last_activity_at == DAY_TWO
        assert user.total_rebalances == 2
        assert user.total_gas_spent_wei == 1_200

    async def test_strategy_count_never_negative(self, async_session) -> None:
        repo = UserRepository(async_session)
        await repo.record_activity(USER, timestamp=DAY_ONE, strategies_created=1)
        await repo.decrement_strategy_count(USER)
        await repo.decrement_strategy_count(USER)

        user = await repo.get(USER)
        assert user is not None and user.strategy_count == 0


# ============================================================================
# StrategyRepository Tests
# ============================================================================


class TestStrategyRepository:
    async def test_insert_if_absent(self, async_session) -> None:
        assert await _create_strategy(async_session) is True
        assert await _create_strategy(async_session, block=99) is False

        strategy = await StrategyRepository(async_session).get(KEY)
        assert strategy is not None
        assert strategy.created_block == 10
        assert strategy.tokens == [TOKEN_A, TOKEN_B]
        assert strategy.key == KEY

    async def test_key_includes_chain(self, async_session) -> None:
        await _create_strategy(async_session)
        assert await _create_strategy(async_session, StrategyKey(84532, USER, 1)) is True

        repo = StrategyRepository(async_session)
        assert len(await repo.list_strategies(user_address=USER)) == 2
        assert len(await repo.list_strategies(chain_id=MONAD)) == 1

    async def test_apply_lifecycle_requires_later_position(self, async_session) -> None:
        await _create_strategy(async_session, block=10)
        repo = StrategyRepository(async_session)

        assert await repo.apply_lifecycle(
            KEY, block_number=10, log_index=0, block_timestamp=DAY_ONE, values={"is_paused": True}
        ) is False
        assert await repo.apply_lifecycle(
            KEY, block_number=10, log_index=3, block_timestamp=DAY_ONE, values={"is_paused": True}
        ) is True
        assert await repo.apply_lifecycle(
            KEY, block_number=9, log_index=7, block_timestamp=DAY_ONE, values={"is_paused": False}
        ) is False

        strategy = await repo.get(KEY)
        assert strategy is not None
        assert strategy.is_paused is True
        assert (strategy.lifecycle_block, strategy.lifecycle_log_index) == (10, 3)

    async def test_deactivate_once(self, async_session) -> None:
        await _create_strategy(async_session)
        repo = StrategyRepository(async_session)

        assert await repo.deactivate(KEY, block_timestamp=DAY_TWO) is True
        assert await repo.deactivate(KEY, block_timestamp=DAY_TWO) is False
        assert await repo.apply_lifecycle(
            KEY, block_number=50, log_index=0, block_timestamp=DAY_TWO, values={"is_paused": True}
        ) is False

        strategy = await repo.get(KEY)
        assert strategy is not None
        assert strategy.is_active is False
        assert strategy.updated_at == DAY_TWO
        assert len(await repo.list_strategies(active_only=True)) == 0

    async def test_record_rebalance_running_mean(self, async_session) -> None:
        await _create_strategy(async_session)
        repo = StrategyRepository(async_session)

        for drift in (100, 200, 600):
            await repo.record_rebalance(KEY, drift_bps=drift, gas_spent_wei=10, block_timestamp=DAY_ONE + drift)

        strategy = await repo.get(KEY)
        assert strategy is not None
        assert strategy.total_rebalances == 3
        assert strategy.average_drift == Decimal(300)
        assert strategy.total_gas_spent_wei == 30
        assert strategy.last_rebalance_time == DAY_ONE + 600

    async def test_missing_strategy_reports_false(self, async_session) -> None:
        repo = StrategyRepository(async_session)
        assert await repo.record_swap(KEY, amount_in=1) is False
        assert await repo.record_failed_rebalance(KEY) is False
        assert await repo.advance_last_rebalance_time(KEY, DAY_ONE) is False


# ============================================================================
# RebalanceRepository / SwapRepository Tests
# ============================================================================


class TestRebalanceRepository:
    async def test_insert_if_absent(self, async_session) -> None:
        repo = RebalanceRepository(async_session)
        assert await repo.insert_if_absent(_rebalance(4)) is True
        assert await repo.insert_if_absent(_rebalance(4)) is False

        stored = await repo.get(tx(1), 4)
        assert stored is not None
        assert stored.drift_percentage == Decimal("1.5")
        assert stored.strategy_key == KEY

    async def test_find_parent_picks_greatest_prior_log_index(self, async_session) -> None:
        repo = RebalanceRepository(async_session)
        for log_index in (2, 5, 9):
            await repo.insert_if_absent(_rebalance(log_index))
        await repo.insert_if_absent(_rebalance(10, tx_hash=tx(2)))

        assert (await repo.find_parent(MONAD, tx(1), 11)).log_index == 9
        assert (await repo.find_parent(MONAD, tx(1), 9)).log_index == 5
        assert await repo.find_parent(MONAD, tx(1), 2) is None
        assert await repo.find_parent(84532, tx(1), 11) is None

    async def test_record_swap_skips_missing_price_impact(self, async_session) -> None:
        repo = RebalanceRepository(async_session)
        await repo.insert_if_absent(_rebalance(1))

        await repo.record_swap(tx(1), 1, amount_in=100, amount_out=90, price_impact=Decimal("2"))
        await repo.record_swap(tx(1), 1, amount_in=100, amount_out=95, price_impact=None)
        await repo.record_swap(tx(1), 1, amount_in=100, amount_out=99, price_impact=Decimal("4"))

        stored = await repo.get(tx(1), 1)
        assert stored is not None
        assert stored.total_swaps == 3
        assert stored.total_volume_in == 300
        assert stored.total_volume_out == 284
        assert stored.price_impact_samples == 2
        assert stored.average_price_impact == Decimal(3)

    async def test_list_filters_by_status(self, async_session) -> None:
        repo = RebalanceRepository(async_session)
        await repo.insert_if_absent(_rebalance(1))
        failed = _rebalance(2)
        failed.status = "FAILED"
        failed.failure_reason = "slippage"
        await repo.insert_if_absent(failed)

        rows = await repo.list_rebalances(status="FAILED")
        assert [r.log_index for r in rows] == [2]


class TestSwapRepository:
    async def test_swap_key_includes_swap_index(self, async_session) -> None:
        repo = SwapRepository(async_session)

        def swap(swap_index: int) -> SwapDTO:
            return SwapDTO(
                tx_hash=tx(1),
                log_index=3,
                swap_index=swap_index,
                chain_id=MONAD,
                rebalance_tx_hash=tx(1),
                rebalance_log_index=1,
                user_address=USER,
                token_in=TOKEN_A,
                token_out=TOKEN_B,
                amount_in=10,
                amount_out=9,
                block_number=20,
                block_timestamp=DAY_ONE,
            )

        assert await repo.insert_if_absent(swap(0)) is True
        assert await repo.insert_if_absent(swap(1)) is True
        assert await repo.insert_if_absent(swap(0)) is False

        assert len(await repo.list_swaps(rebalance=(tx(1), 1))) == 2
        stored = await repo.get(tx(1), 3, 1)
        assert stored is not None and stored.price_impact is None


class TestSystemEventRepository:
    async def test_insert_and_filter(self, async_session) -> None:
        repo = SystemEventRepository(async_session)
        dto = SystemEventDTO(
            tx_hash=tx(5),
            log_index=0,
            chain_id=MONAD,
            event_type="EMERGENCY_PAUSE",
            block_number=30,
            block_timestamp=DAY_ONE,
            actor=USER.upper().replace("0X", "0x"),
        )
        assert await repo.insert_if_absent(dto) is True
        assert await repo.insert_if_absent(dto) is False

        rows = await repo.list_system_events(event_type="EMERGENCY_PAUSE")
        assert len(rows) == 1
        assert rows[0].actor == USER
        assert await repo.list_system_events(event_type="DEX_APPROVAL") == []


# ============================================================================
# DailyStatsRepository Tests
# ============================================================================


class TestDailyStatsRepository:
    async def test_increment_creates_and_adds(self, async_session) -> None:
        repo = DailyStatsRepository(async_session)
        await repo.increment(MONAD, "2026-01-01", strategies_created=1)
        await repo.increment(MONAD, "2026-01-01", strategies_created=2, failed_rebalances=1)

        stats = await repo.get(MONAD, "2026-01-01")
        assert stats is not None
        assert stats.strategies_created == 3
        assert stats.failed_rebalances == 1

    async def test_increment_rejects_unknown_counter(self, async_session) -> None:
        with pytest.raises(ValueError):
            await DailyStatsRepository(async_session).increment(MONAD, "2026-01-01", bogus=1)

    async def test_record_rebalance_mean(self, async_session) -> None:
        repo = DailyStatsRepository(async_session)
        await repo.record_rebalance(MONAD, "2026-01-01", drift_bps=100, gas_spent_wei=5)
        await repo.record_rebalance(MONAD, "2026-01-01", drift_bps=300, gas_spent_wei=5)

        stats = await repo.get(MONAD, "2026-01-01")
        assert stats is not None
        assert stats.total_rebalances == 2
        assert stats.average_drift == Decimal(200)
        assert stats.total_gas_spent_wei == 10

    async def test_participants_counted_once(self, async_session) -> None:
        repo = DailyStatsRepository(async_session)
        assert await repo.add_participant(MONAD, "2026-01-01", kind="user", participant=USER) is True
        assert await repo.add_participant(MONAD, "2026-01-01", kind="user", participant=USER) is False
        assert await repo.add_participant(MONAD, "2026-01-02", kind="user", participant=USER) is True
        assert await repo.add_participant(MONAD, "2026-01-01", kind="strategy", participant=str(KEY)) is True

        day_one = await repo.get(MONAD, "2026-01-01")
        assert day_one is not None
        assert day_one.unique_users == 1
        assert day_one.active_strategies == 1
        assert [d.date for d in await repo.list_daily(chain_id=MONAD)] == ["2026-01-02", "2026-01-01"]


# ============================================================================
# ScanProgressRepository Tests
# ============================================================================


class TestScanProgressRepository:
    async def test_lease_is_exclusive(self, async_session) -> None:
        repo = ScanProgressRepository(async_session)
        assert await repo.acquire_lease(MONAD, owner="a", ttl_seconds=60) is True
        assert await repo.acquire_lease(MONAD, owner="b", ttl_seconds=60) is False
        assert await repo.renew_lease(MONAD, owner="b", ttl_seconds=60) is False
        assert await repo.renew_lease(MONAD, owner="a", ttl_seconds=60) is True

        await repo.release_lease(MONAD, owner="a")
        assert await repo.acquire_lease(MONAD, owner="b", ttl_seconds=60) is True

    async def test_expired_lease_can_be_taken(self, async_session) -> None:
        repo = ScanProgressRepository(async_session)
        await repo.acquire_lease(MONAD, owner="a", ttl_seconds=60)
        await async_session.execute(
            update(ScanProgressModel)
            .where(ScanProgressModel.chain_id == MONAD)
            .values(lease_expires_at=datetime.now(UTC) - timedelta(seconds=1))
        )
        assert await repo.acquire_lease(MONAD, owner="b", ttl_seconds=60) is True
        progress = await repo.get(MONAD)
        assert progress is not None and progress.lease_owner == "b"

    async def test_record_batch(self, async_session) -> None:
        repo = ScanProgressRepository(async_session)
        await repo.ensure(MONAD)
        await repo.set_window(MONAD, current_block=100, target_block=500)
        await repo.record_batch(MONAD, to_block=199)
        await repo.record_batch(MONAD, to_block=299, advance_indexed=False)
        await repo.set_live_block(MONAD, 1_000)

        progress = await repo.get(MONAD)
        assert progress is not None
        assert progress.current_block == 299
        assert progress.latest_indexed_block == 199
        assert progress.target_block == 500
        assert progress.live_block == 1_000


class TestDeadLetterRepository:
    async def test_insert_and_list(self, async_session) -> None:
        repo = DeadLetterRepository(async_session)
        for chain_id in (MONAD, MONAD, 84532):
            await repo.insert(
                DeadLetterDTO(
                    chain_id=chain_id,
                    event_name="RebalanceExecuted",
                    tx_hash=tx(9, chain_id),
                    log_index=0,
                    payload="{}",
                    attempts=5,
                    error_type="OperationalError",
                    message="database is locked",
                )
            )

        rows = await repo.list_dead_letters(chain_id=MONAD)
        assert len(rows) == 2
        assert rows[0].id > rows[1].id
        assert rows[0].created_at is not None
        assert len(await repo.list_dead_letters(limit=1)) == 1
