"""Repository pattern implementations for data access.

This module provides data access abstractions for the canonical state
model. Every mutating method issues a single keyed statement (an
``INSERT ... ON CONFLICT`` or a guarded ``UPDATE``) and reports whether it
changed anything, so callers can gate their side effects on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from rebalance_indexer.storage.models import (
    MEAN,
    DailyParticipantModel,
    DailyStatsModel,
    DeadLetterModel,
    RebalanceModel,
    ScanProgressModel,
    StrategyModel,
    SwapModel,
    SystemEventModel,
    UserModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from rebalance_indexer.storage.models import Base

logger = logging.getLogger(__name__)

# UPDATE statements below are evaluated in SQL only; no ORM identity map sync.
_NO_SYNC = {"synchronize_session": False}


def _insert(session: AsyncSession, model: type[Base]) -> Any:
    """Dialect-specific INSERT that supports ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _int(value: Decimal | int | None) -> int | None:
    return int(value) if value is not None else None


def _mean(column: Any, count: Any, sample: Decimal | int | float) -> Any:
    """Running mean update ``(m*n + x) / (n+1)`` evaluated against the pre-update row."""
    return (column * count + sa.literal(Decimal(str(sample)), MEAN)) / (count + 1)


def _max(column: Any, value: int) -> Any:
    return sa.case((column.is_(None), value), (column < value, value), else_=column)


# ============================================================================
# Users
# ============================================================================


@dataclass
class UserDTO:
    """Data transfer object for users."""

    address: str
    strategy_count: int
    total_rebalances: int
    total_gas_spent_wei: int
    first_seen_at: int
    last_activity_at: int

    @classmethod
    def from_model(cls, model: UserModel) -> UserDTO:
        return cls(
            address=model.address,
            strategy_count=model.strategy_count,
            total_rebalances=model.total_rebalances,
            total_gas_spent_wei=int(model.total_gas_spent_wei),
            first_seen_at=model.first_seen_at,
            last_activity_at=model.last_activity_at,
        )


class UserRepository:
    """Repository for users and their activity counters."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, address: str) -> UserDTO | None:
        result = await self.session.execute(select(UserModel).where(UserModel.address == address.lower()))
        model = result.scalar_one_or_none()
        return UserDTO.from_model(model) if model else None

    async def list_users(self, *, limit: int = 100, offset: int = 0) -> list[UserDTO]:
        result = await self.session.execute(
            select(UserModel).order_by(UserModel.address).limit(limit).offset(offset)
        )
        return [UserDTO.from_model(m) for m in result.scalars().all()]

    async def record_activity(
        self,
        address: str,
        *,
        timestamp: int,
        strategies_created: int = 0,
        rebalances: int = 0,
        gas_spent_wei: int = 0,
    ) -> None:
        """Upsert a user, adding to its counters and widening its activity window.

        First/last activity are min/max over every observed timestamp, so the
        result does not depend on arrival order.
        """
        stmt = _insert(self.session, UserModel).values(
            address=address.lower(),
            strategy_count=strategies_created,
            total_rebalances=rebalances,
            total_gas_spent_wei=Decimal(gas_spent_wei),
            first_seen_at=timestamp,
            last_activity_at=timestamp,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["address"],
            set_={
                "strategy_count": UserModel.strategy_count + strategies_created,
                "total_rebalances": UserModel.total_rebalances + rebalances,
                "total_gas_spent_wei": UserModel.total_gas_spent_wei + Decimal(gas_spent_wei),
                "first_seen_at": sa.case(
                    (UserModel.first_seen_at > timestamp, timestamp),
                    else_=UserModel.first_seen_at,
                ),
                "last_activity_at": _max(UserModel.last_activity_at, timestamp),
            },
        )
        await self.session.execute(stmt)

    async def decrement_strategy_count(self, address: str) -> None:
        """Decrement the active strategy count, never below zero."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.address == address.lower())
            .values(
                strategy_count=sa.case(
                    (UserModel.strategy_count > 0, UserModel.strategy_count - 1),
                    else_=0,
                )
            )
            .execution_options(**_NO_SYNC)
        )


# ============================================================================
# Strategies
# ============================================================================


@dataclass(frozen=True)
class StrategyKey:
    """Composite identity of a strategy across chains."""

    chain_id: int
    user_address: str
    strategy_id: int

    def __str__(self) -> str:
        return f"{self.chain_id}-{self.user_address}-{self.strategy_id}"


@dataclass
class StrategyDTO:
    """Data transfer object for strategies."""

    chain_id: int
    user_address: str
    strategy_id: int
    name: str
    tokens: list[str]
    weights: list[int]
    rebalance_interval: int
    is_active: bool
    is_paused: bool
    last_rebalance_time: int | None
    total_rebalances: int
    failed_rebalances: int
    total_swaps: int
    total_volume: int
    total_gas_spent_wei: int
    average_drift: Decimal
    created_at: int
    updated_at: int
    created_block: int
    lifecycle_block: int
    lifecycle_log_index: int

    @property
    def key(self) -> StrategyKey:
        return StrategyKey(self.chain_id, self.user_address, self.strategy_id)

    @classmethod
    def from_model(cls, model: StrategyModel) -> StrategyDTO:
        return cls(
            chain_id=model.chain_id,
            user_address=model.user_address,
            strategy_id=int(model.strategy_id),
            name=model.name,
            tokens=list(model.tokens),
            weights=[int(w) for w in model.weights],
            rebalance_interval=model.rebalance_interval,
            is_active=model.is_active,
            is_paused=model.is_paused,
            last_rebalance_time=model.last_rebalance_time,
            total_rebalances=model.total_rebalances,
            failed_rebalances=model.failed_rebalances,
            total_swaps=model.total_swaps,
            total_volume=int(model.total_volume),
            total_gas_spent_wei=int(model.total_gas_spent_wei),
            average_drift=Decimal(model.average_drift),
            created_at=model.created_at,
            updated_at=model.updated_at,
            created_block=model.created_block,
            lifecycle_block=model.lifecycle_block,
            lifecycle_log_index=model.lifecycle_log_index,
        )


def _strategy_where(key: StrategyKey) -> Any:
    return (
        (StrategyModel.chain_id == key.chain_id)
        & (StrategyModel.user_address == key.user_address.lower())
        & (StrategyModel.strategy_id == Decimal(key.strategy_id))
    )


class StrategyRepository:
    """Repository for strategies keyed by (chain_id, user_address, strategy_id)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: StrategyKey) -> StrategyDTO | None:
        result = await self.session.execute(select(StrategyModel).where(_strategy_where(key)))
        model = result.scalar_one_or_none()
        return StrategyDTO.from_model(model) if model else None

    async def list_strategies(
        self,
        *,
        user_address: str | None = None,
        chain_id: int | None = None,
        active_only: bool = False,
        limit: int = 100,
    ) -> list[StrategyDTO]:
        stmt = select(StrategyModel)
        if user_address is not None:
            stmt = stmt.where(StrategyModel.user_address == user_address.lower())
        if chain_id is not None:
            stmt = stmt.where(StrategyModel.chain_id == chain_id)
        if active_only:
            stmt = stmt.where(StrategyModel.is_active.is_(True))
        stmt = stmt.order_by(
            StrategyModel.chain_id, StrategyModel.user_address, StrategyModel.strategy_id
        ).limit(limit)
        result = await self.session.execute(stmt)
        return [StrategyDTO.from_model(m) for m in result.scalars().all()]

    async def insert_if_absent(
        self,
        key: StrategyKey,
        *,
        name: str,
        tokens: list[str],
        weights: list[int],
        rebalance_interval: int,
        block_number: int,
        log_index: int,
        block_timestamp: int,
    ) -> bool:
        """Insert a new strategy; returns False if the key already exists."""
        stmt = _insert(self.session, StrategyModel).values(
            chain_id=key.chain_id,
            user_address=key.user_address.lower(),
            strategy_id=Decimal(key.strategy_id),
            name=name,
            tokens=[t.lower() for t in tokens],
            weights=list(weights),
            rebalance_interval=rebalance_interval,
            is_active=True,
            is_paused=False,
            total_volume=Decimal(0),
            total_gas_spent_wei=Decimal(0),
            average_drift=Decimal(0),
            created_at=block_timestamp,
            updated_at=block_timestamp,
            created_block=block_number,
            lifecycle_block=block_number,
            lifecycle_log_index=log_index,
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["chain_id", "user_address", "strategy_id"]
        ).returning(StrategyModel.strategy_id)
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def apply_lifecycle(
        self,
        key: StrategyKey,
        *,
        block_number: int,
        log_index: int,
        block_timestamp: int,
        values: dict[str, Any],
    ) -> bool:
        """Apply a lifecycle/config change if it is newer than the watermark.

        The update only touches active strategies and only when
        ``(block_number, log_index)`` is strictly later than the stored
        lifecycle position; the position then advances to the event's.
        """
        later = (StrategyModel.lifecycle_block < block_number) | (
            (StrategyModel.lifecycle_block == block_number)
            & (StrategyModel.lifecycle_log_index < log_index)
        )
        result = await self.session.execute(
            update(StrategyModel)
            .where(_strategy_where(key) & StrategyModel.is_active.is_(True) & later)
            .values(
                **values,
                lifecycle_block=block_number,
                lifecycle_log_index=log_index,
                updated_at=_max(StrategyModel.updated_at, block_timestamp),
            )
            .returning(StrategyModel.strategy_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def deactivate(self, key: StrategyKey, *, block_timestamp: int) -> bool:
        """Terminally deactivate; returns True only on the active -> inactive transition."""
        result = await self.session.execute(
            update(StrategyModel)
            .where(_strategy_where(key) & StrategyModel.is_active.is_(True))
            .values(
                is_active=False,
                updated_at=_max(StrategyModel.updated_at, block_timestamp),
            )
            .returning(StrategyModel.strategy_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def advance_last_rebalance_time(self, key: StrategyKey, timestamp: int) -> bool:
        """Set ``last_rebalance_time = max(current, timestamp)``."""
        result = await self.session.execute(
            update(StrategyModel)
            .where(
                _strategy_where(key)
                & (
                    StrategyModel.last_rebalance_time.is_(None)
                    | (StrategyModel.last_rebalance_time < timestamp)
                )
            )
            .values(last_rebalance_time=timestamp)
            .returning(StrategyModel.strategy_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def record_rebalance(
        self,
        key: StrategyKey,
        *,
        drift_bps: int,
        gas_spent_wei: int,
        block_timestamp: int,
    ) -> bool:
        """Fold a successful rebalance into the strategy's counters and mean drift."""
        result = await self.session.execute(
            update(StrategyModel)
            .where(_strategy_where(key))
            .values(
                total_rebalances=StrategyModel.total_rebalances + 1,
                total_gas_spent_wei=StrategyModel.total_gas_spent_wei + Decimal(gas_spent_wei),
                average_drift=_mean(StrategyModel.average_drift, StrategyModel.total_rebalances, drift_bps),
                last_rebalance_time=_max(StrategyModel.last_rebalance_time, block_timestamp),
            )
            .returning(StrategyModel.strategy_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def record_failed_rebalance(self, key: StrategyKey) -> bool:
        result = await self.session.execute(
            update(StrategyModel)
            .where(_strategy_where(key))
            .values(failed_rebalances=StrategyModel.failed_rebalances + 1)
            .returning(StrategyModel.strategy_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def record_swap(self, key: StrategyKey, *, amount_in: int) -> bool:
        result = await self.session.execute(
            update(StrategyModel)
            .where(_strategy_where(key))
            .values(
                total_swaps=StrategyModel.total_swaps + 1,
                total_volume=StrategyModel.total_volume + Decimal(amount_in),
            )
            .returning(StrategyModel.strategy_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None


# ============================================================================
# Rebalances
# ============================================================================


@dataclass
class RebalanceDTO:
    """Data transfer object for rebalance executions."""

    tx_hash: str
    log_index: int
    chain_id: int
    user_address: str
    strategy_id: int
    block_number: int
    block_timestamp: int
    status: str
    drift_bps: int = 0
    drift_percentage: Decimal = Decimal(0)
    gas_reimbursed_wei: int = 0
    gas_price_wei: int | None = None
    failure_reason: str | None = None
    total_swaps: int = 0
    total_volume_in: int = 0
    total_volume_out: int = 0
    average_price_impact: Decimal = Decimal(0)
    price_impact_samples: int = 0

    @property
    def strategy_key(self) -> StrategyKey:
        return StrategyKey(self.chain_id, self.user_address, self.strategy_id)

    @classmethod
    def from_model(cls, model: RebalanceModel) -> RebalanceDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            chain_id=model.chain_id,
            user_address=model.user_address,
            strategy_id=int(model.strategy_id),
            block_number=model.block_number,
            block_timestamp=model.block_timestamp,
            status=model.status,
            drift_bps=int(model.drift_bps),
            drift_percentage=Decimal(model.drift_percentage),
            gas_reimbursed_wei=int(model.gas_reimbursed_wei),
            gas_price_wei=_int(model.gas_price_wei),
            failure_reason=model.failure_reason,
            total_swaps=model.total_swaps,
            total_volume_in=int(model.total_volume_in),
            total_volume_out=int(model.total_volume_out),
            average_price_impact=Decimal(model.average_price_impact),
            price_impact_samples=model.price_impact_samples,
        )


class RebalanceRepository:
    """Repository for rebalances keyed by (tx_hash, log_index)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_hash: str, log_index: int) -> RebalanceDTO | None:
        result = await self.session.execute(
            select(RebalanceModel).where(
                (RebalanceModel.tx_hash == tx_hash.lower()) & (RebalanceModel.log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return RebalanceDTO.from_model(model) if model else None

    async def list_rebalances(
        self,
        *,
        user_address: str | None = None,
        chain_id: int | None = None,
        strategy_id: int | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[RebalanceDTO]:
        stmt = select(RebalanceModel)
        if user_address is not None:
            stmt = stmt.where(RebalanceModel.user_address == user_address.lower())
        if chain_id is not None:
            stmt = stmt.where(RebalanceModel.chain_id == chain_id)
        if strategy_id is not None:
            stmt = stmt.where(RebalanceModel.strategy_id == Decimal(strategy_id))
        if status is not None:
            stmt = stmt.where(RebalanceModel.status == status)
        stmt = stmt.order_by(RebalanceModel.block_number.desc(), RebalanceModel.log_index.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [RebalanceDTO.from_model(m) for m in result.scalars().all()]

    async def insert_if_absent(self, dto: RebalanceDTO) -> bool:
        """Insert a rebalance; returns False if (tx_hash, log_index) already exists."""
        stmt = _insert(self.session, RebalanceModel).values(
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            chain_id=dto.chain_id,
            user_address=dto.user_address.lower(),
            strategy_id=Decimal(dto.strategy_id),
            block_number=dto.block_number,
            block_timestamp=dto.block_timestamp,
            status=dto.status,
            drift_bps=Decimal(dto.drift_bps),
            drift_percentage=dto.drift_percentage,
            gas_reimbursed_wei=Decimal(dto.gas_reimbursed_wei),
            gas_price_wei=Decimal(dto.gas_price_wei) if dto.gas_price_wei is not None else None,
            failure_reason=dto.failure_reason,
            total_volume_in=Decimal(0),
            total_volume_out=Decimal(0),
            average_price_impact=Decimal(0),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"]).returning(
            RebalanceModel.tx_hash
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def find_parent(self, chain_id: int, tx_hash: str, before_log_index: int) -> RebalanceDTO | None:
        """Most recent rebalance in the same transaction emitted before ``before_log_index``."""
        result = await self.session.execute(
            select(RebalanceModel)
            .where(
                (RebalanceModel.chain_id == chain_id)
                & (RebalanceModel.tx_hash == tx_hash.lower())
                & (RebalanceModel.log_index < before_log_index)
            )
            .order_by(RebalanceModel.log_index.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return RebalanceDTO.from_model(model) if model else None

    async def record_swap(
        self,
        tx_hash: str,
        log_index: int,
        *,
        amount_in: int,
        amount_out: int,
        price_impact: Decimal | None,
    ) -> None:
        values: dict[str, Any] = {
            "total_swaps": RebalanceModel.total_swaps + 1,
            "total_volume_in": RebalanceModel.total_volume_in + Decimal(amount_in),
            "total_volume_out": RebalanceModel.total_volume_out + Decimal(amount_out),
        }
        if price_impact is not None:
            values["average_price_impact"] = _mean(
                RebalanceModel.average_price_impact, RebalanceModel.price_impact_samples, price_impact
            )
            values["price_impact_samples"] = RebalanceModel.price_impact_samples + 1
        await self.session.execute(
            update(RebalanceModel)
            .where((RebalanceModel.tx_hash == tx_hash.lower()) & (RebalanceModel.log_index == log_index))
            .values(**values)
            .execution_options(**_NO_SYNC)
        )


# ============================================================================
# Swaps
# ============================================================================


@dataclass
class SwapDTO:
    """Data transfer object for swaps."""

    tx_hash: str
    log_index: int
    chain_id: int
    rebalance_tx_hash: str
    rebalance_log_index: int
    user_address: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    block_number: int
    block_timestamp: int
    swap_index: int = 0
    price_impact: Decimal | None = None

    @classmethod
    def from_model(cls, model: SwapModel) -> SwapDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            swap_index=model.swap_index,
            chain_id=model.chain_id,
            rebalance_tx_hash=model.rebalance_tx_hash,
            rebalance_log_index=model.rebalance_log_index,
            user_address=model.user_address,
            token_in=model.token_in,
            token_out=model.token_out,
            amount_in=int(model.amount_in),
            amount_out=int(model.amount_out),
            price_impact=Decimal(model.price_impact) if model.price_impact is not None else None,
            block_number=model.block_number,
            block_timestamp=model.block_timestamp,
        )


class SwapRepository:
    """Repository for swaps keyed by (tx_hash, log_index, swap_index)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_hash: str, log_index: int, swap_index: int = 0) -> SwapDTO | None:
        result = await self.session.execute(
            select(SwapModel).where(
                (SwapModel.tx_hash == tx_hash.lower())
                & (SwapModel.log_index == log_index)
                & (SwapModel.swap_index == swap_index)
            )
        )
        model = result.scalar_one_or_none()
        return SwapDTO.from_model(model) if model else None

    async def list_swaps(
        self,
        *,
        user_address: str | None = None,
        chain_id: int | None = None,
        rebalance: tuple[str, int] | None = None,
        limit: int = 100,
    ) -> list[SwapDTO]:
        stmt = select(SwapModel)
        if user_address is not None:
            stmt = stmt.where(SwapModel.user_address == user_address.lower())
        if chain_id is not None:
            stmt = stmt.where(SwapModel.chain_id == chain_id)
        if rebalance is not None:
            stmt = stmt.where(
                (SwapModel.rebalance_tx_hash == rebalance[0].lower())
                & (SwapModel.rebalance_log_index == rebalance[1])
            )
        stmt = stmt.order_by(SwapModel.block_number, SwapModel.log_index, SwapModel.swap_index).limit(limit)
        result = await self.session.execute(stmt)
        return [SwapDTO.from_model(m) for m in result.scalars().all()]

    async def insert_if_absent(self, dto: SwapDTO) -> bool:
        stmt = _insert(self.session, SwapModel).values(
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            swap_index=dto.swap_index,
            chain_id=dto.chain_id,
            rebalance_tx_hash=dto.rebalance_tx_hash.lower(),
            rebalance_log_index=dto.rebalance_log_index,
            user_address=dto.user_address.lower(),
            token_in=dto.token_in.lower(),
            token_out=dto.token_out.lower(),
            amount_in=Decimal(dto.amount_in),
            amount_out=Decimal(dto.amount_out),
            price_impact=dto.price_impact,
            block_number=dto.block_number,
            block_timestamp=dto.block_timestamp,
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["tx_hash", "log_index", "swap_index"]
        ).returning(SwapModel.tx_hash)
        result = await self.session.execute(stmt)
        return result.first() is not None


# ============================================================================
# System events
# ============================================================================


@dataclass
class SystemEventDTO:
    """Data transfer object for administrative contract events."""

    tx_hash: str
    log_index: int
    chain_id: int
    event_type: str
    block_number: int
    block_timestamp: int
    dex_address: str | None = None
    approved: bool | None = None
    actor: str | None = None
    old_executor: str | None = None
    new_executor: str | None = None

    @classmethod
    def from_model(cls, model: SystemEventModel) -> SystemEventDTO:
        return cls(
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            chain_id=model.chain_id,
            event_type=model.event_type,
            block_number=model.block_number,
            block_timestamp=model.block_timestamp,
            dex_address=model.dex_address,
            approved=model.approved,
            actor=model.actor,
            old_executor=model.old_executor,
            new_executor=model.new_executor,
        )


class SystemEventRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, tx_hash: str, log_index: int) -> SystemEventDTO | None:
        result = await self.session.execute(
            select(SystemEventModel).where(
                (SystemEventModel.tx_hash == tx_hash.lower()) & (SystemEventModel.log_index == log_index)
            )
        )
        model = result.scalar_one_or_none()
        return SystemEventDTO.from_model(model) if model else None

    async def list_system_events(
        self,
        *,
        chain_id: int | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[SystemEventDTO]:
        stmt = select(SystemEventModel)
        if chain_id is not None:
            stmt = stmt.where(SystemEventModel.chain_id == chain_id)
        if event_type is not None:
            stmt = stmt.where(SystemEventModel.event_type == event_type)
        stmt = stmt.order_by(SystemEventModel.block_number.desc(), SystemEventModel.log_index.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [SystemEventDTO.from_model(m) for m in result.scalars().all()]

    async def insert_if_absent(self, dto: SystemEventDTO) -> bool:
        def _lower(v: str | None) -> str | None:
            return v.lower() if v else v

        stmt = _insert(self.session, SystemEventModel).values(
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            chain_id=dto.chain_id,
            event_type=dto.event_type,
            block_number=dto.block_number,
            block_timestamp=dto.block_timestamp,
            dex_address=_lower(dto.dex_address),
            approved=dto.approved,
            actor=_lower(dto.actor),
            old_executor=_lower(dto.old_executor),
            new_executor=_lower(dto.new_executor),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"]).returning(
            SystemEventModel.tx_hash
        )
        result = await self.session.execute(stmt)
        return result.first() is not None


# ============================================================================
# Daily stats
# ============================================================================


@dataclass
class DailyStatsDTO:
    """Data transfer object for per-chain daily aggregates."""

    chain_id: int
    date: str
    strategies_created: int = 0
    total_rebalances: int = 0
    failed_rebalances: int = 0
    total_swaps: int = 0
    total_volume: int = 0
    total_gas_spent_wei: int = 0
    unique_users: int = 0
    active_strategies: int = 0
    average_drift: Decimal = Decimal(0)
    average_price_impact: Decimal = Decimal(0)
    price_impact_samples: int = 0

    @classmethod
    def from_model(cls, model: DailyStatsModel) -> DailyStatsDTO:
        return cls(
            chain_id=model.chain_id,
            date=model.date,
            strategies_created=model.strategies_created,
            total_rebalances=model.total_rebalances,
            failed_rebalances=model.failed_rebalances,
            total_swaps=model.total_swaps,
            total_volume=int(model.total_volume),
            total_gas_spent_wei=int(model.total_gas_spent_wei),
            unique_users=model.unique_users,
            active_strategies=model.active_strategies,
            average_drift=Decimal(model.average_drift),
            average_price_impact=Decimal(model.average_price_impact),
            price_impact_samples=model.price_impact_samples,
        )


_DAILY_COUNTERS = frozenset(
    {
        "strategies_created",
        "total_rebalances",
        "failed_rebalances",
        "total_swaps",
        "unique_users",
        "active_strategies",
    }
)
_DAILY_AMOUNTS = frozenset({"total_volume", "total_gas_spent_wei"})


class DailyStatsRepository:
    """Additive upserts into ``daily_stats`` keyed by (chain_id, date)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain_id: int, date: str) -> DailyStatsDTO | None:
        result = await self.session.execute(
            select(DailyStatsModel).where(
                (DailyStatsModel.chain_id == chain_id) & (DailyStatsModel.date == date)
            )
        )
        model = result.scalar_one_or_none()
        return DailyStatsDTO.from_model(model) if model else None

    async def list_daily(self, *, chain_id: int | None = None, limit: int = 90) -> list[DailyStatsDTO]:
        stmt = select(DailyStatsModel)
        if chain_id is not None:
            stmt = stmt.where(DailyStatsModel.chain_id == chain_id)
        stmt = stmt.order_by(DailyStatsModel.date.desc(), DailyStatsModel.chain_id).limit(limit)
        result = await self.session.execute(stmt)
        return [DailyStatsDTO.from_model(m) for m in result.scalars().all()]

    async def _upsert(
        self,
        chain_id: int,
        date: str,
        insert_values: dict[str, Any],
        update_values: dict[str, Any],
    ) -> None:
        values: dict[str, Any] = {
            "chain_id": chain_id,
            "date": date,
            "total_volume": Decimal(0),
            "total_gas_spent_wei": Decimal(0),
            "average_drift": Decimal(0),
            "average_price_impact": Decimal(0),
        }
        values.update(insert_values)
        stmt = _insert(self.session, DailyStatsModel).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=["chain_id", "date"], set_=update_values)
        await self.session.execute(stmt)

    async def increment(self, chain_id: int, date: str, **deltas: int) -> None:
        """Add ``deltas`` to counters, creating the day row if needed."""
        insert_values: dict[str, Any] = {}
        update_values: dict[str, Any] = {}
        for name, delta in deltas.items():
            if name in _DAILY_COUNTERS:
                insert_values[name] = delta
            elif name in _DAILY_AMOUNTS:
                insert_values[name] = Decimal(delta)
            else:
                raise ValueError(f"Unknown daily counter: {name}")
            update_values[name] = getattr(DailyStatsModel, name) + insert_values[name]
        await self._upsert(chain_id, date, insert_values, update_values)

    async def record_rebalance(self, chain_id: int, date: str, *, drift_bps: int, gas_spent_wei: int) -> None:
        """Count a successful rebalance and fold its drift into the daily mean."""
        await self._upsert(
            chain_id,
            date,
            {
                "total_rebalances": 1,
                "total_gas_spent_wei": Decimal(gas_spent_wei),
                "average_drift": Decimal(drift_bps),
            },
            {
                "total_rebalances": DailyStatsModel.total_rebalances + 1,
                "total_gas_spent_wei": DailyStatsModel.total_gas_spent_wei + Decimal(gas_spent_wei),
                "average_drift": _mean(DailyStatsModel.average_drift, DailyStatsModel.total_rebalances, drift_bps),
            },
        )

    async def record_swap(
        self,
        chain_id: int,
        date: str,
        *,
        amount_in: int,
        price_impact: Decimal | None,
    ) -> None:
        """Count a swap; only swaps with a known price impact feed the mean."""
        insert_values: dict[str, Any] = {"total_swaps": 1, "total_volume": Decimal(amount_in)}
        update_values: dict[str, Any] = {
            "total_swaps": DailyStatsModel.total_swaps + 1,
            "total_volume": DailyStatsModel.total_volume + Decimal(amount_in),
        }
        if price_impact is not None:
            insert_values["average_price_impact"] = price_impact
            insert_values["price_impact_samples"] = 1
            update_values["average_price_impact"] = _mean(
                DailyStatsModel.average_price_impact, DailyStatsModel.price_impact_samples, price_impact
            )
            update_values["price_impact_samples"] = DailyStatsModel.price_impact_samples + 1
        await self._upsert(chain_id, date, insert_values, update_values)

    async def add_participant(self, chain_id: int, date: str, *, kind: str, participant: str) -> bool:
        """Record a distinct participant for the day.

        ``unique_users`` (kind ``user``) or ``active_strategies`` (kind
        ``strategy``) is incremented only when the participant is new.
        """
        counter = {"user": "unique_users", "strategy": "active_strategies"}[kind]
        stmt = _insert(self.session, DailyParticipantModel).values(
            chain_id=chain_id, date=date, kind=kind, participant=participant.lower()
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["chain_id", "date", "kind", "participant"]
        ).returning(DailyParticipantModel.participant)
        result = await self.session.execute(stmt)
        if result.first() is None:
            return False
        await self.increment(chain_id, date, **{counter: 1})
        return True


# ============================================================================
# Scan progress and backfill lease
# ============================================================================


@dataclass
class ScanProgressDTO:
    chain_id: int
    latest_indexed_block: int | None
    current_block: int | None
    target_block: int | None
    live_block: int | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ScanProgressModel) -> ScanProgressDTO:
        return cls(
            chain_id=model.chain_id,
            latest_indexed_block=model.latest_indexed_block,
            current_block=model.current_block,
            target_block=model.target_block,
            live_block=model.live_block,
            lease_owner=model.lease_owner,
            lease_expires_at=model.lease_expires_at,
            updated_at=model.updated_at,
        )


class ScanProgressRepository:
    """Per-chain scan cursors and the backfill lease row."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, chain_id: int) -> ScanProgressDTO | None:
        result = await self.session.execute(
            select(ScanProgressModel).where(ScanProgressModel.chain_id == chain_id)
        )
        model = result.scalar_one_or_none()
        return ScanProgressDTO.from_model(model) if model else None

    async def ensure(self, chain_id: int) -> None:
        stmt = _insert(self.session, ScanProgressModel).values(chain_id=chain_id, updated_at=datetime.now(UTC))
        await self.session.execute(stmt.on_conflict_do_nothing(index_elements=["chain_id"]))

    async def acquire_lease(self, chain_id: int, *, owner: str, ttl_seconds: int) -> bool:
        """Atomically take the chain's backfill lease if it is free or expired."""
        await self.ensure(chain_id)
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(ScanProgressModel)
            .where(
                (ScanProgressModel.chain_id == chain_id)
                & (
                    ScanProgressModel.lease_owner.is_(None)
                    | ScanProgressModel.lease_expires_at.is_(None)
                    | (ScanProgressModel.lease_expires_at < now)
                )
            )
            .values(
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=ttl_seconds),
                updated_at=now,
            )
            .returning(ScanProgressModel.chain_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def renew_lease(self, chain_id: int, *, owner: str, ttl_seconds: int) -> bool:
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(ScanProgressModel)
            .where((ScanProgressModel.chain_id == chain_id) & (ScanProgressModel.lease_owner == owner))
            .values(lease_expires_at=now + timedelta(seconds=ttl_seconds), updated_at=now)
            .returning(ScanProgressModel.chain_id)
            .execution_options(**_NO_SYNC)
        )
        return result.first() is not None

    async def release_lease(self, chain_id: int, *, owner: str) -> None:
        await self.session.execute(
            update(ScanProgressModel)
            .where((ScanProgressModel.chain_id == chain_id) & (ScanProgressModel.lease_owner == owner))
            .values(lease_owner=None, lease_expires_at=None, updated_at=datetime.now(UTC))
            .execution_options(**_NO_SYNC)
        )

    async def set_window(self, chain_id: int, *, current_block: int, target_block: int) -> None:
        await self.session.execute(
            update(ScanProgressModel)
            .where(ScanProgressModel.chain_id == chain_id)
            .values(current_block=current_block, target_block=target_block, updated_at=datetime.now(UTC))
            .execution_options(**_NO_SYNC)
        )

    async def record_batch(self, chain_id: int, *, to_block: int, advance_indexed: bool = True) -> None:
        """Persist a completed batch (moves ``latest_indexed_block`` unless told not to)."""
        values: dict[str, Any] = {"current_block": to_block, "updated_at": datetime.now(UTC)}
        if advance_indexed:
            values["latest_indexed_block"] = to_block
        await self.session.execute(
            update(ScanProgressModel)
            .where(ScanProgressModel.chain_id == chain_id)
            .values(**values)
            .execution_options(**_NO_SYNC)
        )

    async def set_live_block(self, chain_id: int, block_number: int) -> None:
        await self.ensure(chain_id)
        await self.session.execute(
            update(ScanProgressModel)
            .where(ScanProgressModel.chain_id == chain_id)
            .values(live_block=block_number, updated_at=datetime.now(UTC))
            .execution_options(**_NO_SYNC)
        )


# ============================================================================
# Dead letters
# ============================================================================


@dataclass
class DeadLetterDTO:
    chain_id: int
    event_name: str
    tx_hash: str
    log_index: int
    payload: str
    attempts: int
    error_type: str
    message: str
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DeadLetterModel) -> DeadLetterDTO:
        return cls(
            id=model.id,
            chain_id=model.chain_id,
            event_name=model.event_name,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            payload=model.payload,
            attempts=model.attempts,
            error_type=model.error_type,
            message=model.message,
            created_at=model.created_at,
        )


class DeadLetterRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: DeadLetterDTO) -> None:
        await self.session.execute(
            sa.insert(DeadLetterModel).values(
                chain_id=dto.chain_id,
                event_name=dto.event_name,
                tx_hash=dto.tx_hash.lower(),
                log_index=dto.log_index,
                payload=dto.payload,
                attempts=dto.attempts,
                error_type=dto.error_type,
                message=dto.message,
                created_at=dto.created_at or datetime.now(UTC),
            )
        )

    async def list_dead_letters(self, *, chain_id: int | None = None, limit: int = 50) -> list[DeadLetterDTO]:
        stmt = select(DeadLetterModel)
        if chain_id is not None:
            stmt = stmt.where(DeadLetterModel.chain_id == chain_id)
        stmt = stmt.order_by(DeadLetterModel.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [DeadLetterDTO.from_model(m) for m in result.scalars().all()]
