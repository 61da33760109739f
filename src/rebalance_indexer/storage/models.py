"""SQLAlchemy models for persistent storage.

This module defines the canonical state schema produced by the event
reducer (users, strategies, rebalances, swaps, system events and daily
aggregates) together with the indexer's own bookkeeping tables (scan
progress and dead letters).

Block-derived timestamps are stored as unix seconds so that min/max and
day bucketing behave identically on every backend. Token amounts, wei
values and uint256 identifiers are stored as ``Numeric(78, 0)``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

UINT256 = Numeric(78, 0)
MEAN = Numeric(24, 6)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UserModel(Base):
    """Wallet that owns at least one strategy."""

    __tablename__ = "users"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    strategy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rebalances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gas_spent_wei: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    first_seen_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_activity_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class StrategyModel(Base):
    """Portfolio strategy registered on a specific chain."""

    __tablename__ = "strategies"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    strategy_id: Mapped[Decimal] = mapped_column(UINT256, primary_key=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    tokens: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    weights: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    rebalance_interval: Mapped[int] = mapped_column(BigInteger, nullable=False, default=3600)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_rebalance_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    total_rebalances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_rebalances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_swaps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    total_gas_spent_wei: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    # Running mean of drift in basis points over successful rebalances.
    average_drift: Mapped[Decimal] = mapped_column(MEAN, nullable=False, default=0)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Chain position of the last applied lifecycle/config event.
    lifecycle_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    lifecycle_log_index: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_strategies_user", "user_address"),
        Index("idx_strategies_chain_active", "chain_id", "is_active"),
    )


class RebalanceModel(Base):
    """Rebalance execution (successful or failed)."""

    __tablename__ = "rebalances"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    strategy_id: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    drift_bps: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    drift_percentage: Mapped[Decimal] = mapped_column(MEAN, nullable=False, default=0)
    gas_reimbursed_wei: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    gas_price_wei: Mapped[Decimal | None] = mapped_column(UINT256, nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    total_swaps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume_in: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    total_volume_out: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    average_price_impact: Mapped[Decimal] = mapped_column(MEAN, nullable=False, default=0)
    price_impact_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_rebalances_chain_tx", "chain_id", "tx_hash"),
        Index("idx_rebalances_strategy", "chain_id", "user_address", "strategy_id"),
        Index("idx_rebalances_user", "user_address"),
    )


class SwapModel(Base):
    """Token swap executed as part of a rebalance."""

    __tablename__ = "swaps"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    swap_index: Mapped[int] = mapped_column(Integer, primary_key=True, default=0)

    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    rebalance_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    rebalance_log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_in: Mapped[str] = mapped_column(String(42), nullable=False)
    token_out: Mapped[str] = mapped_column(String(42), nullable=False)
    amount_in: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    amount_out: Mapped[Decimal] = mapped_column(UINT256, nullable=False)
    price_impact: Mapped[Decimal | None] = mapped_column(MEAN, nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_swaps_rebalance", "rebalance_tx_hash", "rebalance_log_index"),
        Index("idx_swaps_user", "user_address"),
    )


class SystemEventModel(Base):
    """Administrative contract event (DEX approvals, emergency stops, executor rotation)."""

    __tablename__ = "system_events"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)

    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    dex_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    approved: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    actor: Mapped[str | None] = mapped_column(String(42), nullable=True)
    old_executor: Mapped[str | None] = mapped_column(String(42), nullable=True)
    new_executor: Mapped[str | None] = mapped_column(String(42), nullable=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (Index("idx_system_events_chain_type", "chain_id", "event_type"),)


class DailyStatsModel(Base):
    """Per-chain daily aggregates keyed by UTC calendar date."""

    __tablename__ = "daily_stats"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[str] = mapped_column(String(10), primary_key=True)

    strategies_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rebalances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_rebalances: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_swaps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_volume: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    total_gas_spent_wei: Mapped[Decimal] = mapped_column(UINT256, nullable=False, default=0)
    unique_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_strategies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_drift: Mapped[Decimal] = mapped_column(MEAN, nullable=False, default=0)
    average_price_impact: Mapped[Decimal] = mapped_column(MEAN, nullable=False, default=0)
    price_impact_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class DailyParticipantModel(Base):
    """Distinct users/strategies seen on a given day (backs exact unique counts)."""

    __tablename__ = "daily_participants"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[str] = mapped_column(String(10), primary_key=True)
    kind: Mapped[str] = mapped_column(String(10), primary_key=True)  # user | strategy
    participant: Mapped[str] = mapped_column(String(160), primary_key=True)


class ScanProgressModel(Base):
    """Per-chain scan cursors and the backfill lease."""

    __tablename__ = "scan_progress"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    latest_indexed_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    current_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    target_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    live_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    lease_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class DeadLetterModel(Base):
    """Raw events that exhausted their retries or failed permanently."""

    __tablename__ = "dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_type: Mapped[str] = mapped_column(String(120), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_dead_letters_chain_created", "chain_id", "created_at"),)
