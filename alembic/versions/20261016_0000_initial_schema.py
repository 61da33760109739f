"""Initial schema for the canonical state store and indexer bookkeeping.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UINT256 = sa.Numeric(78, 0)
MEAN = sa.Numeric(24, 6)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("strategy_count", sa.Integer(), nullable=False),
        sa.Column("total_rebalances", sa.Integer(), nullable=False),
        sa.Column("total_gas_spent_wei", UINT256, nullable=False),
        sa.Column("first_seen_at", sa.BigInteger(), nullable=False),
        sa.Column("last_activity_at", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )

    op.create_table(
        "strategies",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("strategy_id", UINT256, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("tokens", sa.JSON(), nullable=False),
        sa.Column("weights", sa.JSON(), nullable=False),
        sa.Column("rebalance_interval", sa.BigInteger(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_paused", sa.Boolean(), nullable=False),
        sa.Column("last_rebalance_time", sa.BigInteger(), nullable=True),
        sa.Column("total_rebalances", sa.Integer(), nullable=False),
        sa.Column("failed_rebalances", sa.Integer(), nullable=False),
        sa.Column("total_swaps", sa.Integer(), nullable=False),
        sa.Column("total_volume", UINT256, nullable=False),
        sa.Column("total_gas_spent_wei", UINT256, nullable=False),
        sa.Column("average_drift", MEAN, nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
        sa.Column("created_block", sa.BigInteger(), nullable=False),
        sa.Column("lifecycle_block", sa.BigInteger(), nullable=False),
        sa.Column("lifecycle_log_index", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "user_address", "strategy_id"),
    )
    op.create_index("idx_strategies_user", "strategies", ["user_address"])
    op.create_index("idx_strategies_chain_active", "strategies", ["chain_id", "is_active"])

    op.create_table(
        "rebalances",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("strategy_id", UINT256, nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("drift_bps", UINT256, nullable=False),
        sa.Column("drift_percentage", MEAN, nullable=False),
        sa.Column("gas_reimbursed_wei", UINT256, nullable=False),
        sa.Column("gas_price_wei", UINT256, nullable=True),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("total_swaps", sa.Integer(), nullable=False),
        sa.Column("total_volume_in", UINT256, nullable=False),
        sa.Column("total_volume_out", UINT256, nullable=False),
        sa.Column("average_price_impact", MEAN, nullable=False),
        sa.Column("price_impact_samples", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("tx_hash", "log_index"),
    )
    op.create_index("idx_rebalances_chain_tx", "rebalances", ["chain_id", "tx_hash"])
    op.create_index("idx_rebalances_strategy", "rebalances", ["chain_id", "user_address", "strategy_id"])
    op.create_index("idx_rebalances_user", "rebalances", ["user_address"])

    op.create_table(
        "swaps",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("swap_index", sa.Integer(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("rebalance_tx_hash", sa.String(66), nullable=False),
        sa.Column("rebalance_log_index", sa.Integer(), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("token_in", sa.String(42), nullable=False),
        sa.Column("token_out", sa.String(42), nullable=False),
        sa.Column("amount_in", UINT256, nullable=False),
        sa.Column("amount_out", UINT256, nullable=False),
        sa.Column("price_impact", MEAN, nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("tx_hash", "log_index", "swap_index"),
    )
    op.create_index("idx_swaps_rebalance", "swaps", ["rebalance_tx_hash", "rebalance_log_index"])
    op.create_index("idx_swaps_user", "swaps", ["user_address"])

    op.create_table(
        "system_events",
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("dex_address", sa.String(42), nullable=True),
        sa.Column("approved", sa.Boolean(), nullable=True),
        sa.Column("actor", sa.String(42), nullable=True),
        sa.Column("old_executor", sa.String(42), nullable=True),
        sa.Column("new_executor", sa.String(42), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("tx_hash", "log_index"),
    )
    op.create_index("idx_system_events_chain_type", "system_events", ["chain_id", "event_type"])

    op.create_table(
        "daily_stats",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("strategies_created", sa.Integer(), nullable=False),
        sa.Column("total_rebalances", sa.Integer(), nullable=False),
        sa.Column("failed_rebalances", sa.Integer(), nullable=False),
        sa.Column("total_swaps", sa.Integer(), nullable=False),
        sa.Column("total_volume", UINT256, nullable=False),
        sa.Column("total_gas_spent_wei", UINT256, nullable=False),
        sa.Column("unique_users", sa.Integer(), nullable=False),
        sa.Column("active_strategies", sa.Integer(), nullable=False),
        sa.Column("average_drift", MEAN, nullable=False),
        sa.Column("average_price_impact", MEAN, nullable=False),
        sa.Column("price_impact_samples", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "date"),
    )

    op.create_table(
        "daily_participants",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("participant", sa.String(160), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "date", "kind", "participant"),
    )

    op.create_table(
        "scan_progress",
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("latest_indexed_block", sa.BigInteger(), nullable=True),
        sa.Column("current_block", sa.BigInteger(), nullable=True),
        sa.Column("target_block", sa.BigInteger(), nullable=True),
        sa.Column("live_block", sa.BigInteger(), nullable=True),
        sa.Column("lease_owner", sa.String(64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain_id"),
    )

    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("chain_id", sa.Integer(), nullable=False),
        sa.Column("event_name", sa.String(64), nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_type", sa.String(120), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_dead_letters_chain_created", "dead_letters", ["chain_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_dead_letters_chain_created", table_name="dead_letters")
    op.drop_table("dead_letters")
    op.drop_table("scan_progress")
    op.drop_table("daily_participants")
    op.drop_table("daily_stats")
    op.drop_index("idx_system_events_chain_type", table_name="system_events")
    op.drop_table("system_events")
    op.drop_index("idx_swaps_user", table_name="swaps")
    op.drop_index("idx_swaps_rebalance", table_name="swaps")
    op.drop_table("swaps")
    op.drop_index("idx_rebalances_user", table_name="rebalances")
    op.drop_index("idx_rebalances_strategy", table_name="rebalances")
    op.drop_index("idx_rebalances_chain_tx", table_name="rebalances")
    op.drop_table("rebalances")
    op.drop_index("idx_strategies_chain_active", table_name="strategies")
    op.drop_index("idx_strategies_user", table_name="strategies")
    op.drop_table("strategies")
    op.drop_table("users")
