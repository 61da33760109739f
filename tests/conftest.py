"""Pytest configuration and fixtures."""

import itertools
from collections.abc import Callable
from typing import Any

import pytest
from factories import DAY_ONE, MONAD, tx

from rebalance_indexer.ingestor.models import RawEvent
from rebalance_indexer.storage.database import DatabaseManager


@pytest.fixture
async def db():
    """In-memory SQLite database with the schema created.

    aiosqlite serves ``:memory:`` through a single shared connection, so
    tests using this fixture should not open overlapping sessions.
    """
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
async def file_db(tmp_path):
    """File-backed SQLite database for tests that run concurrent tasks."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def make_event() -> Callable[..., RawEvent]:
    """Factory for raw events.

    ``block_number`` defaults to an increasing counter so consecutive calls
    produce events in chain order.
    """
    blocks = itertools.count(100)

    def _make(
        event_name: str,
        data: dict[str, Any],
        *,
        chain_id: int = MONAD,
        block_number: int | None = None,
        log_index: int = 0,
        tx_hash: str | None = None,
        block_timestamp: int = DAY_ONE,
        gas_price: int | None = None,
    ) -> RawEvent:
        block = block_number if block_number is not None else next(blocks)
        return RawEvent(
            chain_id=chain_id,
            event_name=event_name,
            block_number=block,
            transaction_hash=tx_hash or tx(block * 1000 + log_index, chain_id),
            log_index=log_index,
            data=data,
            block_timestamp=block_timestamp,
            gas_price=gas_price,
        )

    return _make
