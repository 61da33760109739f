"""Log fetching shared by the backfill and live ingestion paths."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rebalance_indexer.chain.decoder import to_hex
from rebalance_indexer.errors import EventDecodeError
from rebalance_indexer.ingestor.models import RawEvent
from rebalance_indexer.storage.repos import DeadLetterDTO, DeadLetterRepository

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from rebalance_indexer.chain.client import ChainClient
    from rebalance_indexer.chain.decoder import LogDecoder

logger = logging.getLogger(__name__)

# Only rebalances carry the transaction's gas price (used for gas:updated).
GAS_PRICED_EVENTS = frozenset({"RebalanceExecuted"})


@dataclass
class FetchResult:
    events: list[RawEvent] = field(default_factory=list)
    undecodable: list[DeadLetterDTO] = field(default_factory=list)

    @property
    def decode_errors(self) -> int:
        return len(self.undecodable)


def _jsonable(value: object) -> object:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return to_hex(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _log_payload(log: dict) -> str:
    return json.dumps({k: _jsonable(v) for k, v in dict(log).items()}, default=str, sort_keys=True)


async def store_undecodable(session: AsyncSession, fetched: FetchResult) -> None:
    """Write a dead-letter row for every log that failed ABI decoding."""
    repo = DeadLetterRepository(session)
    for dto in fetched.undecodable:
        await repo.insert(dto)


async def fetch_raw_events(
    client: ChainClient,
    decoder: LogDecoder,
    addresses: Sequence[str],
    from_block: int,
    to_block: int,
) -> FetchResult:
    """Fetch and decode the indexed events emitted in ``[from_block, to_block]``.

    Events come back in chain order. Logs that fail ABI decoding are logged
    and returned in ``undecodable`` for the caller to dead-letter; RPC
    failures propagate.
    """
    result = FetchResult()
    if not addresses:
        return result

    logs = await client.get_logs(from_block, to_block, addresses, topics=[decoder.topics])
    logs.sort(key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))

    for log in logs:
        name = decoder.event_name(log)
        if name is None:
            continue
        block_number = int(log["blockNumber"])
        block_timestamp = await client.get_block_timestamp(block_number)
        gas_price = None
        if name in GAS_PRICED_EVENTS:
            gas_price = await client.get_transaction_gas_price(to_hex(log["transactionHash"]))
        try:
            raw = decoder.decode(log, block_timestamp=block_timestamp, gas_price=gas_price)
        except EventDecodeError as e:
            logger.error("Undecodable %s log on chain %d: %s", name, decoder.chain_id, e)
            result.undecodable.append(
                DeadLetterDTO(
                    chain_id=decoder.chain_id,
                    event_name=name,
                    tx_hash=to_hex(log["transactionHash"]),
                    log_index=int(log["logIndex"]),
                    payload=_log_payload(log),
                    attempts=0,
                    error_type=type(e).__name__,
                    message=str(e),
                )
            )
            continue
        if raw is not None:
            result.events.append(raw)

    return result
