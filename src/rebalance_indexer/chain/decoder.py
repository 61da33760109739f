"""ABI decoding of raw contract logs into ``RawEvent``s.

The backfill scanner and the live subscriber both go through
``LogDecoder`` so the two paths produce byte-identical raw events.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3._utils.events import get_event_data
from web3.exceptions import Web3Exception

from rebalance_indexer.chain.abis import ALL_EVENTS, event_signature
from rebalance_indexer.errors import EventDecodeError
from rebalance_indexer.ingestor.models import RawEvent

logger = logging.getLogger(__name__)


def to_hex(value: Any) -> str:
    """Lowercase 0x-prefixed hex for bytes-like or hex-string values."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    return bytes.fromhex(text[2:] if text.startswith(("0x", "0X")) else text)


def event_topic(abi: dict[str, Any]) -> str:
    """topic0 of an event ABI."""
    return to_hex(Web3.keccak(text=event_signature(abi)))


def _plain(value: Any) -> Any:
    """Convert decoded ABI values into JSON-friendly Python values."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return to_hex(value)
    if isinstance(value, str):
        if value.startswith("0x") and len(value) == 42:
            return value.lower()
        return value
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class LogDecoder:
    """Decodes logs emitted by the indexed contracts on one chain."""

    def __init__(
        self,
        chain_id: int,
        *,
        codec: Any | None = None,
        events: Iterable[dict[str, Any]] = ALL_EVENTS,
    ) -> None:
        self.chain_id = chain_id
        self._codec = codec if codec is not None else Web3().codec
        self._by_topic: dict[str, dict[str, Any]] = {event_topic(abi): abi for abi in events}

    @property
    def topics(self) -> list[str]:
        return list(self._by_topic)

    def event_name(self, log: dict[str, Any]) -> str | None:
        topics = log.get("topics") or []
        if not topics:
            return None
        abi = self._by_topic.get(to_hex(topics[0]))
        return abi["name"] if abi else None

    def decode(
        self,
        log: dict[str, Any],
        *,
        block_timestamp: int,
        gas_price: int | None = None,
    ) -> RawEvent | None:
        """Decode one log.

        Args:
            log: Log entry as returned by ``eth_getLogs``.
            block_timestamp: Timestamp of the log's block (unix seconds).
            gas_price: Effective gas price of the emitting transaction, if known.

        Returns:
            The raw event, or None if the log is not one of the indexed events.

        Raises:
            EventDecodeError: If the log matches a known topic but cannot be decoded.
        """
        topics = log.get("topics") or []
        if not topics:
            return None
        abi = self._by_topic.get(to_hex(topics[0]))
        if abi is None:
            logger.debug("Skipping log with unknown topic %s", to_hex(topics[0]))
            return None

        entry = {
            "topics": [_to_bytes(t) for t in topics],
            "data": _to_bytes(log.get("data") or b""),
            "logIndex": int(log["logIndex"]),
            "transactionIndex": int(log.get("transactionIndex") or 0),
            "transactionHash": log["transactionHash"],
            "address": log.get("address"),
            "blockHash": log.get("blockHash") or b"",
            "blockNumber": int(log["blockNumber"]),
        }
        try:
            decoded = get_event_data(self._codec, abi, entry)
        except (Web3Exception, DecodingError, ValueError, TypeError) as e:
            raise EventDecodeError(
                f"Cannot decode {abi['name']} at {to_hex(log['transactionHash'])}:{log['logIndex']}: {e}"
            ) from e

        address = log.get("address")
        return RawEvent(
            chain_id=self.chain_id,
            event_name=abi["name"],
            block_number=int(log["blockNumber"]),
            transaction_hash=to_hex(log["transactionHash"]),
            log_index=int(log["logIndex"]),
            data={name: _plain(value) for name, value in dict(decoded["args"]).items()},
            block_timestamp=block_timestamp,
            contract_address=str(address).lower() if address else None,
            gas_price=gas_price,
        )
