"""Data models for the ingestor module.

``RawEvent`` is the chain-agnostic representation both ingestion paths
(backfill and live) hand to the queue. ``decode_event`` turns it into one
of the typed event variants the reducer dispatches on.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from rebalance_indexer.errors import EventDecodeError
from rebalance_indexer.storage.repos import StrategyKey

DEFAULT_REBALANCE_INTERVAL_SECONDS = 3600


@dataclass(frozen=True)
class RawEvent:
    """A decoded contract log plus the chain context it was observed in."""

    chain_id: int
    event_name: str
    block_number: int
    transaction_hash: str
    log_index: int
    data: dict[str, Any]
    block_timestamp: int
    contract_address: str | None = None
    gas_price: int | None = None

    @property
    def event_id(self) -> str:
        return f"{self.chain_id}:{self.transaction_hash}:{self.log_index}"

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form used on the queue."""
        return {
            "chain_id": self.chain_id,
            "event_name": self.event_name,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "data": self.data,
            "block_timestamp": self.block_timestamp,
            "contract_address": self.contract_address,
            "gas_price": self.gas_price,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawEvent":
        """Create a RawEvent from its ``to_dict`` form."""
        gas_price = data.get("gas_price")
        return cls(
            chain_id=int(data["chain_id"]),
            event_name=str(data["event_name"]),
            block_number=int(data["block_number"]),
            transaction_hash=str(data["transaction_hash"]).lower(),
            log_index=int(data["log_index"]),
            data=dict(data.get("data") or {}),
            block_timestamp=int(data["block_timestamp"]),
            contract_address=data.get("contract_address"),
            gas_price=int(gas_price) if gas_price is not None else None,
        )


# ============================================================================
# Typed event variants
# ============================================================================


@dataclass(frozen=True)
class ChainEvent:
    """Position of an event on its chain; shared by every variant."""

    chain_id: int
    block_number: int
    block_timestamp: int
    tx_hash: str
    log_index: int

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class StrategyEvent(ChainEvent):
    user: str
    strategy_id: int

    @property
    def key(self) -> StrategyKey:
        return StrategyKey(self.chain_id, self.user, self.strategy_id)


@dataclass(frozen=True)
class StrategyCreated(StrategyEvent):
    name: str
    tokens: tuple[str, ...]
    weights: tuple[int, ...]
    rebalance_interval: int = DEFAULT_REBALANCE_INTERVAL_SECONDS


@dataclass(frozen=True)
class StrategyUpdated(StrategyEvent):
    tokens: tuple[str, ...]
    weights: tuple[int, ...]
    rebalance_interval: int | None = None


@dataclass(frozen=True)
class StrategyPaused(StrategyEvent):
    pass


@dataclass(frozen=True)
class StrategyResumed(StrategyEvent):
    pass


@dataclass(frozen=True)
class StrategyDeleted(StrategyEvent):
    pass


@dataclass(frozen=True)
class LastRebalanceTimeUpdated(StrategyEvent):
    timestamp: int


@dataclass(frozen=True)
class RebalanceExecuted(StrategyEvent):
    timestamp: int
    drift_bps: int
    gas_reimbursed_wei: int
    gas_price_wei: int | None = None

    @property
    def drift_percentage(self) -> Decimal:
        return Decimal(self.drift_bps) / 100


@dataclass(frozen=True)
class RebalanceFailed(StrategyEvent):
    reason: str


@dataclass(frozen=True)
class SwapExecuted(ChainEvent):
    user: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    swap_index: int = 0
    price_impact: Decimal | None = field(default=None)


@dataclass(frozen=True)
class DexApprovalUpdated(ChainEvent):
    dex: str
    approved: bool


@dataclass(frozen=True)
class EmergencyPaused(ChainEvent):
    caller: str


@dataclass(frozen=True)
class EmergencyUnpaused(ChainEvent):
    caller: str


@dataclass(frozen=True)
class ExecutorUpdated(ChainEvent):
    old_executor: str
    new_executor: str


# ============================================================================
# Decoding
# ============================================================================


def _require(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    raise EventDecodeError(f"Missing field {names[0]!r}")


def _uint(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise EventDecodeError(f"Field {name!r} must be an integer, got bool")
    try:
        if isinstance(value, str):
            result = int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        else:
            result = int(value)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"Field {name!r} is not an integer: {value!r}") from e
    if result < 0:
        raise EventDecodeError(f"Field {name!r} must be non-negative: {value!r}")
    return result


def _address(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        raise EventDecodeError(f"Field {name!r} is not an address: {value!r}")
    try:
        int(value[2:], 16)
    except ValueError as e:
        raise EventDecodeError(f"Field {name!r} is not an address: {value!r}") from e
    return value.lower()


def _addresses(value: Any, name: str) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise EventDecodeError(f"Field {name!r} must be a list")
    return tuple(_address(v, name) for v in value)


def _uints(value: Any, name: str) -> tuple[int, ...]:
    if not isinstance(value, (list, tuple)):
        raise EventDecodeError(f"Field {name!r} must be a list")
    return tuple(_uint(v, name) for v in value)


def _decimal(value: Any, name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise EventDecodeError(f"Field {name!r} is not numeric: {value!r}") from e


def _base(raw: RawEvent) -> dict[str, Any]:
    return {
        "chain_id": raw.chain_id,
        "block_number": raw.block_number,
        "block_timestamp": raw.block_timestamp,
        "tx_hash": raw.transaction_hash.lower(),
        "log_index": raw.log_index,
    }


def _strategy_base(raw: RawEvent) -> dict[str, Any]:
    d = raw.data
    return {
        **_base(raw),
        "user": _address(_require(d, "user"), "user"),
        "strategy_id": _uint(_require(d, "strategyId"), "strategyId"),
    }


def _strategy_created(raw: RawEvent) -> ChainEvent:
    d = raw.data
    interval = d.get("rebalanceInterval")
    return StrategyCreated(
        **_strategy_base(raw),
        name=str(d.get("name") or ""),
        tokens=_addresses(_require(d, "tokens"), "tokens"),
        weights=_uints(_require(d, "weights"), "weights"),
        rebalance_interval=(
            DEFAULT_REBALANCE_INTERVAL_SECONDS
            if interval is None
            else _uint(interval, "rebalanceInterval")
        ),
    )


def _strategy_updated(raw: RawEvent) -> ChainEvent:
    d = raw.data
    interval = d.get("rebalanceInterval")
    return StrategyUpdated(
        **_strategy_base(raw),
        tokens=_addresses(_require(d, "tokens"), "tokens"),
        weights=_uints(_require(d, "weights"), "weights"),
        rebalance_interval=_uint(interval, "rebalanceInterval") if interval is not None else None,
    )


def _last_rebalance_time(raw: RawEvent) -> ChainEvent:
    return LastRebalanceTimeUpdated(
        **_strategy_base(raw),
        timestamp=_uint(_require(raw.data, "timestamp"), "timestamp"),
    )


def _rebalance_executed(raw: RawEvent) -> ChainEvent:
    d = raw.data
    return RebalanceExecuted(
        **_strategy_base(raw),
        timestamp=_uint(d.get("timestamp", raw.block_timestamp), "timestamp"),
        drift_bps=_uint(_require(d, "drift"), "drift"),
        gas_reimbursed_wei=_uint(_require(d, "gasReimbursed", "gasUsed"), "gasReimbursed"),
        gas_price_wei=raw.gas_price,
    )


def _rebalance_failed(raw: RawEvent) -> ChainEvent:
    return RebalanceFailed(**_strategy_base(raw), reason=str(raw.data.get("reason") or ""))


def _swap_executed(raw: RawEvent) -> ChainEvent:
    d = raw.data
    return SwapExecuted(
        **_base(raw),
        user=_address(_require(d, "user"), "user"),
        token_in=_address(_require(d, "tokenIn"), "tokenIn"),
        token_out=_address(_require(d, "tokenOut"), "tokenOut"),
        amount_in=_uint(_require(d, "amountIn"), "amountIn"),
        amount_out=_uint(_require(d, "amountOut"), "amountOut"),
        swap_index=_uint(d.get("swapIndex", 0), "swapIndex"),
        price_impact=_decimal(d.get("priceImpact"), "priceImpact"),
    )


def _dex_approval(raw: RawEvent) -> ChainEvent:
    approved = _require(raw.data, "approved")
    if not isinstance(approved, bool):
        raise EventDecodeError(f"Field 'approved' must be a bool: {approved!r}")
    return DexApprovalUpdated(**_base(raw), dex=_address(_require(raw.data, "dex"), "dex"), approved=approved)


def _executor_updated(raw: RawEvent) -> ChainEvent:
    d = raw.data
    return ExecutorUpdated(
        **_base(raw),
        old_executor=_address(_require(d, "oldExecutor"), "oldExecutor"),
        new_executor=_address(_require(d, "newExecutor"), "newExecutor"),
    )


_DECODERS: dict[str, Callable[[RawEvent], ChainEvent]] = {
    "StrategyCreated": _strategy_created,
    "StrategyUpdated": _strategy_updated,
    "StrategyPaused": lambda raw: StrategyPaused(**_strategy_base(raw)),
    "StrategyResumed": lambda raw: StrategyResumed(**_strategy_base(raw)),
    "StrategyDeleted": lambda raw: StrategyDeleted(**_strategy_base(raw)),
    "LastRebalanceTimeUpdated": _last_rebalance_time,
    "RebalanceExecuted": _rebalance_executed,
    "RebalanceFailed": _rebalance_failed,
    "SwapExecuted": _swap_executed,
    "DEXApprovalUpdated": _dex_approval,
    "EmergencyPaused": lambda raw: EmergencyPaused(
        **_base(raw), caller=_address(_require(raw.data, "caller"), "caller")
    ),
    "EmergencyUnpaused": lambda raw: EmergencyUnpaused(
        **_base(raw), caller=_address(_require(raw.data, "caller"), "caller")
    ),
    "RebalanceExecutorUpdated": _executor_updated,
}

KNOWN_EVENTS = frozenset(_DECODERS)


def decode_event(raw: RawEvent) -> ChainEvent | None:
    """Decode a raw event into its typed variant.

    Returns:
        The typed event, or None for event names the indexer does not handle.

    Raises:
        EventDecodeError: If the payload is malformed for a known event.
    """
    decoder = _DECODERS.get(raw.event_name)
    if decoder is None:
        return None
    return decoder(raw)
