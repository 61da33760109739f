"""Event ABIs for the StrategyRegistry and RebalanceExecutor contracts."""

from __future__ import annotations

from typing import Any


def _input(name: str, type_: str, *, indexed: bool = False) -> dict[str, Any]:
    return {"name": name, "type": type_, "indexed": indexed}


def _event(name: str, *inputs: dict[str, Any]) -> dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


_USER = _input("user", "address", indexed=True)
_STRATEGY_ID = _input("strategyId", "uint256", indexed=True)

STRATEGY_REGISTRY_EVENTS: list[dict[str, Any]] = [
    _event(
        "StrategyCreated",
        _USER,
        _STRATEGY_ID,
        _input("name", "string"),
        _input("tokens", "address[]"),
        _input("weights", "uint256[]"),
    ),
    _event(
        "StrategyUpdated",
        _USER,
        _STRATEGY_ID,
        _input("tokens", "address[]"),
        _input("weights", "uint256[]"),
    ),
    _event("StrategyPaused", _USER, _STRATEGY_ID),
    _event("StrategyResumed", _USER, _STRATEGY_ID),
    _event("StrategyDeleted", _USER, _STRATEGY_ID),
    _event("LastRebalanceTimeUpdated", _USER, _STRATEGY_ID, _input("timestamp", "uint256")),
    _event(
        "RebalanceExecutorUpdated",
        _input("oldExecutor", "address", indexed=True),
        _input("newExecutor", "address", indexed=True),
    ),
]

REBALANCE_EXECUTOR_EVENTS: list[dict[str, Any]] = [
    _event(
        "RebalanceExecuted",
        _USER,
        _STRATEGY_ID,
        _input("timestamp", "uint256"),
        _input("drift", "uint256"),
        _input("gasReimbursed", "uint256"),
    ),
    _event("RebalanceFailed", _USER, _STRATEGY_ID, _input("reason", "string")),
    _event(
        "SwapExecuted",
        _USER,
        _input("tokenIn", "address"),
        _input("tokenOut", "address"),
        _input("amountIn", "uint256"),
        _input("amountOut", "uint256"),
    ),
    _event("DEXApprovalUpdated", _input("dex", "address", indexed=True), _input("approved", "bool")),
    _event("EmergencyPaused", _input("caller", "address", indexed=True)),
    _event("EmergencyUnpaused", _input("caller", "address", indexed=True)),
]

ALL_EVENTS: list[dict[str, Any]] = STRATEGY_REGISTRY_EVENTS + REBALANCE_EXECUTOR_EVENTS


def event_signature(abi: dict[str, Any]) -> str:
    """Canonical signature, e.g. ``StrategyPaused(address,uint256)``."""
    return f"{abi['name']}({','.join(i['type'] for i in abi['inputs'])})"
