"""Storage layer - Database schemas and repositories."""

from rebalance_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
)
from rebalance_indexer.storage.models import (
    Base,
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
from rebalance_indexer.storage.repos import (
    DailyStatsDTO,
    DailyStatsRepository,
    DeadLetterDTO,
    DeadLetterRepository,
    RebalanceDTO,
    RebalanceRepository,
    ScanProgressDTO,
    ScanProgressRepository,
    StrategyDTO,
    StrategyKey,
    StrategyRepository,
    SwapDTO,
    SwapRepository,
    SystemEventDTO,
    SystemEventRepository,
    UserDTO,
    UserRepository,
)

__all__ = [
    "Base",
    "DailyParticipantModel",
    "DailyStatsDTO",
    "DailyStatsModel",
    "DailyStatsRepository",
    "DatabaseManager",
    "DeadLetterDTO",
    "DeadLetterModel",
    "DeadLetterRepository",
    "RebalanceDTO",
    "RebalanceModel",
    "RebalanceRepository",
    "ScanProgressDTO",
    "ScanProgressModel",
    "ScanProgressRepository",
    "StrategyDTO",
    "StrategyKey",
    "StrategyModel",
    "StrategyRepository",
    "SwapDTO",
    "SwapModel",
    "SwapRepository",
    "SystemEventDTO",
    "SystemEventModel",
    "SystemEventRepository",
    "UserDTO",
    "UserModel",
    "UserRepository",
    "create_async_db_engine",
]
