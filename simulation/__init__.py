"""Persona trading simulation engine package."""

from simulation.config import Catalog, InvestorSpec, SimulationConfig, load_catalog, load_simulation_config
from simulation.executor import ExecutionOutcome, ExecutionStatus, TradeExecutor, TradeResult
from simulation.ledger import (
    CashDirection,
    EquitySnapshotRecord,
    InsufficientCashError,
    InvariantViolationError,
    LedgerError,
    LedgerStore,
    LedgerTransaction,
    LedgerUnavailableError,
    PortfolioState,
    PositionState,
    TradeRecord,
)
from simulation.market import (
    Candle,
    DatabaseCandleSource,
    DatabaseQuoteProvider,
    PriceRange,
    Quote,
    StaticQuoteProvider,
    compute_price_range,
)
from simulation.orchestrator import CycleOrchestrator, CycleReport, build_investor_strategies
from simulation.settlement import Settlement
from simulation.strategies import (
    STRATEGY_REGISTRY,
    DecisionAction,
    PositionView,
    StrategyState,
    TradeDecision,
    build_strategy,
    register_strategy,
)

__all__ = [
    "STRATEGY_REGISTRY",
    "Candle",
    "CashDirection",
    "Catalog",
    "CycleOrchestrator",
    "CycleReport",
    "DatabaseCandleSource",
    "DatabaseQuoteProvider",
    "DecisionAction",
    "EquitySnapshotRecord",
    "ExecutionOutcome",
    "ExecutionStatus",
    "InsufficientCashError",
    "InvariantViolationError",
    "InvestorSpec",
    "LedgerError",
    "LedgerStore",
    "LedgerTransaction",
    "LedgerUnavailableError",
    "PortfolioState",
    "PositionState",
    "PositionView",
    "PriceRange",
    "Quote",
    "Settlement",
    "SimulationConfig",
    "StaticQuoteProvider",
    "StrategyState",
    "TradeDecision",
    "TradeExecutor",
    "TradeRecord",
    "TradeResult",
    "build_investor_strategies",
    "build_strategy",
    "compute_price_range",
    "load_catalog",
    "load_simulation_config",
    "register_strategy",
]
