"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.execution import Trade
from backend.db.models.market_data import MarketCandle, MarketQuote
from backend.db.models.portfolio import EquitySnapshot, Portfolio, Position
from backend.db.models.risk import EngineEvent

logger = logging.getLogger(__name__)

__all__ = [
    "EngineEvent",
    "EquitySnapshot",
    "MarketCandle",
    "MarketQuote",
    "Portfolio",
    "Position",
    "Trade",
]
