"""Enum contracts for the ledger schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy import Enum as SAEnum

logger = logging.getLogger(__name__)


class TradeSide(str, enum.Enum):
    """Trade side."""

    BUY = "BUY"
    SELL = "SELL"


class EventSeverity(str, enum.Enum):
    """Engine event severity."""

    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


trade_side_enum = SAEnum(TradeSide, name="trade_side_enum")
event_severity_enum = SAEnum(EventSeverity, name="event_severity_enum")
