"""SQLAlchemy declarative base and shared column types for the ledger schema."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, MetaData, Numeric
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

metadata = MetaData()

# Money, prices and share quantities share one precision across the schema.
AMOUNT_PRECISION = 38
AMOUNT_SCALE = 8


def Amount() -> Numeric:
    """Numeric column type for cash, prices and share quantities."""
    return Numeric(AMOUNT_PRECISION, AMOUNT_SCALE, asdecimal=True)


class UtcDateTime(TypeDecorator):
    """Timezone-aware timestamp that is always stored and returned in UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime values are not accepted; pass a timezone-aware value.")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""

    metadata = metadata
