"""Market quote cache and daily candle model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import CheckConstraint, Date, Index, PrimaryKeyConstraint, Text, desc
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Amount, Base, UtcDateTime

logger = logging.getLogger(__name__)


class MarketQuote(Base):
    """Latest parsed quote per instrument, written by the external quote feeder."""

    __tablename__ = "market_quote"
    __table_args__ = (
        PrimaryKeyConstraint("instrument", name="pk_market_quote"),
        CheckConstraint("price > 0", name="ck_market_quote_price_pos"),
        CheckConstraint(
            "open_price IS NULL OR open_price > 0",
            name="ck_market_quote_open_price_pos",
        ),
        CheckConstraint(
            "instrument = upper(instrument)",
            name="ck_market_quote_instrument_upper",
        ),
    )

    instrument: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    change_pct: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    open_price: Mapped[Optional[Decimal]] = mapped_column(Amount(), nullable=True)
    quote_ts_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)


class MarketCandle(Base):
    """Daily OHLC bars, written by the external historical backfill job."""

    __tablename__ = "market_candle"
    __table_args__ = (
        PrimaryKeyConstraint("instrument", "bar_date", name="pk_market_candle"),
        CheckConstraint(
            "open_price > 0 AND high_price > 0 AND low_price > 0 AND close_price > 0",
            name="ck_market_candle_prices_pos",
        ),
        CheckConstraint(
            "high_price >= low_price",
            name="ck_market_candle_high_ge_low",
        ),
        Index(
            "idx_market_candle_instrument_date_desc",
            "instrument",
            desc("bar_date"),
        ),
    )

    instrument: Mapped[str] = mapped_column(Text, nullable=False)
    bar_date: Mapped[date] = mapped_column(Date, nullable=False)
    open_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    high_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    low_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    close_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
