"""Portfolio, position and equity snapshot model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    desc,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Amount, Base, UtcDateTime

logger = logging.getLogger(__name__)


class Portfolio(Base):
    """Per-investor cash balance and settled equity."""

    __tablename__ = "portfolio"
    __table_args__ = (
        PrimaryKeyConstraint("investor_id", name="pk_portfolio"),
        CheckConstraint(
            "length(trim(investor_id)) > 0",
            name="ck_portfolio_investor_id_not_blank",
        ),
        CheckConstraint("cash_balance >= 0", name="ck_portfolio_cash_nonneg"),
        CheckConstraint("total_equity >= 0", name="ck_portfolio_equity_nonneg"),
        CheckConstraint("initial_capital > 0", name="ck_portfolio_initial_capital_pos"),
        CheckConstraint(
            "peak_equity >= total_equity",
            name="ck_portfolio_peak_ge_equity",
        ),
    )

    investor_id: Mapped[str] = mapped_column(Text, nullable=False)
    cash_balance: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    total_equity: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    initial_capital: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    peak_equity: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    created_at_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    updated_at_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)


class Position(Base):
    """Open holding for one investor and instrument; absent while flat."""

    __tablename__ = "position"
    __table_args__ = (
        PrimaryKeyConstraint("investor_id", "instrument", name="pk_position"),
        CheckConstraint("shares > 0", name="ck_position_shares_pos"),
        CheckConstraint("avg_price >= 0", name="ck_position_avg_price_nonneg"),
        CheckConstraint("last_trade_price > 0", name="ck_position_last_trade_price_pos"),
        CheckConstraint("last_buy_price >= 0", name="ck_position_last_buy_price_nonneg"),
        CheckConstraint(
            "instrument = upper(instrument)",
            name="ck_position_instrument_upper",
        ),
    )

    investor_id: Mapped[str] = mapped_column(Text, nullable=False)
    instrument: Mapped[str] = mapped_column(Text, nullable=False)
    shares: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    avg_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    last_trade_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    last_buy_price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    updated_at_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)


class EquitySnapshot(Base):
    """Settled equity per investor, one row per settlement or per trading day."""

    __tablename__ = "equity_snapshot"
    __table_args__ = (
        PrimaryKeyConstraint("snapshot_id", name="pk_equity_snapshot"),
        UniqueConstraint(
            "investor_id",
            "snapshot_day",
            name="uq_equity_snapshot_investor_day",
        ),
        CheckConstraint("total_equity >= 0", name="ck_equity_snapshot_equity_nonneg"),
        CheckConstraint("cash_balance >= 0", name="ck_equity_snapshot_cash_nonneg"),
        CheckConstraint("market_value >= 0", name="ck_equity_snapshot_market_nonneg"),
        CheckConstraint(
            "peak_equity >= total_equity",
            name="ck_equity_snapshot_peak_ge_equity",
        ),
        CheckConstraint(
            "drawdown_pct >= 0 AND drawdown_pct <= 1",
            name="ck_equity_snapshot_drawdown_range",
        ),
        Index(
            "idx_equity_snapshot_investor_ts_desc",
            "investor_id",
            desc("snapshot_ts_utc"),
        ),
    )

    snapshot_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        Identity(always=False),
        primary_key=True,
    )
    investor_id: Mapped[str] = mapped_column(Text, nullable=False)
    total_equity: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    cash_balance: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    market_value: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    peak_equity: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    drawdown_pct: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    snapshot_ts_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    snapshot_day: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
