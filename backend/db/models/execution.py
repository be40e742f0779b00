"""Executed trade log model definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    desc,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Amount, Base, UtcDateTime
from backend.db.enums import trade_side_enum

logger = logging.getLogger(__name__)


class Trade(Base):
    """Append-only log of executed simulated trades."""

    __tablename__ = "trade"
    __table_args__ = (
        PrimaryKeyConstraint("trade_id", name="pk_trade"),
        CheckConstraint("shares > 0", name="ck_trade_shares_pos"),
        CheckConstraint("price > 0", name="ck_trade_price_pos"),
        CheckConstraint("notional > 0", name="ck_trade_notional_pos"),
        CheckConstraint(
            "instrument = upper(instrument)",
            name="ck_trade_instrument_upper",
        ),
        Index(
            "idx_trade_investor_instrument_ts_desc",
            "investor_id",
            "instrument",
            desc("executed_at_utc"),
        ),
        Index("idx_trade_executed_at_desc", desc("executed_at_utc")),
    )

    trade_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        Identity(always=False),
        primary_key=True,
    )
    investor_id: Mapped[str] = mapped_column(Text, nullable=False)
    instrument: Mapped[str] = mapped_column(Text, nullable=False)
    side: Mapped[str] = mapped_column(trade_side_enum, nullable=False)
    shares: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    price: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    notional: Mapped[Decimal] = mapped_column(Amount(), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    executed_at_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
