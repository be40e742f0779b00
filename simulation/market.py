"""Quote and daily-candle inputs consumed by the simulation cycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import logging
from decimal import Decimal
from typing import Callable, Mapping, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from backend.db.models import MarketCandle, MarketQuote
from simulation.common import SimulationClock
from simulation.numeric import to_decimal

logger = logging.getLogger(__name__)


class QuoteUnavailableError(RuntimeError):
    """Quote source could not be reached for an instrument this cycle."""


@dataclass(frozen=True)
class Quote:
    """Point-in-time price snapshot; ``change_pct`` is in percent points vs prior close."""

    instrument: str
    price: Decimal
    change_pct: Decimal
    open_price: Optional[Decimal] = None
    quote_ts_utc: Optional[datetime] = None


@dataclass(frozen=True)
class Candle:
    """Normalized daily OHLC bar."""

    instrument: str
    bar_date: date
    open_price: Decimal
    high_price: Decimal
    low_price: Decimal
    close_price: Decimal


@dataclass(frozen=True)
class PriceRange:
    """Rolling high/low window used by breakout-style personas."""

    high: Decimal
    low: Decimal
    periods: int


class QuoteProvider(Protocol):
    """Source of current quotes; ``None`` means no quote this cycle."""

    def fetch_quote(self, instrument: str) -> Optional[Quote]:
        """Fetch the current quote for one instrument."""


class CandleSource(Protocol):
    """Source of historical daily bars."""

    def load_candles(self, instrument: str, before: date, limit: int) -> Sequence[Candle]:
        """Load up to ``limit`` most recent bars dated strictly before ``before``."""


def compute_price_range(candles: Sequence[Candle], periods: int) -> Optional[PriceRange]:
    """Derive the high/low across the most recent ``periods`` bars."""
    if periods <= 0:
        raise ValueError("periods must be > 0")
    window = sorted(candles, key=lambda candle: candle.bar_date)[-periods:]
    if not window:
        return None
    return PriceRange(
        high=max(candle.high_price for candle in window),
        low=min(candle.low_price for candle in window),
        periods=len(window),
    )


class StaticQuoteProvider:
    """Serves quotes from an in-memory mapping; missing instruments yield ``None``."""

    def __init__(self, quotes: Mapping[str, Quote] | None = None) -> None:
        self._quotes: dict[str, Quote] = {}
        for quote in (quotes or {}).values():
            self.set_quote(quote)

    def set_quote(self, quote: Quote) -> None:
        self._quotes[quote.instrument.upper()] = quote

    def remove_quote(self, instrument: str) -> None:
        self._quotes.pop(instrument.upper(), None)

    def fetch_quote(self, instrument: str) -> Optional[Quote]:
        return self._quotes.get(instrument.upper())


class DatabaseQuoteProvider:
    """Reads the ``market_quote`` cache written by the external quote feeder."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_age_seconds: int,
        clock: SimulationClock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_age = timedelta(seconds=max_age_seconds)
        self._clock = clock or SimulationClock()

    def fetch_quote(self, instrument: str) -> Optional[Quote]:
        symbol = instrument.upper()
        try:
            with self._session_factory() as session:
                row = session.get(MarketQuote, symbol)
        except (OperationalError, PoolTimeoutError, TimeoutError) as exc:
            raise QuoteUnavailableError(f"quote store unreachable for {symbol}") from exc

        if row is None:
            return None
        age = self._clock.now_utc() - row.quote_ts_utc
        if age > self._max_age:
            logger.debug("Discarding stale quote instrument=%s age_seconds=%.0f", symbol, age.total_seconds())
            return None
        return Quote(
            instrument=symbol,
            price=to_decimal(row.price),
            change_pct=to_decimal(row.change_pct),
            open_price=None if row.open_price is None else to_decimal(row.open_price),
            quote_ts_utc=row.quote_ts_utc,
        )

    def store_quote(self, quote: Quote) -> None:
        """Upsert a parsed quote into the cache (used by feeders and replays)."""
        if quote.quote_ts_utc is None:
            raise ValueError("quote_ts_utc is required to cache a quote")
        with self._session_factory() as session, session.begin():
            row = session.get(MarketQuote, quote.instrument.upper())
            if row is None:
                row = MarketQuote(instrument=quote.instrument.upper())
                session.add(row)
            row.price = to_decimal(quote.price)
            row.change_pct = to_decimal(quote.change_pct)
            row.open_price = None if quote.open_price is None else to_decimal(quote.open_price)
            row.quote_ts_utc = quote.quote_ts_utc


class DatabaseCandleSource:
    """Reads daily bars from ``market_candle``, written by the historical backfill job."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def load_candles(self, instrument: str, before: date, limit: int) -> Sequence[Candle]:
        symbol = instrument.upper()
        stmt = (
            select(MarketCandle)
            .where(MarketCandle.instrument == symbol, MarketCandle.bar_date < before)
            .order_by(MarketCandle.bar_date.desc())
            .limit(limit)
        )
        try:
            with self._session_factory() as session:
                rows = session.scalars(stmt).all()
        except SQLAlchemyError:
            logger.exception("Candle load failed instrument=%s", symbol)
            raise
        return [
            Candle(
                instrument=row.instrument,
                bar_date=row.bar_date,
                open_price=to_decimal(row.open_price),
                high_price=to_decimal(row.high_price),
                low_price=to_decimal(row.low_price),
                close_price=to_decimal(row.close_price),
            )
            for row in reversed(rows)
        ]
