"""Transactional ledger store for portfolios, positions, trades and equity snapshots."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import enum
import logging
from typing import Callable, Iterator, Optional

from sqlalchemy import exists, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from backend.db.enums import EventSeverity, TradeSide
from backend.db.models import EngineEvent, EquitySnapshot, Portfolio, Position, Trade
from simulation.numeric import POSITION_EPSILON, ZERO, normalize_decimal, to_decimal

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for ledger store failures."""


class InsufficientCashError(LedgerError):
    """A debit would drive the cash balance negative; nothing was written."""

    def __init__(self, investor_id: str, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"insufficient cash for investor={investor_id}: requested={requested} available={available}"
        )
        self.investor_id = investor_id
        self.requested = requested
        self.available = available


class InvariantViolationError(LedgerError):
    """A write would break a ledger invariant; the unit of work is rolled back."""


class LedgerUnavailableError(LedgerError):
    """Transient store failure (timeout, lost connection); the unit may be retried."""


class CashDirection(str, enum.Enum):
    """Direction of a cash movement."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


@dataclass(frozen=True)
class PortfolioState:
    """Read-only view of an investor portfolio."""

    investor_id: str
    cash_balance: Decimal
    total_equity: Decimal
    initial_capital: Decimal
    peak_equity: Decimal
    created_at_utc: datetime
    updated_at_utc: datetime

    @property
    def drawdown_pct(self) -> Decimal:
        if self.peak_equity <= 0:
            return ZERO
        return normalize_decimal((self.peak_equity - self.total_equity) / self.peak_equity)


@dataclass(frozen=True)
class PositionState:
    """Read-only view of an open position."""

    investor_id: str
    instrument: str
    shares: Decimal
    avg_price: Decimal
    last_trade_price: Decimal
    last_buy_price: Decimal
    updated_at_utc: datetime

    @property
    def cost_basis(self) -> Decimal:
        return normalize_decimal(self.shares * self.avg_price)

    def market_value(self, price: Decimal) -> Decimal:
        return normalize_decimal(self.shares * price)


@dataclass(frozen=True)
class TradeRecord:
    """Persisted trade log row."""

    trade_id: int
    investor_id: str
    instrument: str
    side: TradeSide
    shares: Decimal
    price: Decimal
    notional: Decimal
    reason: str
    executed_at_utc: datetime


@dataclass(frozen=True)
class EquitySnapshotRecord:
    """Persisted settlement snapshot."""

    snapshot_id: int
    investor_id: str
    total_equity: Decimal
    cash_balance: Decimal
    market_value: Decimal
    peak_equity: Decimal
    drawdown_pct: Decimal
    snapshot_ts_utc: datetime
    snapshot_day: Optional[date]


def _portfolio_state(row: Portfolio) -> PortfolioState:
    return PortfolioState(
        investor_id=row.investor_id,
        cash_balance=to_decimal(row.cash_balance),
        total_equity=to_decimal(row.total_equity),
        initial_capital=to_decimal(row.initial_capital),
        peak_equity=to_decimal(row.peak_equity),
        created_at_utc=row.created_at_utc,
        updated_at_utc=row.updated_at_utc,
    )


def _position_state(row: Position) -> PositionState:
    return PositionState(
        investor_id=row.investor_id,
        instrument=row.instrument,
        shares=to_decimal(row.shares),
        avg_price=to_decimal(row.avg_price),
        last_trade_price=to_decimal(row.last_trade_price),
        last_buy_price=to_decimal(row.last_buy_price),
        updated_at_utc=row.updated_at_utc,
    )


def _trade_record(row: Trade) -> TradeRecord:
    return TradeRecord(
        trade_id=int(row.trade_id),
        investor_id=row.investor_id,
        instrument=row.instrument,
        side=TradeSide(row.side),
        shares=to_decimal(row.shares),
        price=to_decimal(row.price),
        notional=to_decimal(row.notional),
        reason=row.reason,
        executed_at_utc=row.executed_at_utc,
    )


def _snapshot_record(row: EquitySnapshot) -> EquitySnapshotRecord:
    return EquitySnapshotRecord(
        snapshot_id=int(row.snapshot_id),
        investor_id=row.investor_id,
        total_equity=to_decimal(row.total_equity),
        cash_balance=to_decimal(row.cash_balance),
        market_value=to_decimal(row.market_value),
        peak_equity=to_decimal(row.peak_equity),
        drawdown_pct=to_decimal(row.drawdown_pct),
        snapshot_ts_utc=row.snapshot_ts_utc,
        snapshot_day=row.snapshot_day,
    )


class LedgerTransaction:
    """One unit of work against the ledger; rows written here commit or roll back together."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def _locked_portfolio(self, investor_id: str) -> Optional[Portfolio]:
        stmt = select(Portfolio).where(Portfolio.investor_id == investor_id).with_for_update()
        return self._session.scalars(stmt).one_or_none()

    def _locked_position(self, investor_id: str, instrument: str) -> Optional[Position]:
        stmt = (
            select(Position)
            .where(Position.investor_id == investor_id, Position.instrument == instrument.upper())
            .with_for_update()
        )
        return self._session.scalars(stmt).one_or_none()

    def get_portfolio(self, investor_id: str, *, for_update: bool = False) -> Optional[PortfolioState]:
        if for_update:
            row = self._locked_portfolio(investor_id)
        else:
            row = self._session.get(Portfolio, investor_id)
        return None if row is None else _portfolio_state(row)

    def list_portfolios(self) -> tuple[PortfolioState, ...]:
        rows = self._session.scalars(select(Portfolio).order_by(Portfolio.investor_id)).all()
        return tuple(_portfolio_state(row) for row in rows)

    def ensure_portfolio(self, investor_id: str, initial_capital: Decimal, now: datetime) -> PortfolioState:
        """Return the portfolio, seeding it with ``initial_capital`` on first sight."""
        row = self._locked_portfolio(investor_id)
        if row is not None:
            return _portfolio_state(row)
        capital = normalize_decimal(initial_capital)
        if capital <= 0:
            raise InvariantViolationError(f"initial capital must be > 0 for investor={investor_id}")
        row = Portfolio(
            investor_id=investor_id,
            cash_balance=capital,
            total_equity=capital,
            initial_capital=capital,
            peak_equity=capital,
            created_at_utc=now,
            updated_at_utc=now,
        )
        self._session.add(row)
        self._session.flush()
        logger.info("Created portfolio investor=%s initial_capital=%s", investor_id, capital)
        return _portfolio_state(row)

    def upsert_portfolio(
        self,
        investor_id: str,
        *,
        cash_balance: Decimal,
        total_equity: Decimal,
        peak_equity: Decimal,
        now: datetime,
        initial_capital: Optional[Decimal] = None,
    ) -> PortfolioState:
        cash = normalize_decimal(cash_balance)
        equity = normalize_decimal(total_equity)
        peak = normalize_decimal(peak_equity)
        if cash < 0:
            raise InvariantViolationError(f"cash_balance would be negative for investor={investor_id}: {cash}")
        if equity < 0:
            raise InvariantViolationError(f"total_equity would be negative for investor={investor_id}: {equity}")
        if peak < equity:
            raise InvariantViolationError(
                f"peak_equity {peak} below total_equity {equity} for investor={investor_id}"
            )

        row = self._locked_portfolio(investor_id)
        if row is None:
            if initial_capital is None:
                raise InvariantViolationError(f"initial_capital required to create portfolio {investor_id}")
            row = Portfolio(
                investor_id=investor_id,
                initial_capital=normalize_decimal(initial_capital),
                created_at_utc=now,
            )
            self._session.add(row)
        elif to_decimal(row.peak_equity) > peak:
            raise InvariantViolationError(
                f"peak_equity may not decrease for investor={investor_id}: {row.peak_equity} -> {peak}"
            )
        row.cash_balance = cash
        row.total_equity = equity
        row.peak_equity = peak
        row.updated_at_utc = now
        self._session.flush()
        return _portfolio_state(row)

    def get_position(self, investor_id: str, instrument: str, *, for_update: bool = False) -> Optional[PositionState]:
        if for_update:
            row = self._locked_position(investor_id, instrument)
        else:
            row = self._session.get(Position, (investor_id, instrument.upper()))
        return None if row is None else _position_state(row)

    def list_positions(self, investor_id: str) -> tuple[PositionState, ...]:
        stmt = select(Position).where(Position.investor_id == investor_id).order_by(Position.instrument)
        return tuple(_position_state(row) for row in self._session.scalars(stmt).all())

    def apply_position_delta(
        self,
        investor_id: str,
        instrument: str,
        shares_delta: Decimal,
        price: Decimal,
        side: TradeSide,
        now: datetime,
        notional: Optional[Decimal] = None,
    ) -> Optional[PositionState]:
        """Apply a signed share change; returns ``None`` once the position is closed."""
        symbol = instrument.upper()
        delta = normalize_decimal(shares_delta)
        trade_price = normalize_decimal(price)
        if trade_price <= 0:
            raise InvariantViolationError(f"trade price must be > 0, got {trade_price}")
        if side == TradeSide.BUY and delta <= 0:
            raise InvariantViolationError(f"BUY requires a positive share delta, got {delta}")
        if side == TradeSide.SELL and delta >= 0:
            raise InvariantViolationError(f"SELL requires a negative share delta, got {delta}")

        row = self._locked_position(investor_id, symbol)
        old_shares = ZERO if row is None else to_decimal(row.shares)
        new_shares = normalize_decimal(old_shares + delta)
        if new_shares < -POSITION_EPSILON:
            raise InvariantViolationError(
                f"position for investor={investor_id} instrument={symbol} would go negative: "
                f"{old_shares} + {delta}"
            )

        if new_shares <= POSITION_EPSILON:
            if row is not None:
                self._session.delete(row)
                self._session.flush()
            return None

        if row is None:
            row = Position(investor_id=investor_id, instrument=symbol, last_buy_price=ZERO)
            self._session.add(row)

        if side == TradeSide.BUY:
            cost = normalize_decimal(notional) if notional is not None else normalize_decimal(delta * trade_price)
            old_avg = ZERO if row.avg_price is None else to_decimal(row.avg_price)
            row.avg_price = normalize_decimal((old_shares * old_avg + cost) / new_shares)
            row.last_buy_price = trade_price
        row.shares = new_shares
        row.last_trade_price = trade_price
        row.updated_at_utc = now
        self._session.flush()
        return _position_state(row)

    def debit_credit(
        self,
        investor_id: str,
        amount: Decimal,
        direction: CashDirection,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """Move cash and return the new balance; a failing debit leaves the balance untouched."""
        value = normalize_decimal(amount)
        if value < 0:
            raise InvariantViolationError(f"cash movement must be non-negative, got {value}")
        row = self._locked_portfolio(investor_id)
        if row is None:
            raise InvariantViolationError(f"no portfolio for investor={investor_id}")

        balance = to_decimal(row.cash_balance)
        if direction == CashDirection.DEBIT:
            if balance - value < 0:
                raise InsufficientCashError(investor_id, value, balance)
            new_balance = normalize_decimal(balance - value)
        else:
            new_balance = normalize_decimal(balance + value)
        row.cash_balance = new_balance
        if now is not None:
            row.updated_at_utc = now
        self._session.flush()
        return new_balance

    def append_trade(
        self,
        *,
        investor_id: str,
        instrument: str,
        side: TradeSide,
        shares: Decimal,
        price: Decimal,
        notional: Decimal,
        reason: str,
        executed_at: datetime,
    ) -> TradeRecord:
        row = Trade(
            investor_id=investor_id,
            instrument=instrument.upper(),
            side=side,
            shares=normalize_decimal(shares),
            price=normalize_decimal(price),
            notional=normalize_decimal(notional),
            reason=reason,
            executed_at_utc=executed_at,
        )
        self._session.add(row)
        self._session.flush()
        return _trade_record(row)

    def list_trades(self, investor_id: str, instrument: Optional[str] = None) -> tuple[TradeRecord, ...]:
        stmt = select(Trade).where(Trade.investor_id == investor_id)
        if instrument is not None:
            stmt = stmt.where(Trade.instrument == instrument.upper())
        stmt = stmt.order_by(Trade.executed_at_utc, Trade.trade_id)
        return tuple(_trade_record(row) for row in self._session.scalars(stmt).all())

    def has_traded_since(self, investor_id: str, instrument: str, since: datetime) -> bool:
        stmt = select(
            exists().where(
                Trade.investor_id == investor_id,
                Trade.instrument == instrument.upper(),
                Trade.executed_at_utc >= since,
            )
        )
        return bool(self._session.scalar(stmt))

    def has_ever_traded(self, investor_id: str, instrument: str) -> bool:
        stmt = select(
            exists().where(
                Trade.investor_id == investor_id,
                Trade.instrument == instrument.upper(),
            )
        )
        return bool(self._session.scalar(stmt))

    def append_equity_snapshot(
        self,
        investor_id: str,
        *,
        total_equity: Decimal,
        cash_balance: Decimal,
        market_value: Decimal,
        peak_equity: Decimal,
        drawdown_pct: Decimal,
        snapshot_ts: datetime,
        snapshot_day: Optional[date] = None,
    ) -> EquitySnapshotRecord:
        """Append a snapshot, or overwrite the one for ``snapshot_day`` when given."""
        row: Optional[EquitySnapshot] = None
        if snapshot_day is not None:
            stmt = (
                select(EquitySnapshot)
                .where(
                    EquitySnapshot.investor_id == investor_id,
                    EquitySnapshot.snapshot_day == snapshot_day,
                )
                .with_for_update()
            )
            row = self._session.scalars(stmt).one_or_none()
        if row is None:
            row = EquitySnapshot(investor_id=investor_id, snapshot_day=snapshot_day)
            self._session.add(row)
        row.total_equity = normalize_decimal(total_equity)
        row.cash_balance = normalize_decimal(cash_balance)
        row.market_value = normalize_decimal(market_value)
        row.peak_equity = normalize_decimal(peak_equity)
        row.drawdown_pct = normalize_decimal(drawdown_pct)
        row.snapshot_ts_utc = snapshot_ts
        self._session.flush()
        return _snapshot_record(row)

    def list_equity_snapshots(self, investor_id: str) -> tuple[EquitySnapshotRecord, ...]:
        stmt = (
            select(EquitySnapshot)
            .where(EquitySnapshot.investor_id == investor_id)
            .order_by(EquitySnapshot.snapshot_ts_utc, EquitySnapshot.snapshot_id)
        )
        return tuple(_snapshot_record(row) for row in self._session.scalars(stmt).all())

    def record_event(
        self,
        *,
        event_type: str,
        severity: EventSeverity,
        reason_code: str,
        details: str,
        now: datetime,
        investor_id: Optional[str] = None,
        instrument: Optional[str] = None,
    ) -> None:
        self._session.add(
            EngineEvent(
                event_ts_utc=now,
                event_type=event_type,
                severity=severity,
                reason_code=reason_code,
                investor_id=investor_id,
                instrument=None if instrument is None else instrument.upper(),
                details=details,
            )
        )
        self._session.flush()


def _is_unavailable(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, PoolTimeoutError, TimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


class LedgerStore:
    """Session-backed ledger; every public call runs inside one transaction."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        """Open a unit of work that commits on success and rolls back on any exception."""
        session = self._session_factory()
        try:
            with session.begin():
                yield LedgerTransaction(session)
        except LedgerError:
            raise
        except IntegrityError as exc:
            logger.error("Ledger constraint rejected write: %s", exc.orig)
            raise InvariantViolationError(f"constraint violation: {exc.orig}") from exc
        except Exception as exc:
            if _is_unavailable(exc):
                raise LedgerUnavailableError(f"ledger store unavailable: {type(exc).__name__}") from exc
            raise
        finally:
            session.close()

    def get_portfolio(self, investor_id: str) -> Optional[PortfolioState]:
        with self.transaction() as tx:
            return tx.get_portfolio(investor_id)

    def list_portfolios(self) -> tuple[PortfolioState, ...]:
        with self.transaction() as tx:
            return tx.list_portfolios()

    def ensure_portfolio(self, investor_id: str, initial_capital: Decimal, now: datetime) -> PortfolioState:
        with self.transaction() as tx:
            return tx.ensure_portfolio(investor_id, initial_capital, now)

    def get_position(self, investor_id: str, instrument: str) -> Optional[PositionState]:
        with self.transaction() as tx:
            return tx.get_position(investor_id, instrument)

    def list_positions(self, investor_id: str) -> tuple[PositionState, ...]:
        with self.transaction() as tx:
            return tx.list_positions(investor_id)

    def list_trades(self, investor_id: str, instrument: Optional[str] = None) -> tuple[TradeRecord, ...]:
        with self.transaction() as tx:
            return tx.list_trades(investor_id, instrument)

    def list_equity_snapshots(self, investor_id: str) -> tuple[EquitySnapshotRecord, ...]:
        with self.transaction() as tx:
            return tx.list_equity_snapshots(investor_id)

    def has_traded_since(self, investor_id: str, instrument: str, since: datetime) -> bool:
        with self.transaction() as tx:
            return tx.has_traded_since(investor_id, instrument, since)

    def has_ever_traded(self, investor_id: str, instrument: str) -> bool:
        with self.transaction() as tx:
            return tx.has_ever_traded(investor_id, instrument)

    def record_event(
        self,
        *,
        event_type: str,
        severity: EventSeverity,
        reason_code: str,
        details: str,
        now: datetime,
        investor_id: Optional[str] = None,
        instrument: Optional[str] = None,
    ) -> None:
        """Append an engine event in its own transaction."""
        with self.transaction() as tx:
            tx.record_event(
                event_type=event_type,
                severity=severity,
                reason_code=reason_code,
                details=details,
                now=now,
                investor_id=investor_id,
                instrument=instrument,
            )
