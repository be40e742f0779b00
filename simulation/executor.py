"""Trade executor: turns evaluator decisions into atomic ledger mutations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
import enum
import logging
from typing import Optional

from backend.db.enums import TradeSide
from simulation.common import SimulationClock, trading_day_start
from simulation.ledger import CashDirection, InsufficientCashError, LedgerStore
from simulation.numeric import POSITION_EPSILON, ZERO, normalize_decimal
from simulation.strategies import DecisionAction, TradeDecision

logger = logging.getLogger(__name__)


class ExecutionStatus(str, enum.Enum):
    """Outcome class of one execution attempt."""

    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class TradeResult:
    """Post-trade ledger figures for an executed trade."""

    trade_id: int
    side: TradeSide
    shares: Decimal
    price: Decimal
    notional: Decimal
    cash_after: Decimal
    position_shares_after: Decimal
    avg_price_after: Optional[Decimal]


@dataclass(frozen=True)
class ExecutionOutcome:
    """Execution attempt result."""

    status: ExecutionStatus
    reason_code: str
    detail: str
    trade: Optional[TradeResult] = None

    @property
    def executed(self) -> bool:
        return self.status == ExecutionStatus.EXECUTED


def _rejected(reason_code: str, detail: str) -> ExecutionOutcome:
    return ExecutionOutcome(status=ExecutionStatus.REJECTED, reason_code=reason_code, detail=detail)


class TradeExecutor:
    """Validates a decision against locked ledger rows and applies it as one unit of work."""

    def __init__(
        self,
        ledger: LedgerStore,
        *,
        min_trade_notional: Decimal = Decimal("1"),
        trading_day_timezone: str = "UTC",
        clock: SimulationClock | None = None,
    ) -> None:
        self._ledger = ledger
        self._min_trade_notional = normalize_decimal(min_trade_notional)
        self._trading_day_timezone = trading_day_timezone
        self._clock = clock or SimulationClock()

    def execute(
        self,
        investor_id: str,
        instrument: str,
        decision: TradeDecision,
        price: Decimal,
        now: Optional[datetime] = None,
    ) -> ExecutionOutcome:
        """Execute one decision; rejections leave the ledger untouched."""
        if decision.action == DecisionAction.HOLD:
            return ExecutionOutcome(
                status=ExecutionStatus.SKIPPED,
                reason_code=decision.reason,
                detail="HOLD decision; nothing to execute.",
            )

        symbol = instrument.upper()
        trade_price = normalize_decimal(price)
        if trade_price <= 0:
            outcome = _rejected("INVALID_PRICE", f"Trade price must be > 0, got {trade_price}.")
            self._log_rejection(investor_id, symbol, decision, outcome)
            return outcome

        now_utc = now or self._clock.now_utc()
        day_start = trading_day_start(now_utc, self._trading_day_timezone)

        try:
            with self._ledger.transaction() as tx:
                portfolio = tx.get_portfolio(investor_id, for_update=True)
                if portfolio is None:
                    outcome = _rejected("NO_PORTFOLIO", f"No portfolio for investor {investor_id}.")
                    self._log_rejection(investor_id, symbol, decision, outcome)
                    return outcome
                position = tx.get_position(investor_id, symbol, for_update=True)

                if tx.has_traded_since(investor_id, symbol, day_start):
                    outcome = _rejected(
                        "ALREADY_TRADED_TODAY",
                        f"Trade already recorded since {day_start.isoformat()}.",
                    )
                    self._log_rejection(investor_id, symbol, decision, outcome)
                    return outcome

                if decision.action == DecisionAction.BUY:
                    side = TradeSide.BUY
                    if decision.amount_usd is not None:
                        # Rounded down so the notional never exceeds the dollar amount.
                        shares = normalize_decimal(decision.amount_usd / trade_price, rounding=ROUND_DOWN)
                        notional = normalize_decimal(shares * trade_price)
                        required = decision.amount_usd
                    else:
                        shares = normalize_decimal(decision.shares)
                        notional = normalize_decimal(shares * trade_price)
                        required = notional
                    if portfolio.cash_balance < required:
                        outcome = _rejected(
                            "INSUFFICIENT_CASH",
                            f"Cash {portfolio.cash_balance} below required {required}.",
                        )
                        self._log_rejection(investor_id, symbol, decision, outcome)
                        return outcome
                else:
                    side = TradeSide.SELL
                    held = ZERO if position is None else position.shares
                    if held <= POSITION_EPSILON:
                        outcome = _rejected("NO_POSITION", f"No {symbol} shares held.")
                        self._log_rejection(investor_id, symbol, decision, outcome)
                        return outcome
                    if decision.shares is not None:
                        requested = normalize_decimal(decision.shares)
                    else:
                        requested = normalize_decimal(decision.amount_usd / trade_price)
                    shares = held if held - requested <= POSITION_EPSILON else requested
                    notional = normalize_decimal(shares * trade_price)

                if shares <= 0 or notional < self._min_trade_notional:
                    outcome = _rejected(
                        "BELOW_MIN_NOTIONAL",
                        f"Notional {notional} below minimum {self._min_trade_notional}.",
                    )
                    self._log_rejection(investor_id, symbol, decision, outcome)
                    return outcome

                trade = tx.append_trade(
                    investor_id=investor_id,
                    instrument=symbol,
                    side=side,
                    shares=shares,
                    price=trade_price,
                    notional=notional,
                    reason=decision.reason,
                    executed_at=now_utc,
                )
                delta = shares if side == TradeSide.BUY else -shares
                new_position = tx.apply_position_delta(
                    investor_id,
                    symbol,
                    delta,
                    trade_price,
                    side,
                    now_utc,
                    notional=notional,
                )
                direction = CashDirection.DEBIT if side == TradeSide.BUY else CashDirection.CREDIT
                cash_after = tx.debit_credit(investor_id, notional, direction, now_utc)
        except InsufficientCashError as exc:
            outcome = _rejected("INSUFFICIENT_CASH", str(exc))
            self._log_rejection(investor_id, symbol, decision, outcome)
            return outcome

        result = TradeResult(
            trade_id=trade.trade_id,
            side=side,
            shares=shares,
            price=trade_price,
            notional=notional,
            cash_after=cash_after,
            position_shares_after=ZERO if new_position is None else new_position.shares,
            avg_price_after=None if new_position is None else new_position.avg_price,
        )
        logger.info(
            "Executed trade investor=%s instrument=%s side=%s shares=%s price=%s notional=%s reason=%s cash_after=%s",
            investor_id,
            symbol,
            side.value,
            shares,
            trade_price,
            notional,
            decision.reason,
            cash_after,
        )
        return ExecutionOutcome(
            status=ExecutionStatus.EXECUTED,
            reason_code=decision.reason,
            detail=f"{side.value} {shares} {symbol} @ {trade_price}",
            trade=result,
        )

    @staticmethod
    def _log_rejection(investor_id: str, instrument: str, decision: TradeDecision, outcome: ExecutionOutcome) -> None:
        logger.info(
            "Rejected trade investor=%s instrument=%s action=%s reason_code=%s detail=%s",
            investor_id,
            instrument,
            decision.action.value,
            outcome.reason_code,
            outcome.detail,
        )
