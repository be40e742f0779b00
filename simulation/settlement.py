"""Mark-to-market settlement and peak/drawdown tracking per investor."""

from __future__ import annotations

from datetime import datetime
import logging
from decimal import Decimal
from typing import Mapping, Optional

from simulation.common import SimulationClock, trading_day
from simulation.ledger import EquitySnapshotRecord, InvariantViolationError, LedgerStore
from simulation.market import Quote
from simulation.numeric import ZERO, normalize_decimal

logger = logging.getLogger(__name__)


def compute_drawdown(peak_equity: Decimal, total_equity: Decimal) -> Decimal:
    """Fractional decline of ``total_equity`` from ``peak_equity``."""
    if peak_equity <= 0:
        return ZERO
    return normalize_decimal(max(ZERO, (peak_equity - total_equity) / peak_equity))


class Settlement:
    """Recomputes equity from final cash and marked positions, then snapshots it."""

    def __init__(
        self,
        ledger: LedgerStore,
        *,
        collapse_daily_snapshots: bool = False,
        trading_day_timezone: str = "UTC",
        clock: SimulationClock | None = None,
    ) -> None:
        self._ledger = ledger
        self._collapse_daily_snapshots = collapse_daily_snapshots
        self._trading_day_timezone = trading_day_timezone
        self._clock = clock or SimulationClock()

    def settle(
        self,
        investor_id: str,
        quotes: Mapping[str, Quote],
        now: Optional[datetime] = None,
    ) -> EquitySnapshotRecord:
        """Settle one investor; positions without a quote are marked at their last trade price."""
        now_utc = now or self._clock.now_utc()
        with self._ledger.transaction() as tx:
            portfolio = tx.get_portfolio(investor_id, for_update=True)
            if portfolio is None:
                raise InvariantViolationError(f"cannot settle investor={investor_id} without a portfolio")

            market_value = ZERO
            for position in tx.list_positions(investor_id):
                quote = quotes.get(position.instrument)
                if quote is not None and quote.price > 0:
                    mark = quote.price
                else:
                    mark = position.last_trade_price
                    logger.debug(
                        "No quote for settlement investor=%s instrument=%s; marking at last trade %s",
                        investor_id,
                        position.instrument,
                        mark,
                    )
                market_value += position.market_value(mark)

            market_value = normalize_decimal(market_value)
            total_equity = normalize_decimal(portfolio.cash_balance + market_value)
            peak_equity = max(portfolio.peak_equity, total_equity)
            drawdown = compute_drawdown(peak_equity, total_equity)

            tx.upsert_portfolio(
                investor_id,
                cash_balance=portfolio.cash_balance,
                total_equity=total_equity,
                peak_equity=peak_equity,
                now=now_utc,
            )
            snapshot_day = trading_day(now_utc, self._trading_day_timezone) if self._collapse_daily_snapshots else None
            snapshot = tx.append_equity_snapshot(
                investor_id,
                total_equity=total_equity,
                cash_balance=portfolio.cash_balance,
                market_value=market_value,
                peak_equity=peak_equity,
                drawdown_pct=drawdown,
                snapshot_ts=now_utc,
                snapshot_day=snapshot_day,
            )

        logger.info(
            "Settled investor=%s equity=%s cash=%s market_value=%s peak=%s drawdown=%s",
            investor_id,
            total_equity,
            portfolio.cash_balance,
            market_value,
            peak_equity,
            drawdown,
        )
        return snapshot
