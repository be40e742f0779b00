"""Cycle orchestrator: quotes in, per-investor evaluation and execution, settlement out."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
import logging
import random
import threading
import time
from typing import Mapping, Optional

from backend.db.enums import EventSeverity
from simulation.common import SimulationClock, trading_day, trading_day_start
from simulation.config import Catalog, InvestorSpec, SimulationConfig
from simulation.executor import ExecutionOutcome, ExecutionStatus, TradeExecutor
from simulation.ledger import InvariantViolationError, LedgerError, LedgerStore, LedgerUnavailableError
from simulation.market import CandleSource, PriceRange, Quote, QuoteProvider, compute_price_range
from simulation.settlement import Settlement
from simulation.strategies import PersonaStrategy, PositionView, StrategyState, build_strategy

logger = logging.getLogger(__name__)

MAX_QUOTE_WORKERS = 8


@dataclass(frozen=True)
class PairOutcome:
    """Execution outcome for one (investor, instrument) pair within a tick."""

    investor_id: str
    instrument: str
    outcome: ExecutionOutcome


@dataclass
class CycleReport:
    """Tallies for one tick."""

    tick: int
    started_at_utc: datetime
    history_refreshed: bool = False
    quotes_received: int = 0
    quotes_missing: list[str] = field(default_factory=list)
    executed: int = 0
    rejected: int = 0
    skipped: int = 0
    failed: int = 0
    investors_settled: int = 0
    settlement_failed: int = 0
    outcomes: list[PairOutcome] = field(default_factory=list)

    def record(self, investor_id: str, instrument: str, outcome: ExecutionOutcome) -> None:
        self.outcomes.append(PairOutcome(investor_id, instrument, outcome))
        if outcome.status == ExecutionStatus.EXECUTED:
            self.executed += 1
        elif outcome.status == ExecutionStatus.REJECTED:
            self.rejected += 1
        else:
            self.skipped += 1


def build_investor_strategies(catalog: Catalog, random_seed: Optional[int] = None) -> dict[str, PersonaStrategy]:
    """One evaluator per investor; seeded runs derive a stable per-investor RNG."""
    strategies: dict[str, PersonaStrategy] = {}
    for spec in catalog.investors:
        rng = random.Random(f"{random_seed}:{spec.investor_id}") if random_seed is not None else random.Random()
        strategies[spec.investor_id] = build_strategy(spec.persona, spec.params, rng)
    return strategies


class CycleOrchestrator:
    """Drives ticks: fetch quotes once, evaluate and execute every pair, settle every investor."""

    def __init__(
        self,
        *,
        catalog: Catalog,
        ledger: LedgerStore,
        executor: TradeExecutor,
        settlement: Settlement,
        quote_provider: QuoteProvider,
        candle_source: CandleSource,
        config: SimulationConfig,
        strategies: Mapping[str, PersonaStrategy] | None = None,
        clock: SimulationClock | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._executor = executor
        self._settlement = settlement
        self._quote_provider = quote_provider
        self._candle_source = candle_source
        self._config = config
        self._strategies = dict(strategies) if strategies is not None else build_investor_strategies(
            catalog, config.random_seed
        )
        missing = [spec.investor_id for spec in catalog.investors if spec.investor_id not in self._strategies]
        if missing:
            raise RuntimeError(f"No strategy configured for investors: {', '.join(missing)}")
        self._clock = clock or SimulationClock()
        self._price_ranges: dict[str, PriceRange] = {}
        self._tick_count = 0
        self._stop_event = threading.Event()
        self._quote_pool = ThreadPoolExecutor(
            max_workers=max(1, min(MAX_QUOTE_WORKERS, len(catalog.instruments))),
            thread_name_prefix="quote-fetch",
        )

    @property
    def price_ranges(self) -> Mapping[str, PriceRange]:
        return dict(self._price_ranges)

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def close(self) -> None:
        """Release quote worker threads without waiting on hung fetches."""
        self._quote_pool.shutdown(wait=False, cancel_futures=True)

    def request_stop(self) -> None:
        """Ask the loop to exit after the tick in progress."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _safe_record_event(
        self,
        event_type: str,
        severity: EventSeverity,
        reason_code: str,
        details: str,
        *,
        investor_id: Optional[str] = None,
        instrument: Optional[str] = None,
    ) -> None:
        try:
            self._ledger.record_event(
                event_type=event_type,
                severity=severity,
                reason_code=reason_code,
                details=details,
                now=self._clock.now_utc(),
                investor_id=investor_id,
                instrument=instrument,
            )
        except Exception:
            logger.warning("Could not record engine event type=%s reason=%s", event_type, reason_code, exc_info=True)

    def _flag_failure(
        self,
        event_type: str,
        exc: Exception,
        *,
        investor_id: Optional[str] = None,
        instrument: Optional[str] = None,
    ) -> None:
        details = f"error={type(exc).__name__}:{exc}"
        if isinstance(exc, InvariantViolationError):
            logger.error(
                "Invariant violation event=%s investor=%s instrument=%s %s",
                event_type,
                investor_id,
                instrument,
                details,
            )
            severity, reason_code = EventSeverity.CRITICAL, "INVARIANT_VIOLATION"
        elif isinstance(exc, LedgerUnavailableError):
            logger.warning(
                "Ledger unavailable event=%s investor=%s instrument=%s %s",
                event_type,
                investor_id,
                instrument,
                details,
            )
            severity, reason_code = EventSeverity.WARNING, "LEDGER_UNAVAILABLE"
        else:
            logger.exception(
                "Unexpected failure event=%s investor=%s instrument=%s",
                event_type,
                investor_id,
                instrument,
            )
            severity, reason_code = EventSeverity.WARNING, "UNEXPECTED_ERROR"
        self._safe_record_event(
            event_type,
            severity,
            reason_code,
            details,
            investor_id=investor_id,
            instrument=instrument,
        )

    def refresh_history(self, now: datetime) -> None:
        """Reload rolling price ranges; an instrument that fails keeps its previous range."""
        before = trading_day(now, self._config.trading_day_timezone)
        periods = self._config.price_range_periods
        for instrument in self._catalog.instruments:
            try:
                candles = self._candle_source.load_candles(instrument, before, periods)
            except Exception as exc:
                logger.warning("History refresh failed instrument=%s error=%s:%s", instrument, type(exc).__name__, exc)
                continue
            price_range = compute_price_range(candles, periods)
            if price_range is None:
                logger.debug("No candles for instrument=%s before=%s", instrument, before)
                continue
            self._price_ranges[instrument] = price_range
        logger.info("Refreshed price ranges instruments=%d", len(self._price_ranges))

    def fetch_quotes(self) -> dict[str, Quote]:
        """Fetch every instrument concurrently; missing, failed or timed-out quotes are omitted."""
        futures: dict[str, Future] = {
            instrument: self._quote_pool.submit(self._quote_provider.fetch_quote, instrument)
            for instrument in self._catalog.instruments
        }
        deadline = time.monotonic() + self._config.quote_timeout_seconds
        quotes: dict[str, Quote] = {}
        for instrument, future in futures.items():
            try:
                quote = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FuturesTimeoutError:
                future.cancel()
                logger.warning("Quote fetch timed out instrument=%s", instrument)
                self._safe_record_event(
                    "QUOTE_FETCH",
                    EventSeverity.WARNING,
                    "QUOTE_TIMEOUT",
                    f"timeout_seconds={self._config.quote_timeout_seconds}",
                    instrument=instrument,
                )
                continue
            except Exception as exc:
                logger.warning("Quote fetch failed instrument=%s error=%s:%s", instrument, type(exc).__name__, exc)
                self._safe_record_event(
                    "QUOTE_FETCH",
                    EventSeverity.WARNING,
                    "QUOTE_UNAVAILABLE",
                    f"error={type(exc).__name__}:{exc}",
                    instrument=instrument,
                )
                continue
            if quote is None or quote.price <= 0:
                logger.debug("No usable quote instrument=%s", instrument)
                continue
            quotes[instrument] = quote
        return quotes

    def _build_state(self, investor_id: str, quote: Quote, now: datetime) -> StrategyState:
        day_start = trading_day_start(now, self._config.trading_day_timezone)
        with self._ledger.transaction() as tx:
            portfolio = tx.get_portfolio(investor_id)
            if portfolio is None:
                raise InvariantViolationError(f"portfolio vanished for investor={investor_id}")
            position = tx.get_position(investor_id, quote.instrument)
            already_traded_today = tx.has_traded_since(investor_id, quote.instrument, day_start)
            ever_traded = already_traded_today or tx.has_ever_traded(investor_id, quote.instrument)

        view = None
        if position is not None:
            view = PositionView(
                shares=position.shares,
                avg_price=position.avg_price,
                last_trade_price=position.last_trade_price,
                last_buy_price=position.last_buy_price,
                updated_at_utc=position.updated_at_utc,
            )
        return StrategyState(
            instrument=quote.instrument,
            price=quote.price,
            change_pct=quote.change_pct,
            cash=portfolio.cash_balance,
            position=view,
            already_traded_today=already_traded_today,
            ever_traded=ever_traded,
            total_equity=portfolio.total_equity,
            drawdown_pct=portfolio.drawdown_pct,
            now=now,
            price_range=self._price_ranges.get(quote.instrument),
        )

    def _run_pair(self, spec: InvestorSpec, quote: Quote, now: datetime) -> ExecutionOutcome:
        state = self._build_state(spec.investor_id, quote, now)
        decision = self._strategies[spec.investor_id].evaluate(state)
        return self._executor.execute(spec.investor_id, quote.instrument, decision, quote.price, now)

    def _run_investor(self, spec: InvestorSpec, quotes: Mapping[str, Quote], now: datetime, report: CycleReport) -> None:
        try:
            self._ledger.ensure_portfolio(spec.investor_id, self._config.initial_capital, now)
        except Exception as exc:
            report.failed += 1
            self._flag_failure("PORTFOLIO", exc, investor_id=spec.investor_id)
            return

        for instrument in self._catalog.instruments:
            quote = quotes.get(instrument)
            if quote is None:
                continue
            try:
                outcome = self._run_pair(spec, quote, now)
            except Exception as exc:
                report.failed += 1
                self._flag_failure("TRADE", exc, investor_id=spec.investor_id, instrument=instrument)
                continue
            report.record(spec.investor_id, instrument, outcome)

        try:
            self._settlement.settle(spec.investor_id, quotes, now)
        except Exception as exc:
            report.settlement_failed += 1
            self._flag_failure("SETTLEMENT", exc, investor_id=spec.investor_id)
            return
        report.investors_settled += 1

    def run_tick(self) -> CycleReport:
        """Run one fast-period cycle; the slow-period refresh rides along every N ticks."""
        now = self._clock.now_utc()
        report = CycleReport(tick=self._tick_count, started_at_utc=now)
        if self._tick_count % self._config.history_refresh_every_ticks == 0:
            self.refresh_history(now)
            report.history_refreshed = True
        self._tick_count += 1

        quotes = self.fetch_quotes()
        report.quotes_received = len(quotes)
        report.quotes_missing = [instrument for instrument in self._catalog.instruments if instrument not in quotes]

        for spec in self._catalog.investors:
            self._run_investor(spec, quotes, now, report)

        logger.info(
            "Tick complete tick=%d quotes=%d missing=%d executed=%d rejected=%d skipped=%d failed=%d settled=%d",
            report.tick,
            report.quotes_received,
            len(report.quotes_missing),
            report.executed,
            report.rejected,
            report.skipped,
            report.failed,
            report.investors_settled,
        )
        return report

    def run_forever(self, max_ticks: int | None = None) -> int:
        """Run ticks at a fixed interval until stopped; returns the number of ticks run."""
        self._safe_record_event(
            "DAEMON",
            EventSeverity.INFO,
            "STARTED",
            f"max_ticks={max_ticks if max_ticks is not None else 'infinite'}",
        )
        ticks = 0
        consecutive_failures = 0
        try:
            while not self._stop_event.is_set():
                started = time.monotonic()
                try:
                    self.run_tick()
                    consecutive_failures = 0
                    wait_seconds = max(0.0, self._config.tick_seconds - (time.monotonic() - started))
                except Exception as exc:
                    consecutive_failures += 1
                    if isinstance(exc, LedgerError):
                        self._flag_failure("DAEMON_TICK", exc)
                    else:
                        logger.exception("Simulation tick failed failure_count=%d", consecutive_failures)
                        self._safe_record_event(
                            "DAEMON_TICK",
                            EventSeverity.WARNING,
                            "TICK_FAILED",
                            f"failure_count={consecutive_failures},error={type(exc).__name__}:{exc}",
                        )
                    wait_seconds = float(self._config.daemon_failure_backoff_seconds)
                    if consecutive_failures >= self._config.daemon_max_consecutive_failures:
                        raise RuntimeError(
                            "Simulation daemon exceeded max consecutive failures "
                            f"({self._config.daemon_max_consecutive_failures})"
                        ) from exc

                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._stop_event.wait(wait_seconds)
        finally:
            self._safe_record_event("DAEMON", EventSeverity.INFO, "STOPPED", f"ticks={ticks}")
            logger.info("Simulation loop stopped ticks=%d", ticks)
        return ticks
