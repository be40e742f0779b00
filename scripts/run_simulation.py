#!/usr/bin/env python3
"""Persona trading simulation CLI."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
import signal
import sys
from typing import Any, Sequence

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.db import Base, create_ledger_engine, create_session_factory
from simulation.common import SimulationClock, utc_iso
from simulation.config import SimulationConfig, load_catalog, load_simulation_config
from simulation.executor import TradeExecutor
from simulation.ledger import LedgerStore
from simulation.market import DatabaseCandleSource, DatabaseQuoteProvider
from simulation.numeric import decimal_to_str
from simulation.orchestrator import CycleOrchestrator
from simulation.settlement import Settlement

logger = logging.getLogger("simulation.cli")

# Subcommands that build the orchestrator and therefore read the catalog.
CATALOG_COMMANDS = frozenset({"daemon", "run-once"})


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _build_orchestrator(cfg: SimulationConfig, session_factory: Any) -> CycleOrchestrator:
    catalog = load_catalog(cfg.catalog_path)
    clock = SimulationClock()
    ledger = LedgerStore(session_factory)
    return CycleOrchestrator(
        catalog=catalog,
        ledger=ledger,
        executor=TradeExecutor(
            ledger,
            min_trade_notional=cfg.min_trade_notional,
            trading_day_timezone=cfg.trading_day_timezone,
            clock=clock,
        ),
        settlement=Settlement(
            ledger,
            collapse_daily_snapshots=cfg.collapse_daily_snapshots,
            trading_day_timezone=cfg.trading_day_timezone,
            clock=clock,
        ),
        quote_provider=DatabaseQuoteProvider(
            session_factory,
            max_age_seconds=cfg.quote_max_age_seconds,
            clock=clock,
        ),
        candle_source=DatabaseCandleSource(session_factory),
        config=cfg,
        clock=clock,
    )


def _status_payload(ledger: LedgerStore) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for portfolio in ledger.list_portfolios():
        positions = ledger.list_positions(portfolio.investor_id)
        payload.append(
            {
                "investor_id": portfolio.investor_id,
                "cash_balance": decimal_to_str(portfolio.cash_balance),
                "total_equity": decimal_to_str(portfolio.total_equity),
                "peak_equity": decimal_to_str(portfolio.peak_equity),
                "drawdown_pct": decimal_to_str(portfolio.drawdown_pct),
                "updated_at_utc": utc_iso(portfolio.updated_at_utc),
                "positions": [
                    {
                        "instrument": position.instrument,
                        "shares": decimal_to_str(position.shares),
                        "avg_price": decimal_to_str(position.avg_price),
                        "last_trade_price": decimal_to_str(position.last_trade_price),
                    }
                    for position in positions
                ],
            }
        )
    return payload


def _install_signal_handlers(orchestrator: CycleOrchestrator) -> None:
    def _handle(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s; stopping after the current tick.", signal.Signals(signum).name)
        orchestrator.request_stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Persona trading simulation CLI")
    parser.add_argument("--database-url", help="SQLAlchemy URL (overrides SIM_DATABASE_URL)")
    parser.add_argument("--catalog", help="Catalog JSON path (overrides SIM_CATALOG_PATH)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create ledger tables from model metadata")

    daemon_cmd = subparsers.add_parser("daemon", help="Run the simulation loop")
    daemon_cmd.add_argument("--max-ticks", type=int, default=None)

    subparsers.add_parser("run-once", help="Run a single tick")
    subparsers.add_parser("status", help="Print investor portfolios as JSON")

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.database_url:
        os.environ["SIM_DATABASE_URL"] = args.database_url
    if args.catalog:
        os.environ["SIM_CATALOG_PATH"] = args.catalog

    try:
        cfg = load_simulation_config(require_catalog=args.command in CATALOG_COMMANDS)
    except RuntimeError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    _configure_logging(cfg.log_level)

    engine = create_ledger_engine(cfg.database_url, statement_timeout_ms=cfg.statement_timeout_ms)
    session_factory = create_session_factory(engine)
    try:
        if args.command == "init-db":
            Base.metadata.create_all(engine)
            logger.info("Ledger tables created.")
            return 0

        if args.command == "status":
            print(json.dumps(_status_payload(LedgerStore(session_factory)), indent=2, sort_keys=True))
            return 0

        try:
            orchestrator = _build_orchestrator(cfg, session_factory)
        except RuntimeError as exc:
            print(f"Configuration error: {exc}", file=sys.stderr)
            return 2

        try:
            if args.command == "run-once":
                report = orchestrator.run_tick()
                print(
                    json.dumps(
                        {
                            "tick": report.tick,
                            "quotes_received": report.quotes_received,
                            "quotes_missing": report.quotes_missing,
                            "executed": report.executed,
                            "rejected": report.rejected,
                            "skipped": report.skipped,
                            "failed": report.failed,
                            "investors_settled": report.investors_settled,
                        },
                        sort_keys=True,
                    )
                )
                return 0

            if args.command == "daemon":
                _install_signal_handlers(orchestrator)
                orchestrator.run_forever(max_ticks=args.max_ticks)
                return 0
        finally:
            orchestrator.close()

        raise SystemExit(f"Unknown command: {args.command}")
    finally:
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
