"""Unit tests for the trade executor against a temporary SQLite ledger."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.db.enums import TradeSide
from simulation.executor import ExecutionStatus, TradeExecutor
from simulation.ledger import CashDirection, InvariantViolationError, LedgerStore
from simulation.strategies import TradeDecision

NOW = datetime(2024, 3, 4, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def executor(store: LedgerStore) -> TradeExecutor:
    store.ensure_portfolio("leek", Decimal("1000000"), NOW - timedelta(days=10))
    return TradeExecutor(store, min_trade_notional=Decimal("1"), trading_day_timezone="UTC")


def test_hold_is_skipped_without_touching_store(executor: TradeExecutor, store: LedgerStore) -> None:
    outcome = executor.execute("leek", "QQQ", TradeDecision.hold("WITHIN_BAND"), Decimal("100"), NOW)
    assert outcome.status == ExecutionStatus.SKIPPED
    assert outcome.reason_code == "WITHIN_BAND"
    assert store.list_trades("leek") == ()


def test_buy_converts_dollars_to_shares_and_debits_cash(executor: TradeExecutor, store: LedgerStore) -> None:
    outcome = executor.execute("leek", "qqq", TradeDecision.buy("ENTRY", amount_usd=Decimal("100000")), Decimal("100"), NOW)

    assert outcome.status == ExecutionStatus.EXECUTED
    assert outcome.trade is not None
    assert outcome.trade.side == TradeSide.BUY
    assert outcome.trade.shares == Decimal("1000")
    assert outcome.trade.notional == Decimal("100000")
    assert outcome.trade.cash_after == Decimal("900000")
    assert outcome.trade.position_shares_after == Decimal("1000")
    assert outcome.trade.avg_price_after == Decimal("100")

    trades = store.list_trades("leek")
    assert len(trades) == 1
    assert trades[0].instrument == "QQQ"
    assert trades[0].reason == "ENTRY"
    assert store.get_portfolio("leek").cash_balance == Decimal("900000")


def test_second_trade_same_day_is_rejected(executor: TradeExecutor, store: LedgerStore) -> None:
    executor.execute("leek", "QQQ", TradeDecision.buy("ENTRY", amount_usd=Decimal("1000")), Decimal("100"), NOW)
    second = executor.execute(
        "leek",
        "QQQ",
        TradeDecision.sell("EXIT", shares=Decimal("5")),
        Decimal("101"),
        NOW + timedelta(hours=3),
    )
    assert second.status == ExecutionStatus.REJECTED
    assert second.reason_code == "ALREADY_TRADED_TODAY"
    assert len(store.list_trades("leek")) == 1

    other_instrument = executor.execute(
        "leek", "SPY", TradeDecision.buy("ENTRY", amount_usd=Decimal("1000")), Decimal("500"), NOW
    )
    assert other_instrument.status == ExecutionStatus.EXECUTED

    next_day = executor.execute(
        "leek",
        "QQQ",
        TradeDecision.sell("EXIT", shares=Decimal("5")),
        Decimal("101"),
        NOW + timedelta(days=1),
    )
    assert next_day.status == ExecutionStatus.EXECUTED


def test_trading_day_follows_configured_timezone(store: LedgerStore) -> None:
    store.ensure_portfolio("zen", Decimal("1000000"), NOW)
    executor = TradeExecutor(store, trading_day_timezone="America/New_York")
    # 23:30 New York on March 3rd, then 00:30 New York on March 4th.
    late = datetime(2024, 3, 4, 4, 30, tzinfo=timezone.utc)
    early = datetime(2024, 3, 4, 5, 30, tzinfo=timezone.utc)

    first = executor.execute("zen", "GLD", TradeDecision.buy("ENTRY", amount_usd=Decimal("1000")), Decimal("200"), late)
    second = executor.execute("zen", "GLD", TradeDecision.buy("ADD", amount_usd=Decimal("1000")), Decimal("200"), early)

    assert first.status == ExecutionStatus.EXECUTED
    assert second.status == ExecutionStatus.EXECUTED


def test_insufficient_cash_is_rejected_with_no_writes(executor: TradeExecutor, store: LedgerStore) -> None:
    outcome = executor.execute(
        "leek", "NVDA", TradeDecision.buy("ENTRY", amount_usd=Decimal("1000000.01")), Decimal("100"), NOW
    )
    assert outcome.status == ExecutionStatus.REJECTED
    assert outcome.reason_code == "INSUFFICIENT_CASH"
    assert store.list_trades("leek") == ()
    assert store.get_position("leek", "NVDA") is None
    assert store.get_portfolio("leek").cash_balance == Decimal("1000000")


def test_buy_all_cash_leaves_zero_not_negative(executor: TradeExecutor, store: LedgerStore) -> None:
    outcome = executor.execute(
        "leek", "NVDA", TradeDecision.buy("ALL_IN", amount_usd=Decimal("1000000")), Decimal("400"), NOW
    )
    assert outcome.status == ExecutionStatus.EXECUTED
    assert store.get_portfolio("leek").cash_balance == Decimal("0")


def test_buy_all_cash_at_inexact_price_rounds_shares_down(store: LedgerStore) -> None:
    store.ensure_portfolio("gambler", Decimal("100"), NOW)
    executor = TradeExecutor(store)

    outcome = executor.execute(
        "gambler", "QQQ", TradeDecision.buy("DOUBLE_DOWN", amount_usd=Decimal("100")), Decimal("7"), NOW
    )

    assert outcome.status == ExecutionStatus.EXECUTED
    assert outcome.trade.shares == Decimal("14.28571428")
    assert outcome.trade.notional == Decimal("99.99999996")
    assert outcome.trade.notional <= Decimal("100")
    assert store.get_portfolio("gambler").cash_balance == Decimal("0.00000004")


def test_sell_without_position_is_rejected(executor: TradeExecutor) -> None:
    outcome = executor.execute("leek", "TLT", TradeDecision.sell("EXIT", shares=Decimal("1")), Decimal("90"), NOW)
    assert outcome.status == ExecutionStatus.REJECTED
    assert outcome.reason_code == "NO_POSITION"


def test_sell_is_capped_at_held_quantity_and_closes_position(executor: TradeExecutor, store: LedgerStore) -> None:
    executor.execute("leek", "GLD", TradeDecision.buy("ENTRY", amount_usd=Decimal("2000")), Decimal("200"), NOW)

    outcome = executor.execute(
        "leek",
        "GLD",
        TradeDecision.sell("EXIT", shares=Decimal("25")),
        Decimal("250"),
        NOW + timedelta(days=1),
    )
    assert outcome.status == ExecutionStatus.EXECUTED
    assert outcome.trade.shares == Decimal("10")
    assert outcome.trade.notional == Decimal("2500")
    assert outcome.trade.position_shares_after == Decimal("0")
    assert outcome.trade.avg_price_after is None
    assert store.get_position("leek", "GLD") is None
    assert store.get_portfolio("leek").cash_balance == Decimal("1000500")


def test_sell_by_dollar_amount_keeps_average_cost(executor: TradeExecutor, store: LedgerStore) -> None:
    executor.execute("leek", "SPY", TradeDecision.buy("ENTRY", amount_usd=Decimal("5000")), Decimal("500"), NOW)
    outcome = executor.execute(
        "leek",
        "SPY",
        TradeDecision.sell("TRIM", amount_usd=Decimal("1100")),
        Decimal("550"),
        NOW + timedelta(days=1),
    )
    assert outcome.trade.shares == Decimal("2")
    position = store.get_position("leek", "SPY")
    assert position.shares == Decimal("8")
    assert position.avg_price == Decimal("500")
    assert position.last_trade_price == Decimal("550")


def test_dust_trades_are_rejected(executor: TradeExecutor, store: LedgerStore) -> None:
    outcome = executor.execute("leek", "QQQ", TradeDecision.buy("ENTRY", amount_usd=Decimal("0.99")), Decimal("100"), NOW)
    assert outcome.status == ExecutionStatus.REJECTED
    assert outcome.reason_code == "BELOW_MIN_NOTIONAL"
    assert store.list_trades("leek") == ()


def test_missing_portfolio_and_bad_price_are_rejected(store: LedgerStore) -> None:
    executor = TradeExecutor(store)
    decision = TradeDecision.buy("ENTRY", amount_usd=Decimal("100"))
    assert executor.execute("ghost", "QQQ", decision, Decimal("100"), NOW).reason_code == "NO_PORTFOLIO"
    assert executor.execute("ghost", "QQQ", decision, Decimal("0"), NOW).reason_code == "INVALID_PRICE"


def test_invariant_violation_propagates(executor: TradeExecutor, store: LedgerStore, monkeypatch) -> None:
    from simulation import ledger as ledger_module

    def _explode(self, *args, **kwargs):
        raise InvariantViolationError("forced")

    monkeypatch.setattr(ledger_module.LedgerTransaction, "debit_credit", _explode)
    with pytest.raises(InvariantViolationError, match="forced"):
        executor.execute("leek", "QQQ", TradeDecision.buy("ENTRY", amount_usd=Decimal("100")), Decimal("100"), NOW)
    assert store.list_trades("leek") == ()


def test_cash_never_negative_across_repeated_buys(executor: TradeExecutor, store: LedgerStore) -> None:
    with store.transaction() as tx:
        tx.debit_credit("leek", Decimal("990000"), CashDirection.DEBIT, NOW)

    results = []
    for day, symbol in enumerate(("QQQ", "SPY", "GLD", "NVDA", "TLT")):
        outcome = executor.execute(
            "leek",
            symbol,
            TradeDecision.buy("ENTRY", amount_usd=Decimal("3000")),
            Decimal("10"),
            NOW + timedelta(days=day),
        )
        results.append(outcome.status)
        assert store.get_portfolio("leek").cash_balance >= 0

    assert results.count(ExecutionStatus.EXECUTED) == 3
    assert results.count(ExecutionStatus.REJECTED) == 2
    assert store.get_portfolio("leek").cash_balance == Decimal("1000")
