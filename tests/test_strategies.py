"""Unit tests for persona strategy evaluators."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import random

import pytest

from simulation.market import PriceRange
from simulation.strategies import (
    STRATEGY_REGISTRY,
    DecisionAction,
    PersonaStrategy,
    PositionView,
    StrategyConfigError,
    StrategyState,
    TradeDecision,
    build_strategy,
    register_strategy,
    validate_strategy_params,
)

NOW = datetime(2024, 3, 4, 15, 30, tzinfo=timezone.utc)


def _position(
    shares: str = "1000",
    avg_price: str = "100",
    last_trade_price: str = "100",
    last_buy_price: str = "100",
    updated_at: datetime | None = None,
) -> PositionView:
    return PositionView(
        shares=Decimal(shares),
        avg_price=Decimal(avg_price),
        last_trade_price=Decimal(last_trade_price),
        last_buy_price=Decimal(last_buy_price),
        updated_at_utc=updated_at or NOW - timedelta(days=1),
    )


def _state(**overrides) -> StrategyState:
    base = StrategyState(
        instrument="QQQ",
        price=Decimal("100"),
        change_pct=Decimal("0"),
        cash=Decimal("1000000"),
        position=None,
        already_traded_today=False,
        ever_traded=False,
        total_equity=Decimal("1000000"),
        drawdown_pct=Decimal("0"),
        now=NOW,
        price_range=None,
    )
    return replace(base, **overrides)


def test_registry_contains_all_seven_personas() -> None:
    assert set(STRATEGY_REGISTRY) == {
        "momentum_chaser",
        "averaging_down",
        "profit_taker",
        "cash_reserve",
        "accumulator",
        "range_breakout",
        "random_rebalancer",
    }


@pytest.mark.parametrize("persona", sorted(STRATEGY_REGISTRY))
def test_every_persona_holds_after_trading_today(persona: str) -> None:
    strategy = build_strategy(persona, rng=random.Random(1))
    decision = strategy.evaluate(
        _state(
            already_traded_today=True,
            position=_position(updated_at=NOW - timedelta(days=3)),
            price=Decimal("50"),
            change_pct=Decimal("-10"),
            price_range=PriceRange(high=Decimal("120"), low=Decimal("90"), periods=7),
        )
    )
    assert decision.action == DecisionAction.HOLD
    assert decision.reason == "ALREADY_TRADED_TODAY"


def test_trade_decision_validates_amounts() -> None:
    with pytest.raises(ValueError):
        TradeDecision(action=DecisionAction.BUY, reason="x")
    with pytest.raises(ValueError):
        TradeDecision.sell("x", shares=Decimal("0"))
    assert TradeDecision.hold("x").is_trade is False


def test_momentum_chaser_rules() -> None:
    strategy = build_strategy("momentum_chaser")
    entry = strategy.evaluate(_state())
    assert (entry.action, entry.amount_usd) == (DecisionAction.BUY, Decimal("50000"))

    add = strategy.evaluate(_state(position=_position(), price=Decimal("105.01")))
    assert (add.action, add.amount_usd, add.reason) == (DecisionAction.BUY, Decimal("50000"), "MOMENTUM_ADD")

    exit_ = strategy.evaluate(_state(position=_position(), price=Decimal("94.99")))
    assert (exit_.action, exit_.shares) == (DecisionAction.SELL, Decimal("1000"))

    flat = strategy.evaluate(_state(position=_position(), price=Decimal("105")))
    assert flat.action == DecisionAction.HOLD

    broke = strategy.evaluate(_state(cash=Decimal("49999")))
    assert broke.reason == "INSUFFICIENT_CASH"


def test_averaging_down_doubles_on_dip_vs_last_buy_and_exits_over_avg_cost() -> None:
    strategy = build_strategy("averaging_down")
    assert strategy.evaluate(_state()).amount_usd == Decimal("10000")

    position = _position(shares="100", avg_price="100", last_trade_price="120", last_buy_price="100")
    dip = strategy.evaluate(_state(position=position, price=Decimal("89")))
    assert dip.action == DecisionAction.BUY
    assert dip.amount_usd == Decimal("10000")

    take = strategy.evaluate(_state(position=position, price=Decimal("102.5")))
    assert (take.action, take.shares) == (DecisionAction.SELL, Decimal("100"))

    partial = build_strategy("averaging_down", {"exit_fraction": "0.5"})
    assert partial.evaluate(_state(position=position, price=Decimal("103"))).shares == Decimal("50")

    assert strategy.evaluate(_state(position=position, price=Decimal("95"))).action == DecisionAction.HOLD


def test_profit_taker_enters_once_ever_and_trims() -> None:
    strategy = build_strategy("profit_taker")
    assert strategy.evaluate(_state()).amount_usd == Decimal("200000")

    used = strategy.evaluate(_state(ever_traded=True))
    assert (used.action, used.reason) == (DecisionAction.HOLD, "ENTRY_ALREADY_USED")

    position = _position(shares="2000", last_buy_price="100", last_trade_price="130")
    trim = strategy.evaluate(_state(position=position, price=Decimal("121")))
    assert (trim.action, trim.shares) == (DecisionAction.SELL, Decimal("400"))

    assert strategy.evaluate(_state(position=position, price=Decimal("119"))).action == DecisionAction.HOLD


def test_cash_reserve_protects_reserve() -> None:
    strategy = build_strategy("cash_reserve")
    entry = strategy.evaluate(_state(cash=Decimal("840000")))
    assert (entry.action, entry.amount_usd) == (DecisionAction.BUY, Decimal("40000"))

    protected = strategy.evaluate(_state(cash=Decimal("839999.99")))
    assert protected.reason == "RESERVE_PROTECTED"

    position = _position(shares="400")
    half = strategy.evaluate(_state(position=position, price=Decimal("105.5")))
    assert (half.action, half.shares) == (DecisionAction.SELL, Decimal("200"))

    stop = strategy.evaluate(_state(position=position, price=Decimal("91")))
    assert (stop.action, stop.shares) == (DecisionAction.SELL, Decimal("400"))

    dip_add = strategy.evaluate(_state(position=position, price=Decimal("97"), change_pct=Decimal("-2.5")))
    assert (dip_add.action, dip_add.amount_usd) == (DecisionAction.BUY, Decimal("10000"))

    no_room = strategy.evaluate(
        _state(position=position, price=Decimal("97"), change_pct=Decimal("-2.5"), cash=Decimal("805000"))
    )
    assert no_room.reason == "RESERVE_PROTECTED"

    # Equity alone never forces a sale; only the price rules do.
    low_equity = strategy.evaluate(_state(position=position, total_equity=Decimal("100000")))
    assert low_equity.action == DecisionAction.HOLD


def test_accumulator_buys_deep_dips_and_never_sells() -> None:
    strategy = build_strategy("accumulator")
    assert strategy.evaluate(_state()).amount_usd == Decimal("100000")

    position = _position()
    dip = strategy.evaluate(_state(position=position, price=Decimal("80")))
    assert (dip.action, dip.amount_usd) == (DecisionAction.BUY, Decimal("50000"))

    for price in ("84.99", "85", "150", "1000"):
        decision = strategy.evaluate(_state(position=position, price=Decimal(price)))
        assert decision.action != DecisionAction.SELL

    assert strategy.evaluate(_state(position=position, price=Decimal("80"), cash=Decimal("10"))).action == (
        DecisionAction.HOLD
    )


def test_range_breakout_trades_range_edges() -> None:
    strategy = build_strategy("range_breakout")
    window = PriceRange(high=Decimal("110"), low=Decimal("90"), periods=7)
    position = _position(shares="1000")

    low_break = strategy.evaluate(_state(position=position, price=Decimal("89"), price_range=window))
    assert (low_break.action, low_break.amount_usd) == (DecisionAction.BUY, Decimal("44500"))

    high_break = strategy.evaluate(_state(position=position, price=Decimal("111"), price_range=window))
    assert (high_break.action, high_break.shares) == (DecisionAction.SELL, Decimal("100"))

    inside = strategy.evaluate(_state(position=position, price=Decimal("100"), price_range=window))
    assert inside.reason == "WITHIN_RANGE"

    no_window = strategy.evaluate(_state(position=position, price=Decimal("89")))
    assert no_window.reason == "NO_PRICE_RANGE"


def test_range_breakout_suspends_buys_beyond_drawdown_threshold() -> None:
    strategy = build_strategy("range_breakout")
    window = PriceRange(high=Decimal("110"), low=Decimal("90"), periods=7)
    position = _position(shares="1000")

    assert strategy.evaluate(_state(drawdown_pct=Decimal("0.1001"))).reason == "DRAWDOWN_SUSPENDED"
    assert strategy.evaluate(_state(drawdown_pct=Decimal("0.10"))).action == DecisionAction.BUY

    suspended = strategy.evaluate(
        _state(position=position, price=Decimal("80"), price_range=window, drawdown_pct=Decimal("0.25"))
    )
    assert suspended.reason == "DRAWDOWN_SUSPENDED"

    still_sells = strategy.evaluate(
        _state(position=position, price=Decimal("120"), price_range=window, drawdown_pct=Decimal("0.25"))
    )
    assert still_sells.action == DecisionAction.SELL


class _ScriptedRandom(random.Random):
    def __init__(self, values: list[float]) -> None:
        super().__init__(0)
        self._values = list(values)

    def random(self) -> float:
        return self._values.pop(0)


def test_random_rebalancer_uses_time_gate_and_injected_rng() -> None:
    strategy = build_strategy("random_rebalancer", rng=_ScriptedRandom([0.2, 0.7]))
    assert strategy.evaluate(_state()).amount_usd == Decimal("100000")

    recent = _position(updated_at=NOW - timedelta(hours=23, minutes=59))
    assert strategy.evaluate(_state(position=recent)).reason == "TIME_GATE"

    idle = _position(shares="1000", updated_at=NOW - timedelta(hours=24))
    buy = strategy.evaluate(_state(position=idle, price=Decimal("50")))
    assert (buy.action, buy.amount_usd) == (DecisionAction.BUY, Decimal("5000"))

    sell = strategy.evaluate(_state(position=idle, price=Decimal("50")))
    assert (sell.action, sell.shares) == (DecisionAction.SELL, Decimal("100"))


def test_seeded_random_rebalancer_is_reproducible() -> None:
    idle = _position(updated_at=NOW - timedelta(days=2))
    first = [build_strategy("random_rebalancer", rng=random.Random(7)).evaluate(_state(position=idle))]
    second = [build_strategy("random_rebalancer", rng=random.Random(7)).evaluate(_state(position=idle))]
    assert first == second


def test_overrides_are_validated() -> None:
    strategy = build_strategy("momentum_chaser", {"entry_usd": 1234, "rise_trigger": "0.1"})
    assert strategy.params.entry_usd == Decimal("1234")
    assert strategy.params.rise_trigger == Decimal("0.1")

    with pytest.raises(StrategyConfigError, match="unknown persona"):
        validate_strategy_params("day_trader", {})
    with pytest.raises(StrategyConfigError, match="unknown parameter"):
        validate_strategy_params("accumulator", {"sell_fraction": "0.5"})
    with pytest.raises(StrategyConfigError, match="non-negative"):
        validate_strategy_params("accumulator", {"entry_usd": -1})
    with pytest.raises(StrategyConfigError, match="must be numeric"):
        validate_strategy_params("accumulator", {"entry_usd": True})
    with pytest.raises(StrategyConfigError, match=r"\(0, 1\]"):
        validate_strategy_params("profit_taker", {"sell_fraction": "1.5"})


def test_register_strategy_rejects_duplicates_and_missing_keys() -> None:
    with pytest.raises(StrategyConfigError, match="already registered"):

        @register_strategy
        class _Duplicate(PersonaStrategy):
            persona = "accumulator"

    with pytest.raises(StrategyConfigError, match="does not declare"):

        @register_strategy
        class _Nameless(PersonaStrategy):
            pass
