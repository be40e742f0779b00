"""Persona strategy evaluators.

Each persona is a pure function of a :class:`StrategyState` snapshot: it never reads
the ledger, never recomputes drawdown and never draws randomness from a global
source. Thresholds are fractions (``0.05`` is 5%) measured against the persona's
reference price; the quote's ``change_pct`` arrives in percent points.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
import enum
import random
from typing import Any, ClassVar, Mapping, Optional, TypeVar

from simulation.market import PriceRange
from simulation.numeric import ZERO, normalize_decimal


class StrategyConfigError(ValueError):
    """Unknown persona or invalid persona parameter override."""


class DecisionAction(str, enum.Enum):
    """Evaluator verdict."""

    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


@dataclass(frozen=True)
class TradeDecision:
    """Evaluator output; BUY/SELL carry a dollar amount or a share count."""

    action: DecisionAction
    reason: str
    amount_usd: Optional[Decimal] = None
    shares: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if self.action == DecisionAction.HOLD:
            return
        if self.amount_usd is None and self.shares is None:
            raise ValueError(f"{self.action.value} decision requires amount_usd or shares")
        for name in ("amount_usd", "shares"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")

    @classmethod
    def hold(cls, reason: str) -> "TradeDecision":
        return cls(action=DecisionAction.HOLD, reason=reason)

    @classmethod
    def buy(cls, reason: str, *, amount_usd: Optional[Decimal] = None, shares: Optional[Decimal] = None) -> "TradeDecision":
        return cls(action=DecisionAction.BUY, reason=reason, amount_usd=amount_usd, shares=shares)

    @classmethod
    def sell(cls, reason: str, *, amount_usd: Optional[Decimal] = None, shares: Optional[Decimal] = None) -> "TradeDecision":
        return cls(action=DecisionAction.SELL, reason=reason, amount_usd=amount_usd, shares=shares)

    @property
    def is_trade(self) -> bool:
        return self.action != DecisionAction.HOLD


@dataclass(frozen=True)
class PositionView:
    """What an evaluator may know about the investor's holding."""

    shares: Decimal
    avg_price: Decimal
    last_trade_price: Decimal
    last_buy_price: Decimal
    updated_at_utc: datetime


@dataclass(frozen=True)
class StrategyState:
    """Inputs of one evaluation for an (investor, instrument) pair."""

    instrument: str
    price: Decimal
    change_pct: Decimal
    cash: Decimal
    position: Optional[PositionView]
    already_traded_today: bool
    ever_traded: bool
    total_equity: Decimal
    drawdown_pct: Decimal
    now: datetime
    price_range: Optional[PriceRange] = None


def _move(price: Decimal, reference: Decimal) -> Decimal:
    """Fractional price move relative to ``reference``."""
    if reference <= 0:
        return ZERO
    return (price - reference) / reference


def _fraction_of(value: Decimal, fraction: Decimal) -> Decimal:
    return normalize_decimal(value * fraction)


class PersonaStrategy:
    """Template for persona evaluators; subclasses implement ``_decide``."""

    persona: ClassVar[str] = ""
    params_type: ClassVar[type] = object

    def __init__(self, params: Any = None, rng: Optional[random.Random] = None) -> None:
        self.params = params if params is not None else self.params_type()
        self._rng = rng or random.Random()

    def evaluate(self, state: StrategyState) -> TradeDecision:
        if state.already_traded_today:
            return TradeDecision.hold("ALREADY_TRADED_TODAY")
        return self._decide(state)

    def _decide(self, state: StrategyState) -> TradeDecision:
        raise NotImplementedError

    @staticmethod
    def _entry(state: StrategyState, amount: Decimal, reason: str = "ENTRY") -> TradeDecision:
        if amount <= 0:
            return TradeDecision.hold("AMOUNT_TOO_SMALL")
        if state.cash < amount:
            return TradeDecision.hold("INSUFFICIENT_CASH")
        return TradeDecision.buy(reason, amount_usd=amount)

    @staticmethod
    def _exit(shares: Decimal, reason: str) -> TradeDecision:
        if shares <= 0:
            return TradeDecision.hold("AMOUNT_TOO_SMALL")
        return TradeDecision.sell(reason, shares=shares)


STRATEGY_REGISTRY: dict[str, type[PersonaStrategy]] = {}

_S = TypeVar("_S", bound=type[PersonaStrategy])


def register_strategy(cls: _S) -> _S:
    """Class decorator adding a persona to :data:`STRATEGY_REGISTRY`."""
    if not cls.persona:
        raise StrategyConfigError(f"{cls.__name__} does not declare a persona key")
    if cls.persona in STRATEGY_REGISTRY:
        raise StrategyConfigError(f"persona already registered: {cls.persona}")
    STRATEGY_REGISTRY[cls.persona] = cls
    return cls


@dataclass(frozen=True)
class MomentumChaserParams:
    entry_usd: Decimal = Decimal("50000")
    add_usd: Decimal = Decimal("50000")
    rise_trigger: Decimal = Decimal("0.05")
    fall_trigger: Decimal = Decimal("0.05")


@register_strategy
class MomentumChaser(PersonaStrategy):
    """Buys strength, dumps weakness; reference is the last trade price."""

    persona = "momentum_chaser"
    params_type = MomentumChaserParams

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        if position is None:
            return self._entry(state, p.entry_usd)
        move = _move(state.price, position.last_trade_price)
        if move > p.rise_trigger:
            return self._entry(state, p.add_usd, "MOMENTUM_ADD")
        if move < -p.fall_trigger:
            return self._exit(position.shares, "MOMENTUM_EXIT")
        return TradeDecision.hold("WITHIN_BAND")


@dataclass(frozen=True)
class AveragingDownParams:
    entry_usd: Decimal = Decimal("10000")
    dip_trigger: Decimal = Decimal("0.10")
    profit_trigger: Decimal = Decimal("0.02")
    exit_fraction: Decimal = Decimal("1")


@register_strategy
class AveragingDown(PersonaStrategy):
    """Doubles down on dips below the last buy, exits on a small gain over average cost."""

    persona = "averaging_down"
    params_type = AveragingDownParams

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        if position is None:
            return self._entry(state, p.entry_usd)
        if _move(state.price, position.avg_price) > p.profit_trigger:
            return self._exit(_fraction_of(position.shares, p.exit_fraction), "TAKE_PROFIT")
        if _move(state.price, position.last_buy_price) < -p.dip_trigger:
            cost = normalize_decimal(position.shares * position.avg_price)
            return self._entry(state, cost, "DOUBLE_DOWN")
        return TradeDecision.hold("WITHIN_BAND")


@dataclass(frozen=True)
class ProfitTakerParams:
    entry_usd: Decimal = Decimal("200000")
    profit_trigger: Decimal = Decimal("0.20")
    sell_fraction: Decimal = Decimal("0.20")


@register_strategy
class ProfitTaker(PersonaStrategy):
    """One entry per instrument for life; trims a fifth on every 20% rise over the last buy."""

    persona = "profit_taker"
    params_type = ProfitTakerParams

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        if position is None:
            if state.ever_traded:
                return TradeDecision.hold("ENTRY_ALREADY_USED")
            return self._entry(state, p.entry_usd)
        if _move(state.price, position.last_buy_price) > p.profit_trigger:
            return self._exit(_fraction_of(position.shares, p.sell_fraction), "TRIM_PROFIT")
        return TradeDecision.hold("BELOW_TARGET")


@dataclass(frozen=True)
class CashReserveParams:
    entry_usd: Decimal = Decimal("40000")
    add_usd: Decimal = Decimal("10000")
    cash_reserve_usd: Decimal = Decimal("800000")
    daily_drop_trigger_pct: Decimal = Decimal("2")
    profit_trigger: Decimal = Decimal("0.05")
    profit_sell_fraction: Decimal = Decimal("0.5")
    stop_loss_trigger: Decimal = Decimal("0.08")


@register_strategy
class CashReserve(PersonaStrategy):
    """Only spends cash above a fixed reserve; takes half off on gains and stops out on losses."""

    persona = "cash_reserve"
    params_type = CashReserveParams

    def _spendable(self, state: StrategyState) -> Decimal:
        return state.cash - self.params.cash_reserve_usd

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        if position is None:
            if self._spendable(state) < p.entry_usd:
                return TradeDecision.hold("RESERVE_PROTECTED")
            return TradeDecision.buy("ENTRY", amount_usd=p.entry_usd)

        move = _move(state.price, position.last_trade_price)
        if move > p.profit_trigger:
            return self._exit(_fraction_of(position.shares, p.profit_sell_fraction), "TAKE_PROFIT")
        if move < -p.stop_loss_trigger:
            return self._exit(position.shares, "STOP_LOSS")
        if state.change_pct < -p.daily_drop_trigger_pct:
            if self._spendable(state) < p.add_usd:
                return TradeDecision.hold("RESERVE_PROTECTED")
            return TradeDecision.buy("DAILY_DIP_ADD", amount_usd=p.add_usd)
        return TradeDecision.hold("WITHIN_BAND")


@dataclass(frozen=True)
class AccumulatorParams:
    entry_usd: Decimal = Decimal("100000")
    add_usd: Decimal = Decimal("50000")
    dip_trigger: Decimal = Decimal("0.15")


@register_strategy
class Accumulator(PersonaStrategy):
    """Buys deep dips relative to the last trade and never sells."""

    persona = "accumulator"
    params_type = AccumulatorParams

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        if position is None:
            return self._entry(state, p.entry_usd)
        if _move(state.price, position.last_trade_price) < -p.dip_trigger:
            return self._entry(state, p.add_usd, "DIP_ADD")
        return TradeDecision.hold("WITHIN_BAND")


@dataclass(frozen=True)
class RangeBreakoutParams:
    entry_usd: Decimal = Decimal("100000")
    add_fraction: Decimal = Decimal("0.5")
    sell_fraction: Decimal = Decimal("0.1")
    max_drawdown: Decimal = Decimal("0.10")


@register_strategy
class RangeBreakout(PersonaStrategy):
    """Trades breaks of the rolling weekly range; drawdown beyond the limit suspends buying."""

    persona = "range_breakout"
    params_type = RangeBreakoutParams

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        buys_suspended = state.drawdown_pct > p.max_drawdown
        if position is None:
            if buys_suspended:
                return TradeDecision.hold("DRAWDOWN_SUSPENDED")
            return self._entry(state, p.entry_usd)
        price_range = state.price_range
        if price_range is None:
            return TradeDecision.hold("NO_PRICE_RANGE")
        if state.price > price_range.high:
            return self._exit(_fraction_of(position.shares, p.sell_fraction), "RANGE_BREAKOUT_HIGH")
        if state.price < price_range.low:
            if buys_suspended:
                return TradeDecision.hold("DRAWDOWN_SUSPENDED")
            amount = _fraction_of(position.shares * state.price, p.add_fraction)
            return self._entry(state, amount, "RANGE_BREAKOUT_LOW")
        return TradeDecision.hold("WITHIN_RANGE")


@dataclass(frozen=True)
class RandomRebalancerParams:
    entry_usd: Decimal = Decimal("100000")
    min_hours_between_actions: Decimal = Decimal("24")
    buy_probability: Decimal = Decimal("0.5")
    rebalance_fraction: Decimal = Decimal("0.1")


@register_strategy
class RandomRebalancer(PersonaStrategy):
    """Coin flip once the position has been idle long enough: add or trim a tenth."""

    persona = "random_rebalancer"
    params_type = RandomRebalancerParams

    def _decide(self, state: StrategyState) -> TradeDecision:
        p = self.params
        position = state.position
        if position is None:
            return self._entry(state, p.entry_usd)
        idle = state.now - position.updated_at_utc
        if idle < timedelta(hours=float(p.min_hours_between_actions)):
            return TradeDecision.hold("TIME_GATE")
        if Decimal(str(self._rng.random())) < p.buy_probability:
            amount = _fraction_of(position.shares * state.price, p.rebalance_fraction)
            return self._entry(state, amount, "RANDOM_ADD")
        return self._exit(_fraction_of(position.shares, p.rebalance_fraction), "RANDOM_TRIM")


def _coerce_param(persona: str, name: str, raw: Any) -> Decimal:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str, Decimal)):
        raise StrategyConfigError(f"{persona}.{name} must be numeric, got {raw!r}")
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise StrategyConfigError(f"{persona}.{name} must be numeric, got {raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise StrategyConfigError(f"{persona}.{name} must be a non-negative number, got {raw!r}")
    if name.endswith("_fraction") and not (ZERO < value <= 1):
        raise StrategyConfigError(f"{persona}.{name} must be in (0, 1], got {raw!r}")
    return value


def _build_params(persona: str, overrides: Mapping[str, Any] | None) -> Any:
    try:
        cls = STRATEGY_REGISTRY[persona]
    except KeyError as exc:
        raise StrategyConfigError(f"unknown persona: {persona!r}") from exc
    defaults = cls.params_type()
    known = {item.name for item in fields(defaults)}
    changes: dict[str, Decimal] = {}
    for name, raw in (overrides or {}).items():
        if name not in known:
            raise StrategyConfigError(f"unknown parameter for {persona}: {name}")
        changes[name] = _coerce_param(persona, name, raw)
    return replace(defaults, **changes)


def validate_strategy_params(persona: str, overrides: Mapping[str, Any] | None) -> None:
    """Raise :class:`StrategyConfigError` if the persona or any override is invalid."""
    _build_params(persona, overrides)


def build_strategy(
    persona: str,
    overrides: Mapping[str, Any] | None = None,
    rng: Optional[random.Random] = None,
) -> PersonaStrategy:
    """Instantiate a registered persona with catalog overrides applied."""
    params = _build_params(persona, overrides)
    return STRATEGY_REGISTRY[persona](params=params, rng=rng)

