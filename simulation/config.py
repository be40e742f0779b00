"""Environment-backed configuration and investor catalog for the simulation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from simulation.numeric import normalize_decimal
from simulation.strategies import StrategyConfigError, validate_strategy_params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulationConfig:
    """Canonical configuration surface for the simulation runtime."""

    database_url: str
    catalog_path: Path | None
    initial_capital: Decimal
    min_trade_notional: Decimal
    tick_seconds: int
    history_refresh_every_ticks: int
    price_range_periods: int
    quote_timeout_seconds: float
    quote_max_age_seconds: int
    statement_timeout_ms: int
    trading_day_timezone: str
    collapse_daily_snapshots: bool
    random_seed: int | None
    daemon_failure_backoff_seconds: int
    daemon_max_consecutive_failures: int
    log_level: str


@dataclass(frozen=True)
class InvestorSpec:
    """One automated investor: identity, persona key and parameter overrides."""

    investor_id: str
    display_name: str
    persona: str
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Catalog:
    """Instruments traded and investors trading them."""

    instruments: tuple[str, ...]
    investors: tuple[InvestorSpec, ...]

    def investor(self, investor_id: str) -> InvestorSpec:
        for spec in self.investors:
            if spec.investor_id == investor_id:
                return spec
        raise KeyError(investor_id)


_REQUIRED_KEYS: tuple[str, ...] = ("SIM_DATABASE_URL",)

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    if minimum is not None and value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be > 0, got {raw}")
    return value


def _read_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        value = Decimal(raw.strip())
    except (InvalidOperation, ValueError) as exc:
        raise RuntimeError(f"Invalid decimal value for {name}: {raw}") from exc
    if not value.is_finite() or value <= 0:
        raise RuntimeError(f"{name} must be a positive number, got {raw}")
    return normalize_decimal(value)


def _read_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc


def _read_timezone(name: str, default: str) -> str:
    value = _read_env(name, default)
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown timezone for {name}: {value}") from exc
    return value


def load_simulation_config(*, require_catalog: bool = True) -> SimulationConfig:
    """Load and validate simulation configuration from environment.

    Commands that never touch the catalog pass ``require_catalog=False``.
    """
    for key in _REQUIRED_KEYS:
        _read_env(key)
    catalog_path = None
    if require_catalog or os.getenv("SIM_CATALOG_PATH", "").strip():
        catalog_path = Path(_read_env("SIM_CATALOG_PATH")).resolve()

    log_level = _read_env("SIM_LOG_LEVEL", "INFO").upper()
    if log_level not in _LOG_LEVELS:
        raise RuntimeError(f"Invalid SIM_LOG_LEVEL: {log_level}")

    return SimulationConfig(
        database_url=_read_env("SIM_DATABASE_URL"),
        catalog_path=catalog_path,
        initial_capital=_read_decimal("SIM_INITIAL_CAPITAL", "1000000"),
        min_trade_notional=_read_decimal("SIM_MIN_TRADE_NOTIONAL", "1"),
        tick_seconds=_read_int("SIM_TICK_SECONDS", 5, minimum=1),
        history_refresh_every_ticks=_read_int("SIM_HISTORY_REFRESH_EVERY_TICKS", 12, minimum=1),
        price_range_periods=_read_int("SIM_PRICE_RANGE_PERIODS", 7, minimum=1),
        quote_timeout_seconds=_read_float("SIM_QUOTE_TIMEOUT_SECONDS", 5.0),
        quote_max_age_seconds=_read_int("SIM_QUOTE_MAX_AGE_SECONDS", 300, minimum=1),
        statement_timeout_ms=_read_int("SIM_STATEMENT_TIMEOUT_MS", 5000, minimum=1),
        trading_day_timezone=_read_timezone("SIM_TRADING_DAY_TIMEZONE", "UTC"),
        collapse_daily_snapshots=_read_bool("SIM_COLLAPSE_DAILY_SNAPSHOTS", False),
        random_seed=_read_optional_int("SIM_RANDOM_SEED"),
        daemon_failure_backoff_seconds=_read_int("SIM_DAEMON_FAILURE_BACKOFF_SECONDS", 30, minimum=0),
        daemon_max_consecutive_failures=_read_int("SIM_DAEMON_MAX_CONSECUTIVE_FAILURES", 10, minimum=1),
        log_level=log_level,
    )


def _parse_investor(raw: Any, index: int) -> InvestorSpec:
    if not isinstance(raw, dict):
        raise RuntimeError(f"Catalog investor #{index} must be an object")
    investor_id = str(raw.get("id", "")).strip()
    if not investor_id:
        raise RuntimeError(f"Catalog investor #{index} is missing an id")
    persona = str(raw.get("persona", "")).strip()
    params = raw.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise RuntimeError(f"Catalog investor {investor_id} params must be an object")
    try:
        validate_strategy_params(persona, params)
    except StrategyConfigError as exc:
        raise RuntimeError(f"Catalog investor {investor_id}: {exc}") from exc
    display_name = str(raw.get("name") or investor_id).strip()
    return InvestorSpec(
        investor_id=investor_id,
        display_name=display_name,
        persona=persona,
        params=dict(params),
    )


def parse_catalog(payload: Mapping[str, Any]) -> Catalog:
    """Validate a decoded catalog document."""
    raw_instruments = payload.get("instruments")
    if not isinstance(raw_instruments, list) or not raw_instruments:
        raise RuntimeError("Catalog must list at least one instrument")
    instruments = tuple(str(item).strip().upper() for item in raw_instruments)
    if any(not item for item in instruments):
        raise RuntimeError("Catalog instruments must be non-empty symbols")
    if len(set(instruments)) != len(instruments):
        raise RuntimeError("Catalog instruments must be unique")

    raw_investors = payload.get("investors")
    if not isinstance(raw_investors, list) or not raw_investors:
        raise RuntimeError("Catalog must list at least one investor")
    investors = tuple(_parse_investor(raw, index) for index, raw in enumerate(raw_investors))
    ids = [spec.investor_id for spec in investors]
    if len(set(ids)) != len(ids):
        raise RuntimeError("Catalog investor ids must be unique")

    return Catalog(instruments=instruments, investors=investors)


def load_catalog(path: Path) -> Catalog:
    """Load the investor/instrument catalog from a JSON file."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RuntimeError(f"Catalog file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Catalog file is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise RuntimeError("Catalog root must be an object")
    catalog = parse_catalog(payload)
    logger.info(
        "Loaded catalog path=%s instruments=%d investors=%d",
        path,
        len(catalog.instruments),
        len(catalog.investors),
    )
    return catalog
