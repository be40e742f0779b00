"""Clock and trading-day helpers for the simulation engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class SimulationClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


def utc_iso(ts: datetime) -> str:
    """Normalize timestamp to UTC RFC3339 string."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def trading_day(now_utc: datetime, timezone_name: str) -> date:
    """Calendar day of ``now_utc`` in the trading timezone."""
    return now_utc.astimezone(ZoneInfo(timezone_name)).date()


def trading_day_start(now_utc: datetime, timezone_name: str) -> datetime:
    """UTC instant at which the trading day containing ``now_utc`` began."""
    tz = ZoneInfo(timezone_name)
    local = now_utc.astimezone(tz)
    midnight = datetime(local.year, local.month, local.day, tzinfo=tz)
    return midnight.astimezone(timezone.utc)
