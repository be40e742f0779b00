"""Initial ledger schema for the persona trading simulation."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE trade_side_enum AS ENUM ('BUY', 'SELL');",
    "CREATE TYPE event_severity_enum AS ENUM ('INFO', 'WARNING', 'CRITICAL');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE portfolio (
        investor_id TEXT NOT NULL,
        cash_balance NUMERIC(38,8) NOT NULL,
        total_equity NUMERIC(38,8) NOT NULL,
        initial_capital NUMERIC(38,8) NOT NULL,
        peak_equity NUMERIC(38,8) NOT NULL,
        created_at_utc TIMESTAMPTZ NOT NULL,
        updated_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_portfolio PRIMARY KEY (investor_id),
        CONSTRAINT ck_portfolio_investor_id_not_blank CHECK (length(trim(investor_id)) > 0),
        CONSTRAINT ck_portfolio_cash_nonneg CHECK (cash_balance >= 0),
        CONSTRAINT ck_portfolio_equity_nonneg CHECK (total_equity >= 0),
        CONSTRAINT ck_portfolio_initial_capital_pos CHECK (initial_capital > 0),
        CONSTRAINT ck_portfolio_peak_ge_equity CHECK (peak_equity >= total_equity)
    );
    """,
    """
    CREATE TABLE position (
        investor_id TEXT NOT NULL,
        instrument TEXT NOT NULL,
        shares NUMERIC(38,8) NOT NULL,
        avg_price NUMERIC(38,8) NOT NULL,
        last_trade_price NUMERIC(38,8) NOT NULL,
        last_buy_price NUMERIC(38,8) NOT NULL,
        updated_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_position PRIMARY KEY (investor_id, instrument),
        CONSTRAINT ck_position_shares_pos CHECK (shares > 0),
        CONSTRAINT ck_position_avg_price_nonneg CHECK (avg_price >= 0),
        CONSTRAINT ck_position_last_trade_price_pos CHECK (last_trade_price > 0),
        CONSTRAINT ck_position_last_buy_price_nonneg CHECK (last_buy_price >= 0),
        CONSTRAINT ck_position_instrument_upper CHECK (instrument = upper(instrument))
    );
    """,
    """
    CREATE TABLE trade (
        trade_id BIGINT GENERATED BY DEFAULT AS IDENTITY,
        investor_id TEXT NOT NULL,
        instrument TEXT NOT NULL,
        side trade_side_enum NOT NULL,
        shares NUMERIC(38,8) NOT NULL,
        price NUMERIC(38,8) NOT NULL,
        notional NUMERIC(38,8) NOT NULL,
        reason TEXT NOT NULL,
        executed_at_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_trade PRIMARY KEY (trade_id),
        CONSTRAINT ck_trade_shares_pos CHECK (shares > 0),
        CONSTRAINT ck_trade_price_pos CHECK (price > 0),
        CONSTRAINT ck_trade_notional_pos CHECK (notional > 0),
        CONSTRAINT ck_trade_instrument_upper CHECK (instrument = upper(instrument))
    );
    """,
    """
    CREATE TABLE equity_snapshot (
        snapshot_id BIGINT GENERATED BY DEFAULT AS IDENTITY,
        investor_id TEXT NOT NULL,
        total_equity NUMERIC(38,8) NOT NULL,
        cash_balance NUMERIC(38,8) NOT NULL,
        market_value NUMERIC(38,8) NOT NULL,
        peak_equity NUMERIC(38,8) NOT NULL,
        drawdown_pct NUMERIC(38,8) NOT NULL,
        snapshot_ts_utc TIMESTAMPTZ NOT NULL,
        snapshot_day DATE,
        CONSTRAINT pk_equity_snapshot PRIMARY KEY (snapshot_id),
        CONSTRAINT uq_equity_snapshot_investor_day UNIQUE (investor_id, snapshot_day),
        CONSTRAINT ck_equity_snapshot_equity_nonneg CHECK (total_equity >= 0),
        CONSTRAINT ck_equity_snapshot_cash_nonneg CHECK (cash_balance >= 0),
        CONSTRAINT ck_equity_snapshot_market_nonneg CHECK (market_value >= 0),
        CONSTRAINT ck_equity_snapshot_peak_ge_equity CHECK (peak_equity >= total_equity),
        CONSTRAINT ck_equity_snapshot_drawdown_range CHECK (drawdown_pct >= 0 AND drawdown_pct <= 1)
    );
    """,
    """
    CREATE TABLE market_quote (
        instrument TEXT NOT NULL,
        price NUMERIC(38,8) NOT NULL,
        change_pct NUMERIC(38,8) NOT NULL,
        open_price NUMERIC(38,8),
        quote_ts_utc TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_market_quote PRIMARY KEY (instrument),
        CONSTRAINT ck_market_quote_price_pos CHECK (price > 0),
        CONSTRAINT ck_market_quote_open_price_pos CHECK (open_price IS NULL OR open_price > 0),
        CONSTRAINT ck_market_quote_instrument_upper CHECK (instrument = upper(instrument))
    );
    """,
    """
    CREATE TABLE market_candle (
        instrument TEXT NOT NULL,
        bar_date DATE NOT NULL,
        open_price NUMERIC(38,8) NOT NULL,
        high_price NUMERIC(38,8) NOT NULL,
        low_price NUMERIC(38,8) NOT NULL,
        close_price NUMERIC(38,8) NOT NULL,
        CONSTRAINT pk_market_candle PRIMARY KEY (instrument, bar_date),
        CONSTRAINT ck_market_candle_prices_pos CHECK (
            open_price > 0 AND high_price > 0 AND low_price > 0 AND close_price > 0
        ),
        CONSTRAINT ck_market_candle_high_ge_low CHECK (high_price >= low_price)
    );
    """,
    """
    CREATE TABLE engine_event (
        event_id BIGINT GENERATED BY DEFAULT AS IDENTITY,
        event_ts_utc TIMESTAMPTZ NOT NULL,
        event_type TEXT NOT NULL,
        severity event_severity_enum NOT NULL,
        reason_code TEXT NOT NULL,
        investor_id TEXT,
        instrument TEXT,
        details TEXT NOT NULL,
        CONSTRAINT pk_engine_event PRIMARY KEY (event_id),
        CONSTRAINT ck_engine_event_type_not_blank CHECK (length(trim(event_type)) > 0),
        CONSTRAINT ck_engine_event_reason_not_blank CHECK (length(trim(reason_code)) > 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_trade_investor_instrument_ts_desc ON trade (investor_id, instrument, executed_at_utc DESC);",
    "CREATE INDEX idx_trade_executed_at_desc ON trade (executed_at_utc DESC);",
    "CREATE INDEX idx_equity_snapshot_investor_ts_desc ON equity_snapshot (investor_id, snapshot_ts_utc DESC);",
    "CREATE INDEX idx_market_candle_instrument_date_desc ON market_candle (instrument, bar_date DESC);",
    "CREATE INDEX idx_engine_event_ts_desc ON engine_event (event_ts_utc DESC);",
    "CREATE INDEX idx_engine_event_severity_ts_desc ON engine_event (severity, event_ts_utc DESC);",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_trade_append_only
    BEFORE UPDATE OR DELETE ON trade
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
    """
    CREATE TRIGGER trg_engine_event_append_only
    BEFORE UPDATE OR DELETE ON engine_event
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_engine_event_append_only ON engine_event;",
            "DROP TRIGGER IF EXISTS trg_trade_append_only ON trade;",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS engine_event;",
            "DROP TABLE IF EXISTS market_candle;",
            "DROP TABLE IF EXISTS market_quote;",
            "DROP TABLE IF EXISTS equity_snapshot;",
            "DROP TABLE IF EXISTS trade;",
            "DROP TABLE IF EXISTS position;",
            "DROP TABLE IF EXISTS portfolio;",
            "DROP TYPE IF EXISTS event_severity_enum;",
            "DROP TYPE IF EXISTS trade_side_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
