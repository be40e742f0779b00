"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
from pathlib import Path
from typing import Any, Iterator

import pytest
from sqlalchemy import Engine

from backend.db import Base, create_ledger_engine, create_session_factory
from simulation.ledger import LedgerStore


class MutableClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def now_utc(self) -> datetime:
        return self.current

    def advance(self, **kwargs: Any) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2024, 3, 4, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    """File-backed SQLite ledger created from model metadata."""
    db_engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(db_engine)
    try:
        yield db_engine
    finally:
        db_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Any:
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory: Any) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest.fixture(scope="session")
def pg_database_url() -> str:
    """SQLAlchemy URL for the integration PostgreSQL database."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{dbname}"
