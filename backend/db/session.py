"""Engine and session factory construction for the ledger database."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_STATEMENT_TIMEOUT_MS = 5_000
DEFAULT_POOL_TIMEOUT_SECONDS = 10


def _connect_args(backend_name: str, statement_timeout_ms: int) -> dict[str, Any]:
    if backend_name == "postgresql":
        connect_timeout = max(1, statement_timeout_ms // 1000)
        return {
            "connect_timeout": connect_timeout,
            "options": f"-c statement_timeout={statement_timeout_ms}",
        }
    if backend_name == "sqlite":
        return {
            "timeout": statement_timeout_ms / 1000,
            "check_same_thread": False,
        }
    return {}


def create_ledger_engine(
    database_url: str,
    *,
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS,
    pool_timeout_seconds: int = DEFAULT_POOL_TIMEOUT_SECONDS,
) -> Engine:
    """Create an engine whose every store call is bounded by a timeout."""
    if statement_timeout_ms <= 0:
        raise ValueError("statement_timeout_ms must be > 0")

    url = make_url(database_url)
    backend_name = url.get_backend_name()
    kwargs: dict[str, Any] = {
        "connect_args": _connect_args(backend_name, statement_timeout_ms),
        "pool_pre_ping": True,
    }
    if backend_name != "sqlite":
        kwargs["pool_timeout"] = pool_timeout_seconds

    logger.debug("Creating ledger engine backend=%s", backend_name)
    return create_engine(url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory used by the ledger store; objects stay readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)
