"""Database package for ORM models, sessions and migrations."""

from __future__ import annotations

import logging

from backend.db.base import Base
from backend.db import models
from backend.db.session import create_ledger_engine, create_session_factory

logger = logging.getLogger(__name__)

__all__ = ["Base", "create_ledger_engine", "create_session_factory", "models"]
