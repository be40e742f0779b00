"""Engine event model definitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    desc,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base, UtcDateTime
from backend.db.enums import event_severity_enum

logger = logging.getLogger(__name__)


class EngineEvent(Base):
    """Append-only audit of failures and invariant violations flagged by the engine."""

    __tablename__ = "engine_event"
    __table_args__ = (
        PrimaryKeyConstraint("event_id", name="pk_engine_event"),
        CheckConstraint(
            "length(trim(event_type)) > 0",
            name="ck_engine_event_type_not_blank",
        ),
        CheckConstraint(
            "length(trim(reason_code)) > 0",
            name="ck_engine_event_reason_not_blank",
        ),
        Index("idx_engine_event_ts_desc", desc("event_ts_utc")),
        Index("idx_engine_event_severity_ts_desc", "severity", desc("event_ts_utc")),
    )

    event_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        Identity(always=False),
        primary_key=True,
    )
    event_ts_utc: Mapped[datetime] = mapped_column(UtcDateTime(), nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(event_severity_enum, nullable=False)
    reason_code: Mapped[str] = mapped_column(Text, nullable=False)
    investor_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    instrument: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[str] = mapped_column(Text, nullable=False)
