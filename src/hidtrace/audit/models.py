"""
Incident store models.

SQLAlchemy ORM model for emitted incidents. Incidents are immutable once
emitted, so the table is append-only at the database level.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    """Get current UTC time (naive, as SQLite stores it)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_time(value: datetime) -> datetime:
    """Normalise an aware timestamp to naive UTC for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IncidentRecord(Base):
    """
    Stored incident.

    Summary columns are indexed for querying; ``payload`` holds the
    canonical JSON form exactly as emitted.
    Append-only: no updates or deletes allowed.
    """

    __tablename__ = "incidents"

    id = Column(Integer, primary_key=True)
    run_id = Column(String(32), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    event_kind = Column(String(16), nullable=False)
    bus = Column(Integer, nullable=False)
    address = Column(Integer, nullable=False)
    vid = Column(String(4), nullable=True)
    pid = Column(String(4), nullable=True)
    device_class = Column(Integer, nullable=True)
    trigger_timestamp = Column(DateTime, nullable=False, index=True)
    window_end = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=False)
    close_reason = Column(String(16), nullable=False)
    confidence = Column(Float, nullable=False)
    anomaly_score = Column(Float, nullable=False)
    match_count = Column(Integer, nullable=False, default=0)
    alert = Column(Boolean, nullable=False, default=False, index=True)
    cut_short = Column(Boolean, nullable=False, default=False)
    degraded = Column(Boolean, nullable=False, default=False)
    payload = Column(Text, nullable=False)  # JSON blob
    recorded_at = Column(DateTime, default=_utc_now, nullable=False)

    @property
    def incident(self) -> dict[str, Any]:
        """The incident exactly as emitted."""
        return json.loads(self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "event_kind": self.event_kind,
            "bus": self.bus,
            "address": self.address,
            "vid": self.vid,
            "pid": self.pid,
            "device_class": self.device_class,
            "trigger_timestamp": _iso_utc(self.trigger_timestamp),
            "window_end": _iso_utc(self.window_end),
            "closed_at": _iso_utc(self.closed_at),
            "close_reason": self.close_reason,
            "confidence": self.confidence,
            "anomaly_score": self.anomaly_score,
            "match_count": self.match_count,
            "alert": self.alert,
            "cut_short": self.cut_short,
            "degraded": self.degraded,
            "recorded_at": _iso_utc(self.recorded_at),
        }


# SQL for append-only trigger (to be executed separately)
APPEND_ONLY_TRIGGER = """
CREATE TRIGGER IF NOT EXISTS no_delete_incidents
BEFORE DELETE ON incidents
BEGIN
    SELECT RAISE(ABORT, 'Deletion not permitted on incident log');
END;

CREATE TRIGGER IF NOT EXISTS no_update_incidents
BEFORE UPDATE ON incidents
BEGIN
    SELECT RAISE(ABORT, 'Updates not permitted on incident log');
END;
"""


def split_statements(script: str) -> list[str]:
    """
    Split a trigger script into statements.

    Semicolons inside BEGIN ... END belong to the trigger body.
    """
    statements = []
    current: list[str] = []
    for line in script.strip().splitlines():
        current.append(line)
        if line.strip().upper().startswith("END;"):
            statements.append("\n".join(current).strip())
            current = []
    rest = "\n".join(current).strip()
    if rest:
        statements.append(rest)
    return statements

